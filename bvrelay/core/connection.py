from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, Optional, Protocol

import websockets

from .proto import encode_frame

log = logging.getLogger("bvrelay.connection")


class Handle(Protocol):
    async def send(self, message: str) -> None: ...


class ConnectionState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    IDENTIFIED = "identified"
    CLOSED = "closed"


class Connection:
    """One live peer channel.

    Outbound frames go through a bounded queue drained by a writer task, so
    ``send`` never waits on the network. A peer that stops reading only fills
    its own queue; once full, further frames for it are refused.
    """

    def __init__(
        self,
        handle: Handle,
        *,
        remote: str = "?",
        origin: Optional[str] = None,
        max_queue: int = 256,
    ) -> None:
        self.handle = handle
        self.remote = remote
        self.origin = origin
        self.identity: Optional[str] = None
        self.state = ConnectionState.ANONYMOUS
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Connection {self.remote} {self.state.value} id={self.identity!r}>"

    @property
    def is_open(self) -> bool:
        return self.state is not ConnectionState.CLOSED

    def identify(self, identity: str) -> None:
        if not self.is_open:
            return
        self.identity = identity
        self.state = ConnectionState.IDENTIFIED

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, frame: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        try:
            self._outbox.put_nowait(encode_frame(frame))
        except asyncio.QueueFull:
            log.warning("Outbound queue full for %s (%s), dropping %s", self.remote, self.identity, frame.get("type"))
            return False
        return True

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name=f"writer:{self.remote}")

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the transport."""

        await self._outbox.join()

    async def _drain(self) -> None:
        while True:
            text = await self._outbox.get()
            try:
                await self.handle.send(text)
            except websockets.ConnectionClosed:
                log.info("Send to %s (%s) failed, connection closed", self.remote, self.identity)
                self._mark_closed()
            except OSError as exc:
                log.warning("Send to %s (%s) failed: %s", self.remote, self.identity, exc)
                self._mark_closed()
            except Exception:
                log.exception("Unexpected send error for %s (%s)", self.remote, self.identity)
                self._mark_closed()
            finally:
                self._outbox.task_done()
            if not self.is_open:
                return

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._mark_closed()
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()

    async def wait_closed(self) -> None:
        if self._writer is not None:
            await asyncio.gather(self._writer, return_exceptions=True)

    def _mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()


__all__ = ["Connection", "ConnectionState", "Handle"]
