from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Dict, Optional

import websockets
from aiohttp import web
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from bvrelay.config import DEFAULTS, parse_listen
from bvrelay.core.connection import Connection
from bvrelay.core.registry import Registry
from bvrelay.core.router import Router
from bvrelay.server import upload

log = logging.getLogger("bvrelay.server.runtime")

HEALTH_PATH = "/health"


class RelayRuntime:
    """WebSocket front end for the relay core."""

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.cfg = dict(DEFAULTS, **(config or {}))
        self.listen_host, self.listen_port = parse_listen(self.cfg["listen"])
        self.allowed_origins = list(self.cfg.get("allowed_origins") or [])
        self.max_frame_bytes = int(self.cfg["max_frame_bytes"])
        self.outbound_queue = int(self.cfg["outbound_queue"])
        self.upload_cfg = dict(DEFAULTS["upload"], **(self.cfg.get("upload") or {}))

        self.registry = Registry()
        self.router = Router(self.registry, ack_registration=bool(self.cfg["ack_registration"]))

        self._ws_server: Optional[Server] = None
        self._upload_runner: Optional[web.AppRunner] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            origins=self.allowed_origins or None,
            max_size=self.max_frame_bytes,
            process_request=self._process_request,
        )
        log.info("BlockVault relay listening on ws://%s:%d", self.listen_host, self.port)

        if self.upload_cfg.get("enabled"):
            host, port = parse_listen(self.upload_cfg["listen"])
            app = upload.make_app(
                self.upload_cfg["dir"],
                max_bytes=int(self.upload_cfg["max_bytes"]),
                allowed_origins=self.allowed_origins,
            )
            try:
                self._upload_runner = await upload.start_upload_server(app, host, port)
            except BaseException:
                await self.stop()
                raise

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        if self._upload_runner is not None:
            await self._upload_runner.cleanup()
            self._upload_runner = None

    @property
    def port(self) -> int:
        """Bound port, useful when configured with port 0."""

        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        origin = websocket.request.headers.get("Origin") if websocket.request else None
        conn = Connection(
            websocket,
            remote=self._fmt_remote(websocket),
            origin=origin,
            max_queue=self.outbound_queue,
        )
        conn.start()
        log.info("New WebSocket client connected from %s (origin %s)", conn.remote, origin or "-")
        try:
            async for raw in websocket:
                try:
                    self.router.route(conn, raw)
                except Exception:
                    log.exception("Unhandled error routing frame from %s (%s)", conn.remote, conn.identity)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.router.close(conn)
            await conn.wait_closed()

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.path == HEALTH_PATH:
            return connection.respond(HTTPStatus.OK, "OK\n")
        return None

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["RelayRuntime"]
