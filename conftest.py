import json

import pytest
import websockets

from bvrelay.core.connection import Connection
from bvrelay.core.registry import Registry
from bvrelay.core.router import Router


class RecordingHandle:
    """Stands in for a websocket: records what the writer task sends."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosed(None, None)
        self.sent.append(message)

    def frames(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


@pytest.fixture
def registry():
    return Registry()


@pytest.fixture
def router(registry):
    return Router(registry)


@pytest.fixture
def make_conn():
    """Factory returning (connection, handle) pairs; call .start() inside a running loop."""

    counter = {"n": 0}

    def _make(max_queue: int = 256):
        counter["n"] += 1
        handle = RecordingHandle()
        conn = Connection(handle, remote=f"10.0.0.{counter['n']}:5000", max_queue=max_queue)
        return conn, handle

    return _make
