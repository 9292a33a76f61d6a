import asyncio
import json
import socket

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidStatus

from bvrelay.server.runtime import RelayRuntime


@pytest_asyncio.fixture
async def runtime():
    rt = RelayRuntime({"listen": "127.0.0.1:0"})
    await rt.start()
    try:
        yield rt
    finally:
        await rt.stop()


async def _recv(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def _register(ws, identity):
    await ws.send(json.dumps({"type": "register", "id": identity}))
    return await _recv(ws)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_end_to_end_relay(runtime):
    url = f"ws://127.0.0.1:{runtime.port}"
    async with connect(url) as alice, connect(url) as bob:
        assert await _register(alice, "0xALICE") == {"type": "registered", "id": "0xalice"}
        assert await _register(bob, "0xBob") == {"type": "registered", "id": "0xbob"}

        await alice.send("garbage")
        await alice.send(json.dumps({"type": "message", "from": "0xalice", "to": "0xBOB", "text": "gm"}))
        assert await _recv(bob) == {"type": "message", "from": "0xalice", "to": "0xBOB", "text": "gm"}

        await bob.send(json.dumps({"type": "call-offer", "from": "0xbob", "to": "0xalice", "sdp": "v=0"}))
        offer = await _recv(alice)
        assert offer["type"] == "call-offer"
        assert offer["callId"]

        await alice.send(json.dumps({"type": "call-answer", "to": "0xbob", "callId": offer["callId"], "sdp": "v=0"}))
        answer = await _recv(bob)
        assert answer["callId"] == offer["callId"]


@pytest.mark.asyncio
async def test_disconnect_unbinds(runtime):
    url = f"ws://127.0.0.1:{runtime.port}"
    async with connect(url) as alice:
        await _register(alice, "alice")
        assert "alice" in runtime.registry
    await _wait_for(lambda: "alice" not in runtime.registry)


@pytest.mark.asyncio
async def test_displaced_connection_close_keeps_new_binding(runtime):
    url = f"ws://127.0.0.1:{runtime.port}"
    async with connect(url) as newer, connect(url) as sender:
        first = await connect(url)
        await _register(first, "x")
        await _register(newer, "x")
        await first.close()
        await asyncio.sleep(0.05)

        await sender.send(json.dumps({"type": "message", "to": "x", "text": "still here"}))
        assert (await _recv(newer))["text"] == "still here"
        assert "x" in runtime.registry


@pytest.mark.asyncio
async def test_health_check(runtime):
    reader, writer = await asyncio.open_connection("127.0.0.1", runtime.port)
    writer.write(b"GET /health HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()
    status_line = await asyncio.wait_for(reader.readline(), 2.0)
    writer.close()
    await writer.wait_closed()
    assert b"200" in status_line


@pytest.mark.asyncio
async def test_origin_allow_list():
    rt = RelayRuntime({"listen": "127.0.0.1:0", "allowed_origins": ["http://localhost:5173"]})
    await rt.start()
    url = f"ws://127.0.0.1:{rt.port}"
    try:
        async with connect(url, origin="http://localhost:5173") as ws:
            assert (await _register(ws, "ok"))["type"] == "registered"
        with pytest.raises(InvalidStatus):
            async with connect(url, origin="https://evil.example"):
                pass
    finally:
        await rt.stop()


@pytest.mark.asyncio
async def test_upload_bind_failure_stops_websocket_server(tmp_path):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen()
        busy_port = taken.getsockname()[1]

        rt = RelayRuntime(
            {
                "listen": "127.0.0.1:0",
                "upload": {"enabled": True, "listen": f"127.0.0.1:{busy_port}", "dir": str(tmp_path / "up")},
            }
        )
        with pytest.raises(OSError):
            await rt.start()

    assert rt._ws_server is None
    assert rt._upload_runner is None
