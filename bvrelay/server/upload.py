from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Optional, Tuple
from urllib.parse import quote, unquote

from aiohttp import BodyPartReader, hdrs, web

log = logging.getLogger("bvrelay.server.upload")

CHUNK_SIZE = 64 * 1024


@dataclass(slots=True, frozen=True)
class UploadSettings:
    directory: Path
    max_bytes: int = 25 * 1024 * 1024
    allowed_origins: FrozenSet[str] = field(default_factory=frozenset)


SETTINGS = web.AppKey("settings", UploadSettings)


def safe_name(filename: Optional[str]) -> str:
    """Decode percent-escapes, strip directories and collapse whitespace runs to underscores."""

    base = Path(unquote(filename or "")).name
    base = re.sub(r"\s+", "_", base.strip())
    return base or "file"


def stored_name(filename: Optional[str], *, now_ms: Optional[int] = None) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    return f"{stamp}_{safe_name(filename)}"


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_upload(request: web.Request) -> web.Response:
    settings = request.app[SETTINGS]
    if not request.content_type.startswith("multipart/"):
        return _no_file()

    reader = await request.multipart()
    async for part in reader:
        if not isinstance(part, BodyPartReader) or part.name != "file" or not part.filename:
            continue
        name = stored_name(part.filename)
        mime = (
            part.headers.get(hdrs.CONTENT_TYPE)
            or mimetypes.guess_type(name)[0]
            or "application/octet-stream"
        )
        size, ok = await _store(part, settings.directory / name, settings.max_bytes)
        if not ok:
            log.warning("Upload %s rejected, larger than %d bytes", part.filename, settings.max_bytes)
            return web.json_response({"error": "File too large"}, status=413)
        url = f"{request.scheme}://{request.host}/uploads/{quote(name)}"
        log.info("File uploaded: %s (%s, %d bytes)", url, mime, size)
        return web.json_response({"url": url, "mime": mime, "size": size})

    return _no_file()


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def _store(part: BodyPartReader, path: Path, max_bytes: int) -> Tuple[int, bool]:
    size = 0
    try:
        with path.open("wb") as fh:
            while True:
                chunk = await part.read_chunk(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    break
                await asyncio.to_thread(fh.write, chunk)
    except BaseException:
        path.unlink(missing_ok=True)
        raise
    if size > max_bytes:
        path.unlink(missing_ok=True)
        return size, False
    return size, True


def _no_file() -> web.Response:
    return web.json_response({"error": "No file uploaded"}, status=400)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == hdrs.METH_OPTIONS:
        response: web.StreamResponse = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            _apply_cors(request, exc)
            raise
    _apply_cors(request, response)
    return response


def _apply_cors(request: web.Request, response: web.StreamResponse) -> None:
    origin = request.headers.get(hdrs.ORIGIN)
    if origin and origin in request.app[SETTINGS].allowed_origins:
        response.headers[hdrs.ACCESS_CONTROL_ALLOW_ORIGIN] = origin
        response.headers[hdrs.VARY] = "Origin"
    response.headers[hdrs.ACCESS_CONTROL_ALLOW_METHODS] = "GET, POST, OPTIONS"
    response.headers[hdrs.ACCESS_CONTROL_ALLOW_HEADERS] = "Content-Type"


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------

def make_app(
    directory: Path,
    *,
    max_bytes: int = 25 * 1024 * 1024,
    allowed_origins: Iterable[str] = (),
) -> web.Application:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    app = web.Application(middlewares=[cors_middleware])
    app[SETTINGS] = UploadSettings(directory=directory, max_bytes=max_bytes, allowed_origins=frozenset(allowed_origins))
    app.router.add_post("/upload", handle_upload)
    app.router.add_get("/health", handle_health)
    app.router.add_static("/uploads", directory)
    return app


async def start_upload_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except BaseException:
        await runner.cleanup()
        raise
    log.info("Upload endpoint listening on http://%s:%d", host, port)
    return runner


__all__ = ["UploadSettings", "make_app", "start_upload_server", "safe_name", "stored_name"]
