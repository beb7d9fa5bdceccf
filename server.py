"""FastAPI gateway that relays yt-dlp media as downloadable files.

This service exposes:
- GET /info : title and thumbnail for a media URL
- GET /mp3  : streams the best audio variant as an attachment
- GET /mp4  : streams the best muxed video variant as an attachment

Run with:
    python server.py
or
    uvicorn server:app --host 0.0.0.0 --port 3500 --timeout-keep-alive 1800
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Optional

import anyio
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

import config
import extractor
from errors import GatewayError, InvalidInput
from formats import MEDIA_KINDS, content_disposition, select_format
from relay import RelaySession

logger = logging.getLogger(__name__)

app = FastAPI(title="Media Relay Gateway", version="1.0.0")

# Any origin may call the gateway; preflights are answered here
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "User-Agent"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.payload(), status_code=exc.status_code, headers=config.CORS_HEADERS)


async def require_url(url: Optional[str]) -> str:
    """Reject missing or unsupported URLs before touching the backend."""
    if not url:
        raise InvalidInput("Invalid query")
    if not await anyio.to_thread.run_sync(extractor.is_supported_url, url):
        raise InvalidInput("Invalid url")
    return url


async def relay_media(url: Optional[str], kind: str) -> RelaySession:
    url = await require_url(url)
    media = await extractor.fetch_media(url)
    fmt = select_format(media.formats, kind)
    ext, media_type = MEDIA_KINDS[kind]
    logger.info("relaying %s format %s (%s) for %s", kind, fmt.format_id, fmt.container, url)
    return RelaySession(
        partial(extractor.open_stream, fmt),
        content_disposition=content_disposition(media.title, ext),
        media_type=media_type,
        headers=config.CORS_HEADERS,
        first_chunk_timeout=config.FIRST_CHUNK_TIMEOUT,
    )


@app.get("/")
async def root() -> Response:
    ping = datetime.now(timezone.utc) - timedelta(hours=3)
    logger.info("Ping at: %s", ping.strftime("%H:%M:%S"))
    return Response(status_code=200, headers=config.CORS_HEADERS)


@app.options("/{path:path}")
async def preflight(path: str) -> Response:
    return Response(status_code=200, headers=config.CORS_HEADERS)


@app.get("/info")
async def fetch_info(url: Optional[str] = Query(None, description="Media URL")) -> JSONResponse:
    """Return the title and a thumbnail for the provided URL."""
    info = await extractor.lookup(await require_url(url))
    return JSONResponse(info, headers=config.CORS_HEADERS)


@app.get("/mp3")
async def download_mp3(url: Optional[str] = Query(None, description="Media URL")) -> Response:
    return await relay_media(url, "audio")


@app.get("/mp4")
async def download_mp4(url: Optional[str] = Query(None, description="Media URL")) -> Response:
    return await relay_media(url, "video")


if __name__ == "__main__":
    import uvicorn

    config.configure_logging()
    logger.info("Server on port %s", config.PORT)
    uvicorn.run(
        "server:app",
        host=config.HOST,
        port=config.PORT,
        timeout_keep_alive=config.CONNECTION_TIMEOUT,
        log_config=None,
        reload=False,
    )
