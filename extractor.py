"""yt-dlp metadata lookup and upstream byte streams for selected formats."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import anyio
import httpx
import yt_dlp
from yt_dlp.extractor import gen_extractor_classes

import config
from errors import BackendError, StreamOpenError
from formats import FormatDescriptor

logger = logging.getLogger(__name__)

YDL_OPTIONS = {
    "quiet": True,
    "no_warnings": True,
    "skip_download": True,
    "noplaylist": True,
    "http_headers": config.DEFAULT_HTTP_HEADERS,
}


@lru_cache(maxsize=None)
def _site_extractors() -> Tuple[Any, ...]:
    return tuple(ie for ie in gen_extractor_classes() if ie.ie_key() != "Generic")


@dataclass
class MediaInfo:
    title: str
    thumbnail: Optional[str]
    formats: List[FormatDescriptor] = field(default_factory=list)


def is_supported_url(url: str) -> bool:
    """True when ``url`` is http(s) and a dedicated yt-dlp extractor claims it.

    Matches against every extractor pattern, so call it off the event loop.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    return any(ie.suitable(url) for ie in _site_extractors())


def pick_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    # Third candidate first; the backend's ordering is not checked for resolution.
    candidates = info.get("thumbnails") or []
    if not candidates and info.get("thumbnail"):
        candidates = [{"url": info["thumbnail"]}]
    for index in (2, 0):
        if len(candidates) > index and candidates[index].get("url"):
            return candidates[index]["url"]
    return None


def _extract(url: str) -> Dict[str, Any]:
    with yt_dlp.YoutubeDL(YDL_OPTIONS) as ydl:
        return ydl.extract_info(url, download=False)


async def fetch_media(url: str) -> MediaInfo:
    """Describe ``url`` via yt-dlp without blocking the event loop."""
    try:
        info = await anyio.to_thread.run_sync(_extract, url)
    except Exception as exc:
        logger.exception("yt-dlp lookup failed for %s", url)
        raise BackendError(str(exc) or "Internal server error") from exc

    formats = [FormatDescriptor.from_ytdlp(fmt) for fmt in info.get("formats") or []]
    if not formats and info.get("url"):
        # Single-format sources put the stream fields on the top-level dict
        formats.append(FormatDescriptor.from_ytdlp(info))
    return MediaInfo(
        title=info.get("title") or "",
        thumbnail=pick_thumbnail(info),
        formats=formats,
    )


async def lookup(url: str) -> Dict[str, Optional[str]]:
    media = await fetch_media(url)
    return {"title": media.title, "thumbnail": media.thumbnail}


class UpstreamStream:
    """An open HTTP byte stream for one format.

    When the format carries a ranged-download hint and a known size, the
    remaining bytes are fetched as consecutive ``Range`` requests and
    presented as one continuous stream.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, fmt: FormatDescriptor) -> None:
        self._client = client
        self._response = response
        self._fmt = fmt
        self.closed = False

    def _ranged(self) -> bool:
        return bool(self._fmt.chunk_size and self._fmt.filesize)

    async def chunks(self) -> AsyncIterator[bytes]:
        offset = 0
        while True:
            async for chunk in self._response.aiter_bytes():
                offset += len(chunk)
                yield chunk
            await self._response.aclose()
            if not self._ranged() or offset >= self._fmt.filesize:
                return
            self._response = await _request(self._client, self._fmt, offset)
            self._response.raise_for_status()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


async def _request(client: httpx.AsyncClient, fmt: FormatDescriptor, offset: int = 0) -> httpx.Response:
    headers = {}
    if fmt.chunk_size and fmt.filesize:
        end = min(offset + fmt.chunk_size, fmt.filesize) - 1
        headers["Range"] = f"bytes={offset}-{end}"
    request = client.build_request("GET", fmt.url, headers=headers)
    return await client.send(request, stream=True)


async def open_stream(fmt: FormatDescriptor) -> UpstreamStream:
    """Open the byte stream behind ``fmt``; raises StreamOpenError on failure."""
    client = httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(None, connect=config.UPSTREAM_CONNECT_TIMEOUT),
        headers={**config.DEFAULT_HTTP_HEADERS, **fmt.http_headers},
    )
    try:
        response = await _request(client, fmt)
    except httpx.HTTPError as exc:
        await client.aclose()
        raise StreamOpenError(str(exc) or "Failed to open upstream stream") from exc
    except BaseException:
        with anyio.CancelScope(shield=True):
            await client.aclose()
        raise

    if response.status_code >= 400:
        await response.aclose()
        await client.aclose()
        raise StreamOpenError(
            f"Upstream responded with status {response.status_code}",
            code=response.status_code,
        )
    logger.debug("opened upstream for format %s", fmt.format_id)
    return UpstreamStream(client, response, fmt)
