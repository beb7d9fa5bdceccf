"""Format descriptors, format selection policy and download filenames."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from errors import NoSuitableFormat

# kind -> (file extension, Content-Type)
MEDIA_KINDS = {
    "audio": ("mp3", "audio/mpeg"),
    "video": ("mp4", "video/mp4"),
}

# yt-dlp protocols whose url is the media itself rather than a manifest
DIRECT_PROTOCOLS = {"http", "https"}


@dataclass
class FormatDescriptor:
    format_id: str
    container: str
    has_audio: bool
    has_video: bool
    url: str = ""
    audio_bitrate: Optional[float] = None
    total_bitrate: Optional[float] = None
    height: Optional[int] = None
    filesize: Optional[int] = None
    chunk_size: Optional[int] = None
    http_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_ytdlp(cls, fmt: Dict[str, Any]) -> "FormatDescriptor":
        """Build a descriptor from one entry of yt-dlp's ``formats`` list."""
        protocol = fmt.get("protocol") or "https"
        url = fmt.get("url") or ""
        if protocol not in DIRECT_PROTOCOLS:
            url = ""
        downloader_options = fmt.get("downloader_options") or {}
        return cls(
            format_id=str(fmt.get("format_id") or ""),
            container=fmt.get("ext") or "",
            has_audio=fmt.get("acodec") not in (None, "none"),
            has_video=fmt.get("vcodec") not in (None, "none"),
            url=url,
            audio_bitrate=fmt.get("abr"),
            total_bitrate=fmt.get("tbr"),
            height=fmt.get("height"),
            filesize=fmt.get("filesize"),
            chunk_size=downloader_options.get("http_chunk_size"),
            http_headers=dict(fmt.get("http_headers") or {}),
        )


def _by_audio_bitrate(fmt: FormatDescriptor) -> float:
    return fmt.audio_bitrate or 0


def _by_quality(fmt: FormatDescriptor) -> tuple:
    return (fmt.height or 0, fmt.total_bitrate or 0)


def select_format(formats: List[FormatDescriptor], kind: str) -> FormatDescriptor:
    """Pick the format to relay for ``kind`` ("audio" or "video").

    Audio prefers audio-only streams and falls back to any stream carrying
    audio; video prefers muxed audio+video streams and falls back to any
    stream carrying video. Each group is ranked best-first and ties keep the
    backend's order.
    """
    candidates = [fmt for fmt in formats if fmt.url]

    if kind == "audio":
        groups = [
            [fmt for fmt in candidates if fmt.has_audio and not fmt.has_video],
            [fmt for fmt in candidates if fmt.has_audio],
        ]
        rank = _by_audio_bitrate
    elif kind == "video":
        groups = [
            [fmt for fmt in candidates if fmt.has_video and fmt.has_audio],
            [fmt for fmt in candidates if fmt.has_video],
        ]
        rank = _by_quality
    else:
        raise ValueError(f"Unknown media kind: {kind}")

    for group in groups:
        if group:
            return sorted(group, key=rank, reverse=True)[0]
    raise NoSuitableFormat(f"No {kind} format available for this source")


def sanitize_title(title: Optional[str]) -> str:
    """Keep letters, digits and whitespace; fall back to ``video``."""
    safe_title = "".join(ch for ch in (title or "") if ch.isalnum() or ch.isspace()).strip()
    return safe_title or "video"


def content_disposition(title: Optional[str], ext: str) -> str:
    return f'attachment; filename="{quote(sanitize_title(title))}.{ext}"'
