"""Runtime settings for the relay gateway, read once from the environment."""
from __future__ import annotations

import logging
import os
import sys

PORT = int(os.getenv("PORT", "3500") or "3500")
HOST = os.getenv("HOST", "0.0.0.0")

# Budget for the first upstream chunk; later chunks are not timed.
FIRST_CHUNK_TIMEOUT = float(os.getenv("FIRST_CHUNK_TIMEOUT", "30") or "30")
# Keep-alive ceiling for the listener, long enough for large transfers.
CONNECTION_TIMEOUT = int(os.getenv("CONNECTION_TIMEOUT", "1800") or "1800")
UPSTREAM_CONNECT_TIMEOUT = float(os.getenv("UPSTREAM_CONNECT_TIMEOUT", "15") or "15")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_HTTP_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept, User-Agent",
}

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = LOG_LEVEL) -> None:
    """Attach a single stdout handler to the root logger."""
    root = logging.getLogger()
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(handler)

    # Route uvicorn through the root handler instead of its own
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
    logging.getLogger("httpx").setLevel(logging.WARNING)
