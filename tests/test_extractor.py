import json
import socket
from functools import partial

import anyio
import httpx
import pytest
import yt_dlp

import extractor
from errors import BackendError, StreamOpenError
from formats import FormatDescriptor
from relay import RelaySession, RelayState

SCOPE = {"type": "http", "method": "GET", "path": "/mp4"}


def test_pick_thumbnail_prefers_third_candidate():
    info = {"thumbnails": [{"url": "t0"}, {"url": "t1"}, {"url": "t2"}, {"url": "t3"}]}
    assert extractor.pick_thumbnail(info) == "t2"


def test_pick_thumbnail_falls_back_to_first():
    assert extractor.pick_thumbnail({"thumbnails": [{"url": "t0"}, {"url": "t1"}]}) == "t0"
    assert extractor.pick_thumbnail({"thumbnails": [], "thumbnail": "single"}) == "single"


def test_pick_thumbnail_none_when_absent():
    assert extractor.pick_thumbnail({}) is None
    assert extractor.pick_thumbnail({"thumbnails": []}) is None


def test_is_supported_url():
    assert extractor.is_supported_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
    assert not extractor.is_supported_url("not a url")
    assert not extractor.is_supported_url("ftp://www.youtube.com/watch?v=dQw4w9WgXcQ")
    assert not extractor.is_supported_url("https://")


def test_fetch_media_builds_descriptors(monkeypatch):
    info = {
        "title": "A Title",
        "thumbnails": [{"url": "t0"}],
        "formats": [
            {"format_id": "140", "ext": "m4a", "acodec": "mp4a.40.2", "vcodec": "none", "abr": 129.5, "url": "https://cdn/140", "protocol": "https"},
            {"format_id": "18", "ext": "mp4", "acodec": "mp4a.40.2", "vcodec": "avc1", "url": "https://cdn/18", "protocol": "https"},
        ],
    }
    monkeypatch.setattr(extractor, "_extract", lambda url: info)

    media = anyio.run(extractor.fetch_media, "https://www.youtube.com/watch?v=x")
    assert media.title == "A Title"
    assert media.thumbnail == "t0"
    assert [fmt.format_id for fmt in media.formats] == ["140", "18"]
    assert media.formats[1].has_video and media.formats[1].has_audio


def test_fetch_media_wraps_backend_errors(monkeypatch):
    def broken(url):
        raise yt_dlp.utils.DownloadError("ERROR: Video unavailable")

    monkeypatch.setattr(extractor, "_extract", broken)
    with pytest.raises(BackendError) as excinfo:
        anyio.run(extractor.lookup, "https://www.youtube.com/watch?v=x")
    assert "Video unavailable" in excinfo.value.message
    assert excinfo.value.status_code == 500


def _patch_client(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(extractor.httpx, "AsyncClient", factory)


async def _drain(stream):
    body = b""
    async for chunk in stream.chunks():
        body += chunk
    await stream.aclose()
    await stream.aclose()
    return body


def test_open_stream_sends_format_headers(monkeypatch):
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, content=b"payload")

    _patch_client(monkeypatch, handler)
    fmt = FormatDescriptor("18", "mp4", True, True, url="https://cdn.example/18", http_headers={"Referer": "https://ref"})

    async def main():
        stream = await extractor.open_stream(fmt)
        body = await _drain(stream)
        assert stream.closed
        return body

    assert anyio.run(main) == b"payload"
    assert seen["referer"] == "https://ref"
    assert seen["user-agent"].startswith("Mozilla/5.0")


def test_open_stream_rejects_error_status(monkeypatch):
    _patch_client(monkeypatch, lambda request: httpx.Response(403, content=b"forbidden"))
    fmt = FormatDescriptor("18", "mp4", True, True, url="https://cdn.example/18")

    with pytest.raises(StreamOpenError) as excinfo:
        anyio.run(extractor.open_stream, fmt)
    assert excinfo.value.code == 403


def test_open_stream_wraps_transport_errors(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    _patch_client(monkeypatch, handler)
    fmt = FormatDescriptor("18", "mp4", True, True, url="https://cdn.example/18")

    with pytest.raises(StreamOpenError):
        anyio.run(extractor.open_stream, fmt)


def test_ranged_stream_fetches_consecutive_ranges(monkeypatch):
    data = b"0123456789"
    ranges = []

    def handler(request):
        spec = request.headers["range"].split("=", 1)[1]
        start, end = (int(part) for part in spec.split("-"))
        ranges.append((start, end))
        return httpx.Response(206, content=data[start : end + 1])

    _patch_client(monkeypatch, handler)
    fmt = FormatDescriptor("251", "webm", True, False, url="https://cdn.example/251", filesize=len(data), chunk_size=4)

    async def main():
        stream = await extractor.open_stream(fmt)
        return await _drain(stream)

    assert anyio.run(main) == data
    assert ranges == [(0, 3), (4, 7), (8, 9)]


def test_relay_times_out_when_upstream_never_answers():
    # Accepts connections into the backlog but never responds
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    port = listener.getsockname()[1]
    fmt = FormatDescriptor("18", "mp4", True, True, url=f"http://127.0.0.1:{port}/media")
    session = RelaySession(partial(extractor.open_stream, fmt), content_disposition="attachment", media_type="video/mp4", first_chunk_timeout=0.2)
    sent = []

    async def receive():
        await anyio.sleep_forever()

    async def send(message):
        sent.append(message)

    async def main():
        with anyio.fail_after(3):
            await session(SCOPE, receive, send)

    try:
        anyio.run(main)
    finally:
        listener.close()

    assert session.state is RelayState.FAILED
    assert [m["status"] for m in sent if m["type"] == "http.response.start"] == [500]
    body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    assert json.loads(body) == {"error": "Stream timeout: No data received"}
