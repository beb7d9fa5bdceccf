"""Streaming relay: pipes one upstream byte stream into one HTTP response.

A ``RelaySession`` is returned from a route like any Starlette response. When
the server calls it, the session

- opens the upstream stream and waits for its first chunk, both bounded by
  the first-chunk timeout,
- only then commits status and headers, and forwards every chunk in order,
- watches ``receive`` for the client going away while it does so.

Whichever of upstream end, upstream error, stall, response error or client
disconnect happens first decides the outcome; later events are ignored.
Failures before commitment produce a JSON 500. Failures after commitment
abort the connection by raising out of the session. The upstream stream is
closed exactly once on every path.
"""
from __future__ import annotations

import enum
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Protocol, Union

import anyio
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

import config
from errors import (
    ClientDisconnected,
    GatewayError,
    RelayFailure,
    ResponseChannelError,
    StallTimeout,
    StreamOpenError,
    UpstreamFailure,
)

logger = logging.getLogger(__name__)


class Upstream(Protocol):
    def chunks(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class RelayState(enum.Enum):
    IDLE = "idle"
    STREAM_OPENED = "stream_opened"
    HEADERS_COMMITTED = "headers_committed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (RelayState.COMPLETED, RelayState.FAILED)

Failure = Union[RelayFailure, GatewayError]


class RelaySession(Response):
    def __init__(
        self,
        opener: Callable[[], Awaitable[Upstream]],
        *,
        content_disposition: str,
        media_type: str,
        headers: Optional[Mapping[str, str]] = None,
        first_chunk_timeout: Optional[float] = None,
        background: Optional[BackgroundTask] = None,
    ) -> None:
        self.opener = opener
        self.status_code = 200
        self.media_type = media_type
        self.background = background
        self.error_headers = dict(headers or {})
        self.init_headers({**self.error_headers, "Content-Disposition": content_disposition})
        if first_chunk_timeout is None:
            first_chunk_timeout = config.FIRST_CHUNK_TIMEOUT
        self.first_chunk_timeout = first_chunk_timeout

        self.state = RelayState.IDLE
        self.committed = False
        self.failure: Optional[Failure] = None
        self.bytes_sent = 0
        self._upstream: Optional[Upstream] = None
        self._chunks: Optional[AsyncIterator[bytes]] = None

    def _transition(self, state: RelayState) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        self.state = state
        return True

    def _fail(self, failure: Failure) -> bool:
        if not self._transition(RelayState.FAILED):
            return False
        self.failure = failure
        logger.warning(
            "relay failed (%s, committed=%s, bytes=%d): %s",
            type(failure).__name__,
            self.committed,
            self.bytes_sent,
            failure.message,
        )
        return True

    async def _release(self) -> None:
        chunks, self._chunks = self._chunks, None
        upstream, self._upstream = self._upstream, None
        try:
            if chunks is not None and hasattr(chunks, "aclose"):
                await chunks.aclose()
        finally:
            if upstream is not None:
                await upstream.aclose()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            async with anyio.create_task_group() as task_group:

                async def pump() -> None:
                    await self._pump(send)
                    task_group.cancel_scope.cancel()

                async def watch() -> None:
                    await self._listen_for_disconnect(receive)
                    self._fail(ClientDisconnected("Client disconnected"))
                    task_group.cancel_scope.cancel()

                task_group.start_soon(pump)
                task_group.start_soon(watch)
        finally:
            with anyio.CancelScope(shield=True):
                await self._release()

        if self.state is RelayState.COMPLETED:
            logger.info("relay completed: %d bytes", self.bytes_sent)
            if self.background is not None:
                await self.background()
            return

        if not self.committed:
            await self._send_error(scope, receive, send)
        elif not isinstance(self.failure, ClientDisconnected):
            # Body framing has started; aborting the connection is the only signal left
            raise self.failure

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break

    async def _open(self) -> Optional[AsyncIterator[bytes]]:
        try:
            self._upstream = await self.opener()
        except GatewayError as exc:
            self._fail(exc)
            return None
        except Exception as exc:
            self._fail(StreamOpenError(str(exc) or "Failed to open upstream stream"))
            return None
        self._transition(RelayState.STREAM_OPENED)
        self._chunks = self._upstream.chunks()
        return self._chunks

    async def _pump(self, send: Send) -> None:
        # One deadline covers both opening the upstream and its first chunk
        try:
            with anyio.fail_after(self.first_chunk_timeout):
                chunks = await self._open()
                if chunks is None:
                    return
                first = await chunks.__anext__()
        except TimeoutError:
            self._fail(StallTimeout("Stream timeout: No data received"))
            return
        except StopAsyncIteration:
            self._fail(UpstreamFailure("Stream ended before any data was received"))
            return
        except Exception as exc:
            self._fail(self._upstream_failure(exc))
            return

        if not self._transition(RelayState.HEADERS_COMMITTED):
            return
        self.committed = True
        try:
            await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        except Exception as exc:
            self._fail(ResponseChannelError(str(exc) or "Response channel error"))
            return
        logger.info("relay committed headers (%s)", self.media_type)

        chunk: Optional[bytes] = first
        while chunk is not None:
            try:
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
            except Exception as exc:
                self._fail(ResponseChannelError(str(exc) or "Response channel error"))
                return
            self.bytes_sent += len(chunk)
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                chunk = None
            except Exception as exc:
                self._fail(self._upstream_failure(exc))
                return

        if self._transition(RelayState.COMPLETED):
            try:
                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except Exception:
                logger.debug("final frame not delivered", exc_info=True)

    @staticmethod
    def _upstream_failure(exc: Exception) -> UpstreamFailure:
        code: Any = getattr(exc, "code", None)
        response = getattr(exc, "response", None)
        if code is None and response is not None:
            code = getattr(response, "status_code", None)
        return UpstreamFailure(str(exc) or type(exc).__name__, code=code)

    async def _send_error(self, scope: Scope, receive: Receive, send: Send) -> None:
        failure = self.failure or UpstreamFailure("Internal server error")
        response = JSONResponse(failure.payload(), status_code=500, headers=self.error_headers)
        try:
            await response(scope, receive, send)
        except Exception:
            logger.debug("error response not delivered", exc_info=True)
