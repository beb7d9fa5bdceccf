"""Error types for the gateway.

``GatewayError`` subclasses are raised before any response has been written
and are rendered as ``{"error": ...}`` JSON by the app's exception handler.

``RelayFailure`` subclasses describe why a relay session ended early. They are
kept outside the ``GatewayError`` hierarchy: once headers are committed they
are raised out of the session to abort the connection, and no handler may try
to write a second response for them.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class _MessageError(Exception):
    def __init__(self, message: str, code: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.code is not None:
            body["code"] = self.code
        return body


class GatewayError(_MessageError):
    status_code = 500


class InvalidInput(GatewayError):
    status_code = 400


class BackendError(GatewayError):
    """The extraction backend could not describe the source."""


class NoSuitableFormat(GatewayError):
    pass


class StreamOpenError(GatewayError):
    """Opening the upstream byte stream failed; nothing was sent downstream."""


class RelayFailure(_MessageError):
    pass


class UpstreamFailure(RelayFailure):
    pass


class StallTimeout(RelayFailure):
    pass


class ClientDisconnected(RelayFailure):
    pass


class ResponseChannelError(RelayFailure):
    pass
