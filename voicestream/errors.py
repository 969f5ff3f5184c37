"""
Error taxonomy for streaming sessions.

Synchronous errors are raised to the caller of the failing operation:

- ``ValidationError``: bad option or payload, raised before any network activity.
- ``ConnectError``: handshake failed, was refused, timed out or was cancelled.
- ``SessionClosedError``: operation attempted outside a state that allows it.
- ``UnsupportedOperationError``: operation does not exist for the session mode.

Asynchronous errors travel on the session's error stream (wrapped in a
``StreamError`` event) and, when fatal, in the terminal-error slot:

- ``TransportError``: the connection failed mid-session (fatal).
- ``ProtocolError``: a frame could not be decoded (non-fatal, frame dropped).
- ``ServerError``: the server reported an error frame (non-fatal).
"""
from __future__ import annotations


class StreamingError(Exception):
    """Base class of all voicestream errors."""


class ValidationError(StreamingError, ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"validation error for {field}: {message}")
        self.field = field
        self.message = message


class ConnectError(StreamingError):
    pass


class TransportError(StreamingError):
    pass


class ProtocolError(StreamingError):
    pass


class ServerError(StreamingError):
    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(f"server error ({error_type}): {message}")
        self.error_type = error_type
        self.message = message


class SessionClosedError(StreamingError):
    pass


class UnsupportedOperationError(StreamingError):
    pass
