from voicestream.errors import (
    ConnectError,
    ProtocolError,
    ServerError,
    SessionClosedError,
    StreamingError,
    TransportError,
    UnsupportedOperationError,
    ValidationError,
)
from voicestream.events import AlignmentEvent, ErrorKind, StreamError, TranscriptEvent, Word
from voicestream.helpers import StreamResult, stream_audio, stream_text
from voicestream.options import ConnectionConfig, SessionMode, SessionOptions, VoiceSettings, VOICE_PRESETS
from voicestream.session import SessionState, StreamingSession, connect
from voicestream.streams import EventStream, StreamContext

__all__ = [
    "AlignmentEvent",
    "ConnectError",
    "ConnectionConfig",
    "ErrorKind",
    "EventStream",
    "ProtocolError",
    "ServerError",
    "SessionClosedError",
    "SessionMode",
    "SessionOptions",
    "SessionState",
    "StreamContext",
    "StreamError",
    "StreamResult",
    "StreamingError",
    "StreamingSession",
    "TranscriptEvent",
    "TransportError",
    "UnsupportedOperationError",
    "VOICE_PRESETS",
    "ValidationError",
    "VoiceSettings",
    "Word",
    "connect",
    "stream_audio",
    "stream_text",
]
