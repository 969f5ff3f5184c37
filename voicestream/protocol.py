"""
Wire codec for the streaming subprotocol.

Every frame is a JSON text message with a ``message_type`` discriminator.
Audio travels base64-encoded inside the JSON envelope.

Client -> server: text, audio, flush, end.
Server -> client: session_started, partial_transcript, final_transcript,
audio, alignment, flush_done, done, error.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from json import dumps, loads, JSONDecodeError
from typing import Any, Optional, Union

from voicestream.errors import ProtocolError, ServerError
from voicestream.events import AlignmentEvent, TranscriptEvent, Word


# client message types
MSG_TEXT = "text"
MSG_AUDIO_INPUT = "audio"
MSG_FLUSH = "flush"
MSG_END = "end"

# server message types
MSG_SESSION_STARTED = "session_started"
MSG_PARTIAL_TRANSCRIPT = "partial_transcript"
MSG_FINAL_TRANSCRIPT = "final_transcript"
MSG_AUDIO = "audio"
MSG_ALIGNMENT = "alignment"
MSG_FLUSH_DONE = "flush_done"
MSG_DONE = "done"
MSG_ERROR = "error"

CONTROL_TYPES = frozenset({MSG_SESSION_STARTED, MSG_FLUSH_DONE, MSG_DONE})


@dataclass(frozen=True)
class ServerFrame:
    """
    A decoded server frame.

    payload depends on message_type: TranscriptEvent for transcripts, bytes
    for audio, AlignmentEvent, ServerError for error frames, the session id
    for session_started and None for the remaining control frames.
    """
    message_type: str
    payload: Any = None


# ---------------------------------------------------------------------------
# Client frames
# ---------------------------------------------------------------------------

def encode_text(text: str) -> str:
    return dumps({"message_type": MSG_TEXT, "text": text})


def encode_audio(chunk: bytes, sample_rate: int) -> str:
    return dumps({
        "message_type": MSG_AUDIO_INPUT,
        "audio_base_64": base64.b64encode(chunk).decode("ascii"),
        "sample_rate": sample_rate,
    })


def encode_flush(final: bool) -> str:
    return dumps({"message_type": MSG_FLUSH, "final": final})


def encode_end() -> str:
    return dumps({"message_type": MSG_END})


# ---------------------------------------------------------------------------
# Server frames
# ---------------------------------------------------------------------------

def decode_server_frame(message: Union[str, bytes]) -> ServerFrame:
    """Decode one server message. Raises ProtocolError for anything malformed."""
    if isinstance(message, (bytes, bytearray)):
        raise ProtocolError(f"unexpected binary frame ({len(message)} bytes)")
    try:
        data = loads(message)
    except JSONDecodeError as e:
        raise ProtocolError(f"frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"frame is not a JSON object: {message[:100]!r}")

    msg_type = data.get("message_type")
    decoder = _DECODERS.get(msg_type)
    if decoder is None:
        raise ProtocolError(f"unknown message_type {msg_type!r}")
    try:
        return ServerFrame(msg_type, decoder(data))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"malformed {msg_type} frame: {e!r}") from e


def _decode_session_started(data: dict) -> Optional[str]:
    session_id = data.get("session_id")
    return str(session_id) if session_id is not None else None


def _decode_partial(data: dict) -> TranscriptEvent:
    return TranscriptEvent(text=_text(data), is_final=False)


def _decode_final(data: dict) -> TranscriptEvent:
    words = tuple(
        Word(
            text=str(w["text"]),
            start=float(w["start"]),
            end=float(w["end"]),
            confidence=float(w.get("confidence", 1.0)),
        )
        for w in data.get("words") or ()
    )
    return TranscriptEvent(
        text=_text(data),
        is_final=True,
        words=words,
        language_code=data.get("language_code") or None,
    )


def _decode_audio(data: dict) -> bytes:
    encoded = data["audio_base_64"]
    if not isinstance(encoded, str):
        raise TypeError("audio_base_64 must be a string")
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 audio: {e}") from e


def _decode_alignment(data: dict) -> AlignmentEvent:
    characters = tuple(str(c) for c in data["characters"])
    starts = tuple(float(t) for t in data["character_start_times_seconds"])
    ends = tuple(float(t) for t in data["character_end_times_seconds"])
    if not len(characters) == len(starts) == len(ends):
        raise ValueError(
            f"alignment lengths differ: {len(characters)} chars, {len(starts)} starts, {len(ends)} ends"
        )
    return AlignmentEvent(characters=characters, character_start=starts, character_end=ends)


def _decode_error(data: dict) -> ServerError:
    return ServerError(str(data.get("error_type", "error")), str(data.get("message", data)))


def _decode_control(data: dict) -> None:
    return None


def _text(data: dict) -> str:
    text = data["text"]
    if not isinstance(text, str):
        raise TypeError("text must be a string")
    return text


_DECODERS = {
    MSG_SESSION_STARTED: _decode_session_started,
    MSG_PARTIAL_TRANSCRIPT: _decode_partial,
    MSG_FINAL_TRANSCRIPT: _decode_final,
    MSG_AUDIO: _decode_audio,
    MSG_ALIGNMENT: _decode_alignment,
    MSG_FLUSH_DONE: _decode_control,
    MSG_DONE: _decode_control,
    MSG_ERROR: _decode_error,
}
