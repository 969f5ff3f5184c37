from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


@dataclass(frozen=True)
class Word:
    """
    A single recognised word with timing.

    Attributes:
        text: The word as transcribed.
        start: Start of the word in seconds from the beginning of the audio.
        end: End of the word in seconds.
        confidence: Recogniser confidence, 0..1.
    """
    text: str
    start: float
    end: float
    confidence: float = 1.0


@dataclass(frozen=True, init=True)
class TranscriptEvent:
    """
    A single transcript event from a recognition session.

    Attributes:
        text: The transcribed text for this event.
        is_final: True if this is a committed (final) transcript segment.
            False for partial/interim results that may still change.
        words: Word timings, only present on final events when word
            timestamps were requested.
        language_code: Detected language, if the server reported one.
    """
    text: str
    is_final: bool
    words: Tuple[Word, ...] = ()
    language_code: Optional[str] = None


@dataclass(frozen=True)
class AlignmentEvent:
    """Per-character timing of synthesised audio; the three tuples are parallel."""
    characters: Tuple[str, ...]
    character_start: Tuple[float, ...]
    character_end: Tuple[float, ...]


class ErrorKind(str, Enum):
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    SERVER = "server"


@dataclass(frozen=True)
class StreamError:
    """An asynchronous error delivered on a session's error stream."""
    kind: ErrorKind
    message: str
    cause: Optional[BaseException] = None

    @property
    def fatal(self) -> bool:
        return self.kind is ErrorKind.TRANSPORT
