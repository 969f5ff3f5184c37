from __future__ import annotations

from logging import Logger, getLogger
from typing import Dict, Optional, Tuple, Union

from voicestream.errors import ProtocolError
from voicestream.events import AlignmentEvent, ErrorKind, StreamError, TranscriptEvent
from voicestream.options import SessionMode
from voicestream.protocol import (
    CONTROL_TYPES,
    MSG_ALIGNMENT,
    MSG_AUDIO,
    MSG_ERROR,
    MSG_FINAL_TRANSCRIPT,
    MSG_PARTIAL_TRANSCRIPT,
    decode_server_frame,
)
from voicestream.streams import EventStream


logger = getLogger(__name__)


class InboundDemultiplexer:
    """
    Routes decoded server frames into typed output streams.

    Owned by the session's receive loop, which is the only caller of
    ``dispatch`` and ``close_streams``. Only the primary stream of the mode
    (audio for synthesis, transcripts for recognition) pauses the receive
    loop when its consumer falls behind. Alignments are optional reading:
    when nobody keeps up with them, new ones are dropped. The error stream
    never pauses the loop either.
    """

    def __init__(self, mode: SessionMode, buffer_size: int, log: Logger = logger) -> None:
        self.mode = mode
        self._log = log
        self.transcripts: EventStream[TranscriptEvent] = EventStream("transcripts", buffer_size)
        self.audio: EventStream[bytes] = EventStream("audio", buffer_size)
        self.alignments: EventStream[AlignmentEvent] = EventStream("alignments", buffer_size)
        self.errors: EventStream[StreamError] = EventStream("errors", buffer_size)

        if mode is SessionMode.SYNTHESIS:
            self.primary: EventStream = self.audio
            self._routes: Dict[str, EventStream] = {MSG_AUDIO: self.audio, MSG_ALIGNMENT: self.alignments}
        else:
            self.primary = self.transcripts
            self._routes = {MSG_PARTIAL_TRANSCRIPT: self.transcripts, MSG_FINAL_TRANSCRIPT: self.transcripts}

        self.frames_received = 0
        self.frames_dropped = 0
        self.events_dropped = 0

    @property
    def streams(self) -> Tuple[EventStream, ...]:
        """All output streams in closing order; errors last."""
        return self.transcripts, self.audio, self.alignments, self.errors

    async def dispatch(self, message: Union[str, bytes]) -> Optional[str]:
        """
        Handle one raw server message.

        Returns the message type of control frames (flush_done, done, ...)
        for the session to act on, None for everything routed here.
        """
        self.frames_received += 1
        try:
            frame = decode_server_frame(message)
        except ProtocolError as e:
            self._drop(e)
            return None

        if frame.message_type in CONTROL_TYPES:
            return frame.message_type

        if frame.message_type == MSG_ERROR:
            self._log.warning("[WS] server reported: %s", frame.payload)
            self.report(StreamError(ErrorKind.SERVER, str(frame.payload), frame.payload))
            return None

        stream = self._routes.get(frame.message_type)
        if stream is None:
            self._drop(ProtocolError(f"unexpected {frame.message_type} frame in a {self.mode.value} session"))
            return None

        if stream is self.primary:
            await stream.put(frame.payload)
        elif not stream.put_nowait(frame.payload):
            self.events_dropped += 1
            if self.events_dropped == 1:
                self._log.warning("[WS] %s stream is not being read, dropping new events.", stream.name)
        return None

    def report(self, error: StreamError) -> None:
        """Put an error on the error stream without blocking."""
        if not self.errors.put_nowait(error, evict=error.fatal):
            self._log.warning("[WS] error stream unavailable, dropped: %s", error.message)

    def close_streams(self) -> None:
        for stream in self.streams:
            stream.close()

    def _drop(self, error: ProtocolError) -> None:
        self.frames_dropped += 1
        self._log.warning("[WS] dropped frame: %s", error)
        self.report(StreamError(ErrorKind.PROTOCOL, str(error), error))
