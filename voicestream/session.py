"""
Streaming session: the connection manager for one duplex speech session.

Lifecycle
---------
``connect()`` validates the options, opens the WebSocket and waits for the
server's ``session_started`` frame. From then on two things run against the
same connection:

- callers write through ``send_text`` / ``send_audio`` / ``flush`` /
  ``end_stream`` (serialized by the outbound multiplexer), and
- one background receive task reads frames and fans them out into the
  ``transcripts``, ``audio``, ``alignments`` and ``errors`` streams.

States::

    IDLE -> CONNECTING -> OPEN <-> FLUSHING -> CLOSED
                 \\            \\        \\
                  +------------+---------+--> ERROR_CLOSED

The receive task is the only place that closes the output streams and,
once the session is OPEN, the transport. ``close()`` cancels it and waits for
it to finish, so every path to a terminal state goes through the same
shutdown code.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from logging import getLogger
from typing import Optional
from urllib.parse import quote, urlencode
from uuid import uuid4

from websockets import connect as ws_connect, ConnectionClosed, ConnectionClosedError
from websockets.exceptions import InvalidHandshake, InvalidURI

from voicestream.demultiplexer import InboundDemultiplexer
from voicestream.errors import (
    ConnectError,
    ProtocolError,
    SessionClosedError,
    TransportError,
    UnsupportedOperationError,
    ValidationError,
)
from voicestream.events import AlignmentEvent, ErrorKind, StreamError, TranscriptEvent
from voicestream.multiplexer import OutboundMultiplexer
from voicestream.options import ConnectionConfig, SessionMode, SessionOptions
from voicestream.protocol import (
    MSG_DONE,
    MSG_ERROR,
    MSG_FLUSH_DONE,
    MSG_SESSION_STARTED,
    decode_server_frame,
    encode_audio,
    encode_end,
    encode_flush,
    encode_text,
)
from voicestream.streams import EventStream, StreamContext


logger = getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    FLUSHING = "flushing"
    CLOSED = "closed"
    ERROR_CLOSED = "error_closed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ERROR_CLOSED)


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED, SessionState.ERROR_CLOSED},
    SessionState.CONNECTING: {SessionState.OPEN, SessionState.CLOSED, SessionState.ERROR_CLOSED},
    SessionState.OPEN: {SessionState.FLUSHING, SessionState.CLOSED, SessionState.ERROR_CLOSED},
    SessionState.FLUSHING: {SessionState.OPEN, SessionState.CLOSED, SessionState.ERROR_CLOSED},
    SessionState.CLOSED: set(),
    SessionState.ERROR_CLOSED: set(),
}


class StreamingSession:
    """
    One synthesis or recognition session over a WebSocket.

    Create with ``connect()``; the constructor does no I/O. All methods must
    be called from the event loop the session was created on.
    """

    def __init__(
            self,
            mode: SessionMode,
            options: SessionOptions,
            *,
            config: Optional[ConnectionConfig] = None,
            context: Optional[StreamContext] = None,
    ) -> None:
        self.mode = mode
        self.options = options
        self.config = config or ConnectionConfig()
        self.context = context or StreamContext()
        self.id: Optional[str] = None

        self._log = self.context.logger or logger
        self._tag = "[TTS]" if mode is SessionMode.SYNTHESIS else "[STT]"
        self._state = SessionState.IDLE
        self._ws = None
        self._mux: Optional[OutboundMultiplexer] = None
        self._demux = InboundDemultiplexer(mode, self.config.stream_buffer_size, self._log)
        self._rx_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._unwatch = None
        self._closing = False
        self._final_flush = False
        self._flushed = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._closed: asyncio.Future = asyncio.get_running_loop().create_future()
        self._helper_attached = False

    # -----------------------------------------------------------------------
    # Public state
    # -----------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> Optional[BaseException]:
        """The fatal error that ended the session, if any."""
        return self._error

    @property
    def done(self) -> bool:
        """True once the session is terminal and its transport released."""
        return self._closed.done()

    @property
    def transcripts(self) -> EventStream[TranscriptEvent]:
        return self._demux.transcripts

    @property
    def audio(self) -> EventStream[bytes]:
        return self._demux.audio

    @property
    def alignments(self) -> EventStream[AlignmentEvent]:
        return self._demux.alignments

    @property
    def errors(self) -> EventStream[StreamError]:
        return self._demux.errors

    async def wait_closed(self) -> Optional[BaseException]:
        """Wait for the session to end; returns the terminal error or None."""
        return await asyncio.shield(self._closed)

    def add_done_callback(self, callback) -> None:
        """callback(session) runs once the session has ended."""
        self._closed.add_done_callback(lambda _: callback(self))

    # -----------------------------------------------------------------------
    # Outbound commands
    # -----------------------------------------------------------------------

    async def send_text(self, text: str) -> None:
        """Queue text for synthesis. Waits until the frame is on the transport."""
        self._require(SessionMode.SYNTHESIS, "send_text")
        if not text:
            raise ValidationError("text", "cannot be empty")
        self._admit_open()
        await self._mux.send(encode_text(text), self._admit_open)

    async def send_audio(self, chunk: bytes) -> None:
        """Send raw audio for recognition. Waits until the frame is on the transport."""
        self._require(SessionMode.RECOGNITION, "send_audio")
        if not chunk:
            raise ValidationError("audio", "chunk cannot be empty")
        self._admit_open()
        await self._mux.send(encode_audio(bytes(chunk), self.options.sample_rate), self._admit_open)

    async def flush(self, *, final: bool = True) -> None:
        """
        Ask the server to synthesise everything sent so far.

        final=True ends the session: the call returns once the request is
        written and the output streams close after the server confirms.
        final=False waits for the confirmation and leaves the session OPEN
        for more text. A flush while one is in progress is a no-op.
        """
        self._require(SessionMode.SYNTHESIS, "flush")
        if self._state is SessionState.FLUSHING:
            return
        self._admit_open()

        def admit() -> bool:
            if self._state is SessionState.FLUSHING:
                return False
            self._admit_open()
            self._final_flush = final
            self._flushed.clear()
            self._transition(SessionState.FLUSHING)
            return True

        sent = await self._mux.send(encode_flush(final), admit)
        if not sent or final:
            return
        await self._flushed.wait()
        if self._state.terminal:
            raise SessionClosedError(f"session {self._state.value} before the flush completed")

    async def end_stream(self) -> None:
        """
        Signal that no more audio follows. Remaining transcripts are still
        delivered; the session closes when the server is done.
        """
        self._require(SessionMode.RECOGNITION, "end_stream")
        if self._state is SessionState.FLUSHING:
            return
        self._admit_open()

        def admit() -> bool:
            if self._state is SessionState.FLUSHING:
                return False
            self._admit_open()
            self._transition(SessionState.FLUSHING)
            return True

        await self._mux.send(encode_end(), admit)

    async def close(self) -> None:
        """
        Tear the session down. Safe to call any number of times, from any
        state; returns once the streams are closed and the transport released.
        """
        if self._closed.done():
            return
        if self._state is SessionState.IDLE:
            self._closing = True
            self._enter_terminal(SessionState.CLOSED)
            self._settle()
            return
        self.abort()
        await asyncio.wait([self._closed])

    def abort(self) -> None:
        """Start closing without waiting; ``wait_closed()`` reports completion."""
        self._closing = True
        if self._connect_task is not None:
            self._connect_task.cancel()
        elif self._rx_task is not None and not self._state.terminal:
            # once terminal the receiver is already closing the transport
            self._rx_task.cancel()

    async def __aenter__(self) -> "StreamingSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -----------------------------------------------------------------------
    # Connect
    # -----------------------------------------------------------------------

    def _build_url(self) -> str:
        base = self.config.base_url.rstrip("/")
        if self.mode is SessionMode.SYNTHESIS:
            path = f"/text-to-speech/{quote(self.options.voice_id, safe='')}/stream-input"
        else:
            path = "/speech-to-text/stream"
        return f"{base}{path}?{urlencode(self.options.query_params(self.mode))}"

    async def _open(self, timeout: Optional[float]) -> None:
        if self.context.cancelled:
            await self._abandon(SessionState.ERROR_CLOSED)
            raise ConnectError("connect cancelled before the handshake")

        self._transition(SessionState.CONNECTING)
        task = asyncio.current_task()
        self._connect_task = task
        unwatch = self.context.on_cancel(task.cancel)
        try:
            try:
                async with asyncio.timeout(timeout if timeout is not None else self.config.open_timeout):
                    await self._handshake()
            finally:
                unwatch()
                self._connect_task = None
        except asyncio.CancelledError:
            if not (self.context.cancelled or self._closing):
                await self._abandon(SessionState.ERROR_CLOSED)
                raise
            task.uncancel()
            await self._abandon(SessionState.CLOSED if self._closing else SessionState.ERROR_CLOSED)
            raise ConnectError("connect cancelled") from None
        except TimeoutError as e:
            await self._abandon(SessionState.ERROR_CLOSED)
            raise ConnectError("handshake timed out") from e
        except (OSError, InvalidHandshake, InvalidURI, ConnectionClosed) as e:
            await self._abandon(SessionState.ERROR_CLOSED)
            raise ConnectError(f"handshake failed: {e}") from e
        except ConnectError:
            await self._abandon(SessionState.ERROR_CLOSED)
            raise

        self._mux = OutboundMultiplexer(self._ws, self._log)
        self._transition(SessionState.OPEN)
        self._rx_task = asyncio.create_task(self._receive_loop(), name=f"voicestream-rx-{self.id}")
        self._rx_task.add_done_callback(self._on_receiver_done)
        self._unwatch = self.context.on_cancel(self._rx_task.cancel)

    async def _handshake(self) -> None:
        url = self._build_url()
        headers = {"xi-api-key": self.config.api_key} if self.config.api_key else None
        self._log.debug("%s connecting to %s", self._tag, url)

        self._ws = await ws_connect(
            url,
            additional_headers=headers,
            open_timeout=self.config.open_timeout,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
            close_timeout=self.config.close_timeout,
            max_queue=self.config.max_queue,
        )

        # Verify handshake
        first_msg = await self._ws.recv()
        try:
            frame = decode_server_frame(first_msg)
        except ProtocolError as e:
            raise ConnectError(f"invalid handshake frame: {e}") from e
        if frame.message_type == MSG_ERROR:
            raise ConnectError(f"session rejected: {frame.payload}") from frame.payload
        if frame.message_type != MSG_SESSION_STARTED:
            raise ConnectError(f"session did not start correctly: got {frame.message_type}")

        self.id = frame.payload or uuid4().hex
        self._log.info("%s session %s started.", self._tag, self.id)

    async def _abandon(self, state: SessionState) -> None:
        """Tear down a session that never reached OPEN."""
        self._enter_terminal(state)
        ws, self._ws = self._ws, None
        try:
            if ws is not None:
                await ws.close()
        finally:
            self._settle()

    # -----------------------------------------------------------------------
    # Receive loop
    # -----------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        """Background task receiving frames until the session ends."""
        try:
            async for message in self._ws:
                control = await self._demux.dispatch(message)
                if control == MSG_FLUSH_DONE:
                    if self._complete_flush():
                        break
                elif control == MSG_DONE:
                    self._log.debug("%s server finished session %s.", self._tag, self.id)
                    break
                elif control == MSG_SESSION_STARTED:
                    self._log.debug("%s repeated session_started ignored.", self._tag)
            else:
                self._log.debug("%s session %s closed cleanly by the server.", self._tag, self.id)

        except ConnectionClosedError as e:
            self._log.warning("%s connection closed unexpectedly: %s", self._tag, e)
            self._fail(TransportError(f"connection closed unexpectedly: {e}"), e)
        except asyncio.CancelledError:
            self._log.debug("%s receiver of session %s cancelled.", self._tag, self.id)
            raise
        except Exception as e:
            self._log.exception("%s receiver crashed: %r", self._tag, e)
            self._fail(TransportError(f"receiver failed: {e!r}"), e)
        finally:
            if self._unwatch is not None:
                self._unwatch()
            self._enter_terminal(SessionState.CLOSED)
            await self._ws.close()
            self._log.info("%s session %s %s.", self._tag, self.id, self._state.value)

    def _on_receiver_done(self, task: asyncio.Task) -> None:
        if not self._state.terminal:
            # cancelled before the loop body ran; nothing else will close the transport
            self._enter_terminal(SessionState.CLOSED)
            self._ws.transport.abort()
        self._settle()

    def _complete_flush(self) -> bool:
        """Handle flush_done. Returns True when the session is finished."""
        if self._state is not SessionState.FLUSHING:
            self._log.debug("%s flush_done outside of a flush ignored.", self._tag)
            return False
        if self._final_flush or self.mode is SessionMode.RECOGNITION:
            return True
        self._transition(SessionState.OPEN)
        self._flushed.set()
        return False

    def _fail(self, error: TransportError, cause: BaseException) -> None:
        """Record a fatal error; it reaches the error stream before any stream closes."""
        if self._error is not None or self._state.terminal:
            return
        error.__cause__ = cause
        self._error = error
        self._demux.report(StreamError(ErrorKind.TRANSPORT, str(error), error))
        self._transition(SessionState.ERROR_CLOSED)

    # -----------------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------------

    def _transition(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"invalid session transition {self._state.value} -> {new.value}")
        self._log.debug("%s session %s: %s -> %s", self._tag, self.id, self._state.value, new.value)
        self._state = new

    def _enter_terminal(self, state: SessionState) -> None:
        if not self._state.terminal:
            self._transition(state)
        self._demux.close_streams()
        self._flushed.set()

    def _settle(self) -> None:
        if not self._closed.done():
            self._closed.set_result(self._error)

    def _admit_open(self) -> bool:
        if self._state is not SessionState.OPEN:
            raise SessionClosedError(f"session is {self._state.value}")
        return True

    def _require(self, mode: SessionMode, operation: str) -> None:
        if self.mode is not mode:
            raise UnsupportedOperationError(f"{operation} is not available in a {self.mode.value} session")

    def _attach_helper(self) -> None:
        if self._helper_attached:
            raise UnsupportedOperationError("a stream helper is already attached to this session")
        self._helper_attached = True

    def __repr__(self) -> str:
        return f"<StreamingSession {self.mode.value} id={self.id} state={self._state.value}>"


async def connect(
        mode: SessionMode,
        options: Optional[SessionOptions] = None,
        *,
        config: Optional[ConnectionConfig] = None,
        context: Optional[StreamContext] = None,
        timeout: Optional[float] = None,
) -> StreamingSession:
    """
    Open a streaming session.

    Raises ValidationError (before any network activity) for bad options and
    ConnectError when the handshake fails, times out or the context is
    cancelled. Cancelling the calling task tears the half-open connection
    down and propagates CancelledError.
    """
    options = options or SessionOptions()
    options.validate(mode)
    session = StreamingSession(mode, options, config=config, context=context)
    await session._open(timeout)
    return session
