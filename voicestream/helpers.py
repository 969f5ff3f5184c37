"""
Stream helpers: drive a session from a producer-owned async iterable.

``stream_text`` forwards text chunks (e.g. LLM tokens) into a synthesis
session and ``stream_audio`` forwards PCM chunks (e.g. microphone frames)
into a recognition session. When the producer finishes, the helper issues
``flush()`` / ``end_stream()`` exactly once. The caller reads the returned
output stream and then awaits the error slot::

    result = stream_text(session, llm_tokens())
    async for chunk in result.output:
        player.write(chunk)
    if err := await result.error:
        ...
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import AsyncIterable, Awaitable, Callable, Generic, Optional, TypeVar

from voicestream.errors import SessionClosedError
from voicestream.events import TranscriptEvent
from voicestream.options import SessionMode
from voicestream.session import StreamingSession
from voicestream.streams import EventStream, StreamContext


logger = getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StreamResult(Generic[T]):
    """
    output: the consumer-facing stream; ends when the session ends.
    error: settled exactly once, with None on a clean finish or the error
        that ended the stream.
    """
    output: EventStream[T]
    error: asyncio.Future


class _Forwarder:
    """The single forwarding task of one helper invocation."""

    def __init__(
            self,
            session: StreamingSession,
            items: AsyncIterable,
            send: Callable[[object], Awaitable[None]],
            finish: Callable[[], Awaitable[None]],
            context: StreamContext,
    ) -> None:
        self._session = session
        self._items = items
        self._send = send
        self._finish = finish
        self._context = context
        self._cancelled = False
        self._log = session.context.logger or logger
        self.slot: asyncio.Future = asyncio.get_running_loop().create_future()
        self.task = asyncio.create_task(self._run(), name=f"voicestream-forward-{session.id}")
        self.task.add_done_callback(self._on_task_done)

        self._unwatch = context.on_cancel(self._on_context_cancel)
        session.add_done_callback(self._on_session_done)

    def _on_context_cancel(self) -> None:
        self._cancelled = True
        self._session.abort()
        self.task.cancel()

    def _on_session_done(self, session: StreamingSession) -> None:
        # the input may never end on its own; stop waiting for it
        if not self._cancelled:
            self.task.cancel()

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._unwatch()
        # only unsettled when the task was cancelled before it started
        if self._cancelled:
            self._settle(SessionClosedError("stream cancelled"))
        else:
            self._settle(self._session.error)

    def _settle(self, error: Optional[BaseException]) -> None:
        if not self.slot.done():
            self.slot.set_result(error)

    async def _run(self) -> None:
        session = self._session
        try:
            async for item in self._items:
                if item:
                    await self._send(item)
            await self._finish()
            self._settle(await session.wait_closed())

        except asyncio.CancelledError:
            # internal task: cancelled by the context or by the session ending
            if self._cancelled:
                self._log.info("[WS] stream on session %s cancelled, closing.", session.id)
                await session.close()
                self._settle(SessionClosedError("stream cancelled"))
            else:
                self._settle(await session.wait_closed())

        except SessionClosedError:
            self._settle(await session.wait_closed())

        except Exception as e:
            self._log.warning("[WS] stream input failed on session %s: %r", session.id, e)
            await session.close()
            self._settle(e)


def stream_text(
        session: StreamingSession,
        texts: AsyncIterable[str],
        *,
        context: Optional[StreamContext] = None,
) -> StreamResult[bytes]:
    """
    Forward text chunks into a synthesis session; flush(final=True) when
    ``texts`` is exhausted. Output is the session's audio stream.
    """
    session._require(SessionMode.SYNTHESIS, "stream_text")
    session._attach_helper()
    forwarder = _Forwarder(
        session,
        texts,
        session.send_text,
        session.flush,
        context or session.context,
    )
    return StreamResult(session.audio, forwarder.slot)


def stream_audio(
        session: StreamingSession,
        chunks: AsyncIterable[bytes],
        *,
        context: Optional[StreamContext] = None,
) -> StreamResult[TranscriptEvent]:
    """
    Forward audio chunks into a recognition session; end_stream() when
    ``chunks`` is exhausted. Output is the session's transcript stream.
    """
    session._require(SessionMode.RECOGNITION, "stream_audio")
    session._attach_helper()
    forwarder = _Forwarder(
        session,
        chunks,
        session.send_audio,
        session.end_stream,
        context or session.context,
    )
    return StreamResult(session.transcripts, forwarder.slot)
