"""
WebSocket relay between browser/mic clients and streaming speech sessions.

/ws/transcribe
    client -> binary PCM frames, then the text message "end"
    server -> {"type": "partial"|"final", "text", "words"} ... {"type": "end", "error"}

/ws/speak?voice_id=...
    client -> text messages, then an empty text message
    server -> binary audio frames ... {"type": "end", "error"}

Each client connection gets its own session; the helpers own the session's
input side and the endpoint owns the output side.
"""
from __future__ import annotations

from dataclasses import replace
from logging import getLogger
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from config import AUDIO_SAMPLE_RATE
from voicestream.errors import ConnectError, ValidationError
from voicestream.helpers import stream_audio, stream_text
from voicestream.options import ConnectionConfig, SessionMode, SessionOptions
from voicestream.session import connect


logger = getLogger(__name__)

END_OF_AUDIO = "end"


async def _client_audio(ws: WebSocket) -> AsyncIterator[bytes]:
    """Mic frames from the client until it sends "end" or disconnects."""
    while True:
        msg = await ws.receive()
        if msg["type"] == "websocket.disconnect":
            logger.info("[WS] client disconnected while streaming audio.")
            return
        if msg.get("bytes") is not None:
            yield msg["bytes"]
        elif msg.get("text") is not None:
            if msg["text"].strip() == END_OF_AUDIO:
                return
            logger.info("[WS] text from client ignored: %s", msg["text"][:100])


async def _client_text(ws: WebSocket) -> AsyncIterator[str]:
    """Text chunks from the client until an empty message or disconnect."""
    while True:
        msg = await ws.receive()
        if msg["type"] == "websocket.disconnect":
            logger.info("[WS] client disconnected while streaming text.")
            return
        text = msg.get("text")
        if text is None:
            continue
        if not text:
            return
        yield text


def _error_text(error: Optional[BaseException]) -> Optional[str]:
    return str(error) if error is not None else None


def create_app(config: Optional[ConnectionConfig] = None) -> FastAPI:
    app = FastAPI(title="voicestream bridge")

    @app.websocket("/ws/transcribe")
    async def transcribe(
            ws: WebSocket,
            sample_rate: int = AUDIO_SAMPLE_RATE,
            language_code: Optional[str] = None,
            word_timestamps: bool = False,
    ) -> None:
        await ws.accept()
        options = SessionOptions(
            sample_rate=sample_rate,
            language_code=language_code,
            enable_word_timestamps=word_timestamps,
        )
        try:
            session = await connect(SessionMode.RECOGNITION, options, config=config)
        except (ValidationError, ConnectError) as e:
            logger.warning("[WS] cannot open recognition session: %s", e)
            await ws.send_json({"type": "end", "error": str(e)})
            await ws.close(code=1011)
            return

        async with session:
            try:
                result = stream_audio(session, _client_audio(ws))
                async for event in result.output:
                    await ws.send_json({
                        "type": "final" if event.is_final else "partial",
                        "text": event.text,
                        "words": [[w.text, w.start, w.end] for w in event.words],
                    })
                error = await result.error
                await ws.send_json({"type": "end", "error": _error_text(error)})
                await ws.close()
            except WebSocketDisconnect:
                logger.info("[WS] client disconnected in transcribe().")

    @app.websocket("/ws/speak")
    async def speak(ws: WebSocket, voice_id: str, output_format: Optional[str] = None) -> None:
        await ws.accept()
        options = SessionOptions(voice_id=voice_id)
        if output_format:
            options = replace(options, output_format=output_format)
        try:
            session = await connect(SessionMode.SYNTHESIS, options, config=config)
        except (ValidationError, ConnectError) as e:
            logger.warning("[WS] cannot open synthesis session: %s", e)
            await ws.send_json({"type": "end", "error": str(e)})
            await ws.close(code=1011)
            return

        async with session:
            try:
                result = stream_text(session, _client_text(ws))
                async for chunk in result.output:
                    await ws.send_bytes(chunk)
                error = await result.error
                await ws.send_json({"type": "end", "error": _error_text(error)})
                await ws.close()
            except WebSocketDisconnect:
                logger.info("[WS] client disconnected in speak().")

    return app
