"""
Streaming speech demo
=====================

speak
    Streams the given text words into a synthesis session as an LLM would
    emit tokens and writes the audio to a file.

transcribe
    Streams a 16 kHz mono 16-bit WAV file into a recognition session at
    real-time pace and prints partial and final transcripts.

Usage
-----
    source .venv/bin/activate
    python demo.py speak --voice <voice-id> --out speech.mp3 Hello there, this is a streaming demo.
    python demo.py transcribe assets/recording.wav
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from logging import getLogger, INFO
from pathlib import Path
from typing import AsyncIterator, List

from config import AUDIO_SAMPLE_RATE, CHUNK_MS
from voicestream.errors import StreamingError
from voicestream.helpers import stream_audio, stream_text
from voicestream.options import SessionMode, SessionOptions, VOICE_PRESETS
from voicestream.session import connect
from voicestream.utils import setup_logging
from voicestream.wav_stream import iter_wav_pcm_chunks, paced_chunks

logger = getLogger(__name__)


async def _words(words: List[str], delay_s: float = 0.1) -> AsyncIterator[str]:
    for word in words:
        yield word + " "
        await asyncio.sleep(delay_s)  # simulate LLM delay


async def speak(voice_id: str, words: List[str], out_path: Path, preset: str | None) -> int:
    options = SessionOptions(
        voice_id=voice_id,
        latency_level=3,  # balance latency vs quality
        voice_settings=VOICE_PRESETS[preset] if preset else None,
    )
    async with await connect(SessionMode.SYNTHESIS, options) as session:
        result = stream_text(session, _words(words))
        total = 0
        with out_path.open("wb") as f:
            async for chunk in result.output:
                f.write(chunk)
                total += len(chunk)
                print(f"\rReceived {total} bytes of audio...", end="", flush=True)
        print()
        error = await result.error

    if error:
        logger.error("Synthesis failed: %s", error)
        return 1
    logger.info("Audio saved to %s (%d bytes).", out_path, total)
    return 0


async def transcribe(wav_path: Path) -> int:
    options = SessionOptions(sample_rate=AUDIO_SAMPLE_RATE, enable_partials=True, enable_word_timestamps=True)
    chunks = iter_wav_pcm_chunks(wav_path, chunk_ms=CHUNK_MS, expected_sample_rate=AUDIO_SAMPLE_RATE)

    async with await connect(SessionMode.RECOGNITION, options) as session:
        result = stream_audio(session, paced_chunks(chunks, chunk_ms=CHUNK_MS))
        async for event in result.output:
            if not event.is_final:
                print(f"\r[...] {event.text}", end="", flush=True)
                continue
            print(f"\n[FINAL] {event.text}")
            for word in event.words:
                print(f"    {word.text!r}: {word.start:.2f}s - {word.end:.2f}s (conf: {word.confidence:.2f})")
            if event.language_code:
                print(f"  Language: {event.language_code}")
        error = await result.error

    if error:
        logger.error("Transcription failed: %s", error)
        return 1
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Streaming speech demo")
    sub = parser.add_subparsers(dest="command", required=True)

    p_speak = sub.add_parser("speak", help="text to speech")
    p_speak.add_argument("--voice", required=True, help="voice ID")
    p_speak.add_argument("--out", type=Path, default=Path("websocket_output.mp3"))
    p_speak.add_argument("--preset", choices=sorted(VOICE_PRESETS))
    p_speak.add_argument("words", nargs="+")

    p_stt = sub.add_parser("transcribe", help="speech to text")
    p_stt.add_argument("wav", type=Path)

    args = parser.parse_args()
    setup_logging(INFO)

    try:
        if args.command == "speak":
            return asyncio.run(speak(args.voice, args.words, args.out, args.preset))
        return asyncio.run(transcribe(args.wav))
    except StreamingError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
