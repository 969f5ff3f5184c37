from __future__ import annotations

import asyncio
import wave
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import AsyncIterator, Iterable, Iterator

from voicestream.errors import ValidationError


logger = getLogger(__name__)


@dataclass(frozen=True)
class WavFormat:
    """
    channels: 1 = mono, 2 = stereo.
    sample_width_bytes: bytes per sample (2 = 16-bit).
    sample_rate: samples per second in Hz.
    n_frames: total number of audio frames in the file.
    comptype: 'NONE' for uncompressed PCM.
    """
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str

    @property
    def duration_s(self) -> float:
        return self.n_frames / self.sample_rate if self.sample_rate else 0.0


def inspect_wav(path: Path) -> WavFormat:
    with wave.open(str(path.resolve()), "rb") as wf:
        return WavFormat(
            channels=wf.getnchannels(),
            sample_width_bytes=wf.getsampwidth(),
            sample_rate=wf.getframerate(),
            n_frames=wf.getnframes(),
            comptype=wf.getcomptype(),
        )


def iter_wav_pcm_chunks(
        path: Path,
        *,
        chunk_ms: int,
        expected_sample_rate: int,
        expected_channels: int = 1,
        expected_sample_width_bytes: int = 2,
) -> Iterator[bytes]:
    """
    Yield raw PCM frames from a WAV file in fixed chunk sizes.

    Enforced: uncompressed PCM with the expected sample rate, channel count
    and sample width; the recognition session does not resample.
    """
    fmt = inspect_wav(path)

    if fmt.comptype != "NONE":
        raise ValidationError("wav", f"{path.name}: compressed WAV not supported (comptype={fmt.comptype})")
    if fmt.sample_rate != expected_sample_rate:
        raise ValidationError("wav", f"{path.name}: sample_rate={fmt.sample_rate} expected={expected_sample_rate}")
    if fmt.channels != expected_channels:
        raise ValidationError("wav", f"{path.name}: channels={fmt.channels} expected={expected_channels}")
    if fmt.sample_width_bytes != expected_sample_width_bytes:
        raise ValidationError(
            "wav", f"{path.name}: sample_width_bytes={fmt.sample_width_bytes} expected={expected_sample_width_bytes}"
        )

    frames_per_chunk = int(expected_sample_rate * (chunk_ms / 1000.0))
    if frames_per_chunk <= 0:
        raise ValidationError("chunk_ms", "chunk_ms too small")

    logger.debug("[WAV] streaming %s: %.1f s in %d ms chunks", path.name, fmt.duration_s, chunk_ms)
    with wave.open(str(path), "rb") as wf:
        while True:
            data = wf.readframes(frames_per_chunk)
            if not data:
                break
            yield data


async def paced_chunks(
        pcm_chunks: Iterable[bytes],
        *,
        chunk_ms: int,
        realtime_factor: float = 1.0,
) -> AsyncIterator[bytes]:
    """
    Yield PCM chunks with real-time-ish pacing, as a microphone would.

    realtime_factor:
      - 1.0 = realtime
      - 0.5 = 2x faster
      - 0.0 = no pacing sleep (still chunked)
    """
    for chunk in pcm_chunks:
        yield chunk
        if realtime_factor > 0:
            await asyncio.sleep((chunk_ms / 1000.0) * realtime_factor)
