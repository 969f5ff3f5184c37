"""
Session options and connection settings.

``SessionOptions`` is resolved once, validated before connecting and never
changes while the session is open (frozen dataclass). Universal audio defaults
come from ``config.py`` and can be overridden per session.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from config import (
    AUDIO_ENCODING,
    AUDIO_SAMPLE_RATE,
    ELEVENLABS_API_KEY,
    STREAM_BUFFER_SIZE,
    STREAMING_BASE_URL,
    STT_MODEL,
    TTS_LATENCY_LEVEL,
    TTS_MODEL,
    TTS_OUTPUT_FORMAT,
    WS_CLOSE_TIMEOUT_S,
    WS_MAX_QUEUE,
    WS_OPEN_TIMEOUT_S,
    WS_PING_INTERVAL_S,
    WS_PING_TIMEOUT_S,
)
from voicestream.errors import ValidationError


class SessionMode(str, Enum):
    SYNTHESIS = "synthesis"
    RECOGNITION = "recognition"


SAMPLE_RATES = frozenset({8000, 16000, 22050, 24000, 32000, 44100, 48000})

ENCODINGS = frozenset({"pcm_s16le", "pcm_f32le", "ulaw", "alaw"})

# For highest quality use pcm_48000 (lossless) or mp3_44100_192.
OUTPUT_FORMATS = frozenset({
    # MP3 (lossy, widely compatible)
    "mp3_22050_32", "mp3_24000_48", "mp3_44100_32", "mp3_44100_64",
    "mp3_44100_96", "mp3_44100_128", "mp3_44100_192",
    # PCM (raw audio, can be wrapped in WAV)
    "pcm_8000", "pcm_16000", "pcm_22050", "pcm_24000", "pcm_32000", "pcm_44100", "pcm_48000",
    # telephony
    "ulaw_8000", "alaw_8000",
    # Opus
    "opus_48000_32", "opus_48000_64", "opus_48000_96", "opus_48000_128", "opus_48000_192",
})

MIN_LATENCY_LEVEL = 0
MAX_LATENCY_LEVEL = 4


@dataclass(frozen=True)
class VoiceSettings:
    """
    Voice configuration for synthesis.

    stability: lower values give a broader emotional range (0..1).
    similarity_boost: how closely to adhere to the original voice (0..1).
    style: style exaggeration of the original speaker (0..1).
    speed: 0.25..4.0, 1.0 is normal; 0 leaves the server default.
    """
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.0
    speed: float = 1.0
    use_speaker_boost: bool = True

    def validate(self) -> None:
        for name in ("stability", "similarity_boost", "style"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError(name, f"must be between 0.0 and 1.0, got {value}")
        if self.speed != 0 and not 0.25 <= self.speed <= 4.0:
            raise ValidationError("speed", f"must be between 0.25 and 4.0, got {self.speed}")


# Presets tuned per content type; adjust for the specific voice.
VOICE_PRESETS: Dict[str, VoiceSettings] = {
    # neutral, consistent, safe for long lectures
    "lecture": VoiceSettings(stability=0.5, similarity_boost=0.75, style=0.05, speed=1.0),
    "youtube": VoiceSettings(stability=0.45, similarity_boost=0.8, style=0.2, speed=1.05),
    "podcast": VoiceSettings(stability=0.55, similarity_boost=0.75, style=0.15, speed=1.0),
    "audiobook": VoiceSettings(stability=0.65, similarity_boost=0.8, style=0.1, speed=0.95),
    # energetic, built for the first seconds of attention
    "short_form": VoiceSettings(stability=0.3, similarity_boost=0.85, style=0.45, speed=1.15),
}


@dataclass(frozen=True)
class SessionOptions:
    """
    Configuration of one streaming session.

    Settings that only apply to one mode are ignored by the other
    (voice_id, output_format, latency_level and voice_settings are synthesis
    settings; encoding, enable_partials and enable_word_timestamps are
    recognition settings).
    """
    model_id: Optional[str] = None  # None selects TTS_MODEL / STT_MODEL by mode
    sample_rate: int = AUDIO_SAMPLE_RATE
    encoding: str = AUDIO_ENCODING
    enable_partials: bool = True
    enable_word_timestamps: bool = False
    output_format: str = TTS_OUTPUT_FORMAT
    latency_level: int = TTS_LATENCY_LEVEL
    voice_id: str = ""
    language_code: Optional[str] = None
    voice_settings: Optional[VoiceSettings] = None

    def resolved_model_id(self, mode: SessionMode) -> str:
        if self.model_id:
            return self.model_id
        return TTS_MODEL if mode is SessionMode.SYNTHESIS else STT_MODEL

    def validate(self, mode: SessionMode) -> None:
        """Raise ValidationError for the first invalid setting."""
        if self.model_id is not None and not self.model_id.strip():
            raise ValidationError("model_id", "cannot be blank")
        if self.sample_rate not in SAMPLE_RATES:
            raise ValidationError("sample_rate", f"unsupported sample rate {self.sample_rate}")

        if mode is SessionMode.SYNTHESIS:
            if not self.voice_id:
                raise ValidationError("voice_id", "voice ID is required for synthesis")
            if self.output_format not in OUTPUT_FORMATS:
                raise ValidationError("output_format", "invalid format, use mp3_44100_128, pcm_16000, etc.")
            if not MIN_LATENCY_LEVEL <= self.latency_level <= MAX_LATENCY_LEVEL:
                raise ValidationError(
                    "latency_level", f"must be between {MIN_LATENCY_LEVEL} and {MAX_LATENCY_LEVEL}"
                )
            if self.voice_settings is not None:
                self.voice_settings.validate()
        else:
            if self.encoding not in ENCODINGS:
                raise ValidationError("encoding", f"unsupported encoding {self.encoding!r}")

    def query_params(self, mode: SessionMode) -> Dict[str, str]:
        """Options as endpoint query parameters."""
        params = {"model_id": self.resolved_model_id(mode)}
        if self.language_code:
            params["language_code"] = self.language_code

        if mode is SessionMode.SYNTHESIS:
            params["output_format"] = self.output_format
            params["optimize_streaming_latency"] = str(self.latency_level)
            vs = self.voice_settings
            if vs is not None:
                params["stability"] = str(vs.stability)
                params["similarity_boost"] = str(vs.similarity_boost)
                params["style"] = str(vs.style)
                if vs.speed:
                    params["speed"] = str(vs.speed)
                params["use_speaker_boost"] = str(vs.use_speaker_boost).lower()
        else:
            params["sample_rate"] = str(self.sample_rate)
            params["encoding"] = self.encoding
            params["enable_partials"] = str(self.enable_partials).lower()
            params["enable_word_timestamps"] = str(self.enable_word_timestamps).lower()
        return params


@dataclass(frozen=True)
class ConnectionConfig:
    """Where and how to connect; shared by all sessions of an application."""
    api_key: Optional[str] = ELEVENLABS_API_KEY
    base_url: str = STREAMING_BASE_URL
    open_timeout: float = WS_OPEN_TIMEOUT_S
    ping_interval: float = WS_PING_INTERVAL_S
    ping_timeout: float = WS_PING_TIMEOUT_S
    close_timeout: float = WS_CLOSE_TIMEOUT_S
    max_queue: int = WS_MAX_QUEUE
    stream_buffer_size: int = STREAM_BUFFER_SIZE
