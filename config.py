import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = BASE_PATH / "log"

# Streaming endpoint root; synthesis and recognition paths are appended to it.
STREAMING_BASE_URL = os.getenv("STREAMING_BASE_URL", "wss://api.elevenlabs.io/v1")

# WebSocket transport
WS_OPEN_TIMEOUT_S = 10.0
WS_PING_INTERVAL_S = 10.0
WS_PING_TIMEOUT_S = 10.0
# Upper bound for close(): after this the transport is aborted.
WS_CLOSE_TIMEOUT_S = 5.0
# Incoming frames buffered by websockets before it stops reading the socket.
WS_MAX_QUEUE = 32

# Events buffered per output stream before the receive loop waits for the consumer.
STREAM_BUFFER_SIZE = 200

# Text to speech
# Latency: https://elevenlabs.io/docs/developers/best-practices/latency-optimization#use-flash-models
TTS_MODEL = "eleven_turbo_v2_5"
TTS_OUTPUT_FORMAT = "mp3_44100_128"
# 0 = best quality, 4 = lowest latency (text normalizer off).
TTS_LATENCY_LEVEL = 0

# Speech to text
STT_MODEL = "scribe_v1"

# audio
AUDIO_SAMPLE_RATE = 16000
AUDIO_ENCODING = "pcm_s16le"
AUDIO_CHANNELS = 1
# 100 ms of 16 kHz 16-bit mono audio per chunk
CHUNK_MS = 100
