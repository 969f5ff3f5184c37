from json import loads
from typing import List, Tuple

from fastapi.testclient import TestClient

from voicestream.bridge import create_app
from voicestream.options import ConnectionConfig

from tests.fake_server import ThreadedFakeServer


def _client(base_url: str, api_key=None) -> TestClient:
    config = ConnectionConfig(api_key=api_key, base_url=base_url, open_timeout=2.0, close_timeout=1.0)
    return TestClient(create_app(config))


def _collect(ws) -> Tuple[List[bytes], List[dict]]:
    """Everything the bridge sends, up to and including the end message."""
    audio, messages = [], []
    while True:
        msg = ws.receive()
        if msg.get("bytes") is not None:
            audio.append(msg["bytes"])
            continue
        data = loads(msg["text"])
        messages.append(data)
        if data["type"] == "end":
            return audio, messages


def test_transcribe_relay():
    with ThreadedFakeServer() as server:
        client = _client(server.base_url)
        with client.websocket_connect("/ws/transcribe?sample_rate=16000&word_timestamps=true") as ws:
            ws.send_bytes(b"hello")
            ws.send_bytes(b"world")
            ws.send_text("end")
            _, messages = _collect(ws)

    assert messages[-1] == {"type": "end", "error": None}
    finals = [m for m in messages if m["type"] == "final"]
    assert len(finals) == 1
    assert finals[0]["text"] == "hello world"
    assert finals[0]["words"] == [["hello", 0.0, 0.1], ["world", 0.1, 0.2]]
    assert all(m["type"] == "partial" for m in messages[:-2])
    assert server.queries[0]["enable_word_timestamps"] == "true"


def test_speak_relay():
    with ThreadedFakeServer() as server:
        client = _client(server.base_url)
        with client.websocket_connect("/ws/speak?voice_id=voice-1&output_format=pcm_16000") as ws:
            ws.send_text("Hello ")
            ws.send_text("world")
            ws.send_text("")
            audio, messages = _collect(ws)

    assert b"".join(audio) == b"Hello world"
    assert messages == [{"type": "end", "error": None}]
    assert server.paths == ["/v1/text-to-speech/voice-1/stream-input"]
    assert server.queries[0]["output_format"] == "pcm_16000"


def test_speak_rejects_invalid_options():
    with ThreadedFakeServer() as server:
        client = _client(server.base_url)
        with client.websocket_connect("/ws/speak?voice_id=voice-1&output_format=wav") as ws:
            message = ws.receive_json()

    assert message["type"] == "end"
    assert "output_format" in message["error"]
    assert server.connections == 0


def test_transcribe_reports_connect_failure():
    with ThreadedFakeServer(api_key="secret") as server:
        client = _client(server.base_url, api_key="wrong")
        with client.websocket_connect("/ws/transcribe") as ws:
            message = ws.receive_json()

    assert message["type"] == "end"
    assert message["error"]
    assert server.connections == 1
