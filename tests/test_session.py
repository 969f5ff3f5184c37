from __future__ import annotations

import asyncio
import unittest
from json import dumps
from logging import getLogger

from voicestream.errors import (
    ConnectError,
    ServerError,
    SessionClosedError,
    TransportError,
    UnsupportedOperationError,
    ValidationError,
)
from voicestream.events import ErrorKind
from voicestream.options import ConnectionConfig, SessionMode, SessionOptions
from voicestream.session import SessionState, StreamingSession, connect
from voicestream.streams import StreamContext

from tests.fake_server import FakeSpeechServer


SYN = SessionMode.SYNTHESIS
REC = SessionMode.RECOGNITION
VOICE = SessionOptions(voice_id="voice-1")


async def _drain(stream) -> list:
    return [item async for item in stream]


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    async def _server(self, **kwargs) -> FakeSpeechServer:
        server = await FakeSpeechServer(**kwargs).start()
        self.addAsyncCleanup(server.stop)
        return server

    def _config(self, server: FakeSpeechServer, **kwargs) -> ConnectionConfig:
        kwargs.setdefault("api_key", None)
        return ConnectionConfig(base_url=server.base_url, open_timeout=2.0, close_timeout=1.0, **kwargs)

    def _assert_streams_closed(self, session: StreamingSession) -> None:
        for stream in (session.transcripts, session.audio, session.alignments, session.errors):
            self.assertTrue(stream.closed, stream)


class TestScenarios(SessionTestCase):
    async def test_recognition_two_chunks_then_end(self):
        server = await self._server()
        options = SessionOptions(sample_rate=16000)
        async with await connect(REC, options, config=self._config(server)) as session:
            self.assertEqual(session.state, SessionState.OPEN)
            await session.send_audio(b"hello")
            await session.send_audio(b"world")
            await session.end_stream()

            events = await _drain(session.transcripts)
            self.assertIsNone(await session.wait_closed())

        finals = [e for e in events if e.is_final]
        self.assertGreaterEqual(len(finals), 1)
        self.assertTrue(events[-1].is_final)
        self.assertEqual(finals[-1].text, "hello world")
        self.assertEqual(finals[-1].language_code, "en")
        self.assertEqual(session.state, SessionState.CLOSED)
        self._assert_streams_closed(session)

        self.assertEqual(server.paths, ["/v1/speech-to-text/stream"])
        self.assertEqual(server.queries[0]["sample_rate"], "16000")
        self.assertEqual([f["message_type"] for f in server.received], ["audio", "audio", "end"])

    async def test_synthesis_hello_world(self):
        server = await self._server()
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            await session.send_text("Hello")
            await session.send_text(" world")
            await session.flush()

            audio = await _drain(session.audio)
            self.assertIsNone(await session.wait_closed())

        self.assertGreaterEqual(len(audio), 1)
        self.assertEqual(b"".join(audio), b"Hello world")
        self.assertEqual(session.state, SessionState.CLOSED)
        self._assert_streams_closed(session)

        alignments = await _drain(session.alignments)
        self.assertEqual("".join("".join(a.characters) for a in alignments), "Hello world")
        self.assertEqual(server.paths, ["/v1/text-to-speech/voice-1/stream-input"])
        self.assertEqual(server.frames("flush"), [{"message_type": "flush", "final": True}])

    async def test_invalid_sample_rate_never_connects(self):
        server = await self._server()
        with self.assertRaises(ValidationError) as cm:
            await connect(REC, SessionOptions(sample_rate=0), config=self._config(server))
        self.assertEqual(cm.exception.field, "sample_rate")
        self.assertEqual(server.connections, 0)


class TestOrdering(SessionTestCase):
    async def test_audio_preserves_submission_order(self):
        server = await self._server()
        for n in range(4):
            with self.subTest(n=n):
                texts = [f"<{i}>" for i in range(n)]
                async with await connect(SYN, VOICE, config=self._config(server)) as session:
                    for text in texts:
                        await session.send_text(text)
                    await session.flush()
                    audio = await _drain(session.audio)
                    self.assertIsNone(await session.wait_closed())
                self.assertEqual(b"".join(audio), "".join(texts).encode())

    async def test_concurrent_senders_do_not_interleave(self):
        server = await self._server()
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            await asyncio.gather(*(session.send_text(f"t{i}") for i in range(20)))
            await session.flush()
            await session.wait_closed()

        sent = [f["text"] for f in server.frames("text")]
        self.assertEqual(sent, [f"t{i}" for i in range(20)])
        self.assertEqual(server.received[-1]["message_type"], "flush")


class TestClose(SessionTestCase):
    async def test_close_is_idempotent(self):
        server = await self._server()
        session = await connect(SYN, VOICE, config=self._config(server))
        await session.close()
        await session.close()
        await asyncio.gather(session.close(), session.close())

        self.assertEqual(session.state, SessionState.CLOSED)
        self.assertTrue(session.done)
        self.assertIsNone(session.error)
        self._assert_streams_closed(session)

    async def test_close_unblocks_readers(self):
        server = await self._server()
        session = await connect(REC, SessionOptions(), config=self._config(server))
        reader = asyncio.create_task(_drain(session.transcripts))
        await asyncio.sleep(0.05)
        await session.close()
        self.assertEqual(await asyncio.wait_for(reader, 1), [])

    async def test_close_unblocks_senders(self):
        server = await self._server()
        session = await connect(SYN, VOICE, config=self._config(server))
        ws = session._ws
        write = ws.send

        async def stalled_write(frame):
            # the transport stops draining until the connection goes away
            await ws.wait_closed()
            await write(frame)

        ws.send = stalled_write
        in_flight = asyncio.create_task(session.send_text("stuck on the wire"))
        queued = asyncio.create_task(session.send_text("waiting for the writer"))
        await asyncio.sleep(0.05)
        self.assertTrue(session._mux._lock.locked())
        self.assertFalse(in_flight.done() or queued.done())

        await asyncio.wait_for(session.close(), 2)
        for sender in (in_flight, queued):
            with self.assertRaises(SessionClosedError):
                await asyncio.wait_for(sender, 2)
        self.assertEqual(session.state, SessionState.CLOSED)
        self.assertEqual(server.frames("text"), [])

    async def test_close_before_connect(self):
        session = StreamingSession(SYN, VOICE)
        await session.close()
        await session.close()
        self.assertEqual(session.state, SessionState.CLOSED)
        self._assert_streams_closed(session)

    async def test_send_text_after_close(self):
        server = await self._server()
        session = await connect(SYN, VOICE, config=self._config(server))
        await session.close()
        with self.assertRaises(SessionClosedError):
            await session.send_text("too late")
        with self.assertRaises(SessionClosedError):
            await session.flush()

    async def test_send_audio_after_end_stream(self):
        server = await self._server()
        async with await connect(REC, SessionOptions(), config=self._config(server)) as session:
            await session.send_audio(b"chunk")
            await session.end_stream()
            with self.assertRaises(SessionClosedError):
                await session.send_audio(b"more")
        self.assertEqual(len(server.frames("end")), 1)

    async def test_clean_server_close(self):
        server = await self._server(close_after_start=True)
        session = await connect(SYN, VOICE, config=self._config(server))
        self.assertIsNone(await session.wait_closed())
        self.assertEqual(session.state, SessionState.CLOSED)
        self.assertEqual(await _drain(session.errors), [])

    async def test_done_callback(self):
        server = await self._server()
        seen = []
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            session.add_done_callback(lambda s: seen.append(s.state))
        await asyncio.sleep(0)
        self.assertEqual(seen, [SessionState.CLOSED])


class TestConnect(SessionTestCase):
    async def test_cancelled_context_never_connects(self):
        server = await self._server()
        ctx = StreamContext()
        ctx.cancel()
        with self.assertRaises(ConnectError):
            await connect(SYN, VOICE, config=self._config(server), context=ctx)
        self.assertEqual(server.connections, 0)

    async def test_context_cancelled_during_handshake(self):
        server = await self._server(handshake_delay=2.0)
        ctx = StreamContext()
        asyncio.get_running_loop().call_later(0.1, ctx.cancel)
        with self.assertRaises(ConnectError):
            await connect(SYN, VOICE, config=self._config(server), context=ctx)
        self.assertEqual(asyncio.current_task().cancelling(), 0)

    async def test_handshake_timeout(self):
        server = await self._server(handshake_delay=1.0)
        with self.assertRaises(ConnectError) as cm:
            await connect(SYN, VOICE, config=self._config(server), timeout=0.2)
        self.assertIn("timed out", str(cm.exception))

    async def test_api_key_header(self):
        server = await self._server(api_key="secret")
        with self.assertRaises(ConnectError):
            await connect(SYN, VOICE, config=self._config(server, api_key="wrong"))

        async with await connect(SYN, VOICE, config=self._config(server, api_key="secret")) as session:
            self.assertEqual(session.id, "fake-1")

    async def test_server_rejects_session(self):
        server = await self._server(reject_message="voice not found")
        with self.assertRaises(ConnectError) as cm:
            await connect(SYN, VOICE, config=self._config(server))
        self.assertIsInstance(cm.exception.__cause__, ServerError)
        self.assertIn("voice not found", str(cm.exception))

    async def test_nothing_listening(self):
        server = await self._server()
        config = self._config(server)
        await server.stop()
        with self.assertRaises(ConnectError):
            await connect(SYN, VOICE, config=config)

    async def test_injected_logger(self):
        server = await self._server()
        ctx = StreamContext(logger=getLogger("tests.sink"))
        with self.assertLogs("tests.sink", level="INFO") as logs:
            async with await connect(SYN, VOICE, config=self._config(server), context=ctx):
                pass
        self.assertTrue(any("started" in line for line in logs.output))


class TestErrors(SessionTestCase):
    async def test_bad_frames_are_reported_and_dropped(self):
        server = await self._server(inject=[
            "not json",
            dumps({"message_type": "partial_transcript", "text": "wrong mode"}),
            dumps({"message_type": "error", "error_type": "rate_limited", "message": "slow down"}),
        ])
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            await session.send_text("still works")
            await session.flush()
            audio = await _drain(session.audio)
            self.assertIsNone(await session.wait_closed())

        self.assertEqual(audio, [b"still works"])
        errors = await _drain(session.errors)
        self.assertEqual([e.kind for e in errors], [ErrorKind.PROTOCOL, ErrorKind.PROTOCOL, ErrorKind.SERVER])
        self.assertFalse(any(e.fatal for e in errors))
        self.assertEqual(session.state, SessionState.CLOSED)

    async def test_transport_failure(self):
        server = await self._server(abort_after_frames=1)
        session = await connect(REC, SessionOptions(), config=self._config(server))
        await session.send_audio(b"chunk")

        error = await asyncio.wait_for(session.wait_closed(), 2)
        self.assertIsInstance(error, TransportError)
        self.assertIs(session.error, error)
        self.assertEqual(session.state, SessionState.ERROR_CLOSED)
        self._assert_streams_closed(session)

        errors = await _drain(session.errors)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].kind, ErrorKind.TRANSPORT)

        with self.assertRaises(SessionClosedError):
            await session.send_audio(b"more")
        await session.close()

    async def test_empty_payloads(self):
        server = await self._server()
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            with self.assertRaises(ValidationError):
                await session.send_text("")
        async with await connect(REC, SessionOptions(), config=self._config(server)) as session:
            with self.assertRaises(ValidationError):
                await session.send_audio(b"")

    async def test_wrong_mode_operations(self):
        server = await self._server()
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            with self.assertRaises(UnsupportedOperationError):
                await session.send_audio(b"x")
            with self.assertRaises(UnsupportedOperationError):
                await session.end_stream()
        async with await connect(REC, SessionOptions(), config=self._config(server)) as session:
            with self.assertRaises(UnsupportedOperationError):
                await session.send_text("x")
            with self.assertRaises(UnsupportedOperationError):
                await session.flush()


class TestFlush(SessionTestCase):
    async def test_flush_while_flushing_is_a_noop(self):
        server = await self._server(flush_delay=0.3)
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            await session.send_text("a")
            first = asyncio.create_task(session.flush(final=False))
            while session.state is not SessionState.FLUSHING:
                await asyncio.sleep(0.01)

            await session.flush(final=False)
            with self.assertRaises(SessionClosedError):
                await session.send_text("not while flushing")

            await first
            self.assertEqual(session.state, SessionState.OPEN)
            self.assertEqual(len(server.frames("flush")), 1)

            await session.send_text("b")
            await session.flush()
            audio = await _drain(session.audio)

        self.assertEqual(audio, [b"a", b"b"])
        self.assertEqual(server.frames("flush"), [
            {"message_type": "flush", "final": False},
            {"message_type": "flush", "final": True},
        ])

    async def test_cancelled_send_releases_the_writer(self):
        server = await self._server()
        async with await connect(SYN, VOICE, config=self._config(server)) as session:
            await session._mux._lock.acquire()
            blocked = asyncio.create_task(session.send_text("never sent"))
            await asyncio.sleep(0.01)
            blocked.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await blocked
            session._mux._lock.release()

            await session.send_text("sent")
            await session.flush()
            audio = await _drain(session.audio)

        self.assertEqual(audio, [b"sent"])


if __name__ == "__main__":
    unittest.main()
