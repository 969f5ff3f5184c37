from __future__ import annotations

import asyncio
from logging import Logger, getLogger
from typing import Callable

from websockets import ConnectionClosed

from voicestream.errors import SessionClosedError


logger = getLogger(__name__)


class OutboundMultiplexer:
    """
    Single writer for the session's WebSocket.

    All outbound frames go through one lock, so concurrent callers never
    interleave and frames reach the wire in the order callers got the lock.
    ``send`` returns once websockets has handed the frame to the transport;
    a stalled connection therefore stalls the callers, there is no queue.
    """

    def __init__(self, ws, log: Logger = logger) -> None:
        self._ws = ws
        self._log = log
        self._lock = asyncio.Lock()
        self.frames_sent = 0

    async def send(self, frame: str, admit: Callable[[], bool]) -> bool:
        """
        Write one frame.

        admit() runs under the lock right before writing: it raises to reject
        the frame (e.g. the session left OPEN while the caller waited),
        returns False to skip it silently, True to send. Returns whether the
        frame was written.
        """
        async with self._lock:
            if not admit():
                return False
            try:
                await self._ws.send(frame)
            except ConnectionClosed as e:
                self._log.debug("[WS] send failed, connection closed: %s", e)
                raise SessionClosedError(f"connection closed: {e}") from e
            self.frames_sent += 1
            return True
