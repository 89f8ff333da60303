#!/usr/bin/env python3
"""Character-stream transport for the command protocol.

A client writes raw chunks; a chunk may hold part of a frame, one frame or
several. Complete line-feed terminated frames go to the command parser and
each reply is sent back followed by two carriage returns.

The stream is served over WebSocket. Each connection is one client link
with its own buffer and inactivity timer.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Union

import websockets

from .params import ScheduleParameters

logger = logging.getLogger(__name__)

RESPONSE_TERMINATOR = "\r\r"

# Longest frame accepted before the buffer is discarded
MAX_FRAME_LENGTH = 256


class FrameBuffer:
    """Reassembles line-feed terminated frames from arbitrary chunks."""

    def __init__(self, max_length: int = MAX_FRAME_LENGTH):
        self.max_length = max_length
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: Union[str, bytes]) -> List[str]:
        """Add a chunk and return every frame it completed (with "\\n")."""
        if isinstance(chunk, bytes):
            chunk = chunk.decode("ascii", errors="ignore")

        self._pending += chunk
        frames = []
        while "\n" in self._pending:
            frame, self._pending = self._pending.split("\n", 1)
            frames.append(frame + "\n")

        if len(self._pending) > self.max_length:
            logger.warning(f"Discarding {len(self._pending)} unterminated characters")
            self._pending = ""
        return frames


class ClientLink:
    """One connected client on the character stream."""

    def __init__(
        self,
        parser,
        send: Callable[[str], Awaitable[None]],
        disconnect: Callable[[], Awaitable[None]],
        inactivity_timeout: float = 45.0,
        check_interval: float = 1.0,
    ):
        """Initialize the link.

        Args:
            parser: CommandParser turning frames into replies
            send: Coroutine delivering a notification to the client
            disconnect: Coroutine dropping the client
            inactivity_timeout: Seconds of silence before the client is dropped
                (0 disables the timer)
            check_interval: Seconds between inactivity checks
        """
        self.parser = parser
        self._send = send
        self._disconnect = disconnect
        self.inactivity_timeout = inactivity_timeout
        self.check_interval = check_interval
        self.buffer = FrameBuffer()
        self.last_activity = time.monotonic()
        self._watchdog: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.last_activity = time.monotonic()
        if self.inactivity_timeout > 0:
            self._watchdog = asyncio.get_running_loop().create_task(self._watch_inactivity())

    async def stop(self) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
        self._watchdog = None

    async def receive(self, chunk: Union[str, bytes]) -> List[str]:
        """Handle a chunk written by the client and return the replies sent."""
        logger.debug(f"Received chunk: {chunk!r}")
        self.last_activity = time.monotonic()

        replies = []
        for frame in self.buffer.feed(chunk):
            response = await self.parser.handle(frame)
            if not response:
                continue
            replies.append(response)
            try:
                await self._send(response + RESPONSE_TERMINATOR)
            except Exception as e:
                logger.warning(f"Failed to notify client: {e}")
        return replies

    async def _watch_inactivity(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            idle = time.monotonic() - self.last_activity
            if idle >= self.inactivity_timeout:
                logger.info(f"Inactivity timeout ({idle:.0f}s), forcibly disconnecting client")
                try:
                    await self._disconnect()
                except Exception as e:
                    logger.warning(f"Failed to disconnect client: {e}")
                return


class WebSocketTransport:
    """Serves the command protocol to WebSocket clients."""

    def __init__(
        self,
        parser,
        params: ScheduleParameters,
        host: str = "0.0.0.0",
        port: int = 8765,
        inactivity_timeout: float = 45.0,
        on_connect: Optional[Callable[[], None]] = None,
    ):
        self.parser = parser
        self.params = params
        self.host = host
        self.port = port
        self.inactivity_timeout = inactivity_timeout
        self.on_connect = on_connect
        self._clients = 0
        self._server = None

    @property
    def bound_port(self) -> int:
        """Port actually listened on (differs from ``port`` when that is 0)."""
        if self._server is None or not self._server.sockets:
            return self.port
        return list(self._server.sockets)[0].getsockname()[1]

    def client_connected(self) -> None:
        self._clients += 1
        self.params.set_client_connected(True)
        logger.info(f"Client connected ({self._clients} active)")
        if self.on_connect:
            self.on_connect()

    def client_disconnected(self) -> None:
        self._clients = max(0, self._clients - 1)
        self.params.set_client_connected(self._clients > 0)
        logger.info(f"Client disconnected ({self._clients} active)")

    async def _handler(self, websocket) -> None:
        link = ClientLink(
            self.parser,
            send=websocket.send,
            disconnect=websocket.close,
            inactivity_timeout=self.inactivity_timeout,
        )
        self.client_connected()
        link.start()
        try:
            async for message in websocket:
                await link.receive(message)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("WebSocket connection closed")
        finally:
            await link.stop()
            self.client_disconnected()

    async def start(self) -> None:
        self._server = await websockets.serve(self._handler, self.host, self.port)
        logger.info(f"Listening for clients on ws://{self.host}:{self.bound_port}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
