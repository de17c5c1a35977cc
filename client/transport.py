"""
Transport collaborator: hands envelopes to the relay and delivers incoming
ones to a handler. Payloads stay opaque; the relay never interprets them.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from common.errors import Forbidden, Timeout, Unauthenticated, Unavailable
from crypto.envelope import MessageEnvelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


def parse_frame(raw) -> Optional[Dict[str, Any]]:
    """Decode a relay frame; None unless it is a JSON object"""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class Transport:
    """
    Interface the orchestrator drives.

    Implementations call the registered handler with the raw envelope dict of
    every message addressed to the connected user.
    """

    def __init__(self):
        self.handler: Optional[EnvelopeHandler] = None

    def set_handler(self, handler: Optional[EnvelopeHandler]) -> None:
        self.handler = handler

    @property
    def connected(self) -> bool:
        raise NotImplementedError

    async def connect(self, user_id: str, token: str) -> None:
        raise NotImplementedError

    async def send(self, envelope: MessageEnvelope, destination: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class WebSocketTransport(Transport):
    """
    Relay client over the server's /ws endpoint.
    """

    def __init__(self, ws_url: str = "ws://localhost:8000/ws", open_timeout: float = 10.0):
        """
        Args:
            ws_url: WebSocket URL of the relay
            open_timeout: Connect + auth deadline in seconds
        """
        super().__init__()
        self.ws_url = ws_url
        self.open_timeout = open_timeout
        self.user_id: Optional[str] = None
        self.websocket = None
        self._receive_task: Optional[asyncio.Task] = None
        self._handler_tasks: set = set()

    @classmethod
    def for_server(cls, server_url: str, **kwargs) -> 'WebSocketTransport':
        return cls(server_url.rstrip("/").replace("http", "ws", 1) + "/ws", **kwargs)

    @property
    def connected(self) -> bool:
        return self.websocket is not None and self._receive_task is not None and not self._receive_task.done()

    async def connect(self, user_id: str, token: str) -> None:
        """
        Open the relay connection and authenticate with a transport token.

        Raises:
            Unauthenticated / Forbidden: Relay rejected the token
            Timeout: Relay did not answer within open_timeout
            Unavailable: Relay unreachable
        """
        await self.close()
        try:
            websocket = await websockets.connect(self.ws_url, open_timeout=self.open_timeout)
        except asyncio.TimeoutError as e:
            raise Timeout("Relay connection timed out", cause=e)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise Unavailable(f"Relay unreachable: {e}", cause=e)

        try:
            await websocket.send(json.dumps({"type": "auth", "token": token}))
            reply = await asyncio.wait_for(websocket.recv(), self.open_timeout)
        except asyncio.TimeoutError as e:
            await websocket.close()
            raise Timeout("Relay authentication timed out", cause=e)
        except websockets.exceptions.ConnectionClosed as e:
            raise Unavailable("Relay closed the connection during authentication", cause=e)

        data = parse_frame(reply)
        if data is None:
            await websocket.close()
            raise Unavailable("Relay sent a malformed authentication reply")

        if data.get("type") != "auth_success":
            await websocket.close()
            if data.get("code") == Forbidden.code:
                raise Forbidden(data.get("message", "Relay rejected token"))
            raise Unauthenticated(data.get("message", "Relay rejected token"))

        self.websocket = websocket
        self.user_id = user_id
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Connected to relay as %s", user_id)

    async def send(self, envelope: MessageEnvelope, destination: str) -> None:
        """Hand an envelope to the relay (fire-and-forget)"""
        if not self.connected:
            raise Unavailable("Not connected to relay")
        try:
            await self.websocket.send(json.dumps({
                "type": "message",
                "to": destination,
                "envelope": envelope.to_dict()
            }))
        except websockets.exceptions.ConnectionClosed as e:
            raise Unavailable("Relay connection closed", cause=e)

    async def _receive_loop(self):
        """Background task to receive relay frames"""
        try:
            async for message in self.websocket:
                data = parse_frame(message)
                if data is None:
                    logger.warning("Ignoring malformed relay frame")
                    continue

                if data.get("type") == "message" and isinstance(data.get("envelope"), dict):
                    if self.handler is not None:
                        # Receives are independent; do not block the read loop
                        task = asyncio.create_task(self.handler(data["envelope"]))
                        self._handler_tasks.add(task)
                        task.add_done_callback(self._handler_done)
                elif data.get("type") == "error":
                    logger.warning("Relay error: %s", data.get("message"))
        except websockets.exceptions.ConnectionClosed:
            logger.info("Relay connection closed")

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Envelope handler failed: %r", task.exception())

    async def close(self) -> None:
        if self._receive_task is not None:
            self._receive_task.cancel()
            self._receive_task = None
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
