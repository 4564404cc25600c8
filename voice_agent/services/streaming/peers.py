"""Peer connections for the duplex streaming relay."""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import websockets
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from voice_agent.core.exceptions import TransportError

logger = logging.getLogger(__name__)


class Peer(ABC):
    """One side of a relayed call: JSON messages over a websocket."""

    name: str = "peer"

    @abstractmethod
    async def send_json(self, message: Dict[str, Any]) -> None:
        """Send a message. Raises TransportError if the connection is gone."""
        pass

    @abstractmethod
    async def receive_json(self) -> Optional[Dict[str, Any]]:
        """Receive the next message, or None once the connection has closed."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Send a keepalive."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass


def _decode(peer: str, raw: Any) -> Optional[Dict[str, Any]]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"[{peer.upper()}] Dropping undecodable message")
        return None
    if not isinstance(message, dict):
        logger.warning(f"[{peer.upper()}] Dropping non-object message")
        return None
    return message


class TelephonyPeer(Peer):
    """Twilio Media Streams connection accepted by the FastAPI websocket route."""

    name = "telephony"

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.stream_sid: Optional[str] = None

    async def send_json(self, message: Dict[str, Any]) -> None:
        try:
            await self.websocket.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportError("Telephony websocket is closed", cause=e)

    async def receive_json(self) -> Optional[Dict[str, Any]]:
        while True:
            try:
                raw = await self.websocket.receive_text()
            except (WebSocketDisconnect, RuntimeError):
                return None
            message = _decode(self.name, raw)
            if message is not None:
                return message

    async def ping(self) -> None:
        # Twilio has no ping message; a mark is echoed back and keeps the stream busy
        if self.stream_sid:
            await self.send_json(
                {"event": "mark", "streamSid": self.stream_sid, "mark": {"name": "keepalive"}}
            )

    async def close(self) -> None:
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close()
        except RuntimeError:
            # Already closed by the other side
            pass


class ProviderPeer(Peer):
    """Realtime provider connection opened with the websockets client."""

    name = "provider"

    def __init__(self, connection: Any):
        self.connection = connection

    async def send_json(self, message: Dict[str, Any]) -> None:
        try:
            await self.connection.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError("Provider websocket is closed", cause=e)

    async def receive_json(self) -> Optional[Dict[str, Any]]:
        while True:
            try:
                raw = await self.connection.recv()
            except websockets.exceptions.ConnectionClosed:
                return None
            message = _decode(self.name, raw)
            if message is not None:
                return message

    async def ping(self) -> None:
        try:
            await self.connection.ping()
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError("Provider websocket is closed", cause=e)

    async def close(self) -> None:
        await self.connection.close()


async def connect_realtime_provider(
    url: str,
    model: str,
    api_key: str,
    open_timeout: float = 10.0,
) -> ProviderPeer:
    """
    Open a realtime provider connection.

    Raises:
        TransportError: the connection could not be established
    """
    headers = {
        "Authorization": f"Bearer {api_key}",
        "OpenAI-Beta": "realtime=v1",
    }
    try:
        connection = await websockets.connect(
            f"{url}?model={model}",
            additional_headers=headers,
            open_timeout=open_timeout,
            ping_interval=None,  # the relay sends its own keepalives
        )
    except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        raise TransportError(f"Could not connect to realtime provider: {e}", cause=e)
    logger.info(f"[PROVIDER] Connected to realtime provider - Model: {model}")
    return ProviderPeer(connection)
