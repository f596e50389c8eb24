"""Client for the Delta Exchange websocket feed."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import aiohttp

from deltarelay.config import Delta

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, str], None]


class DeltaError(Exception):
    """Raised when talking to Delta Exchange fails."""


def subscribe_message(channel: str, product_ids: Iterable[str] | None) -> dict[str, Any]:
    """Build a subscribe request; no product ids means every symbol."""
    symbols = list(product_ids or [])
    if not symbols:
        symbols = ["all"]
    return {
        "type": "subscribe",
        "payload": {"channels": [{"name": channel, "symbols": symbols}]},
    }


def unsubscribe_message(channel: str) -> dict[str, Any]:
    """Build an unsubscribe request for ``channel``."""
    return {
        "type": "unsubscribe",
        "payload": {"channels": [{"name": channel}]},
    }


def parse_exchange_message(raw: str | bytes) -> tuple[str, str]:
    """Return the channel (``type``) and product (``symbol``) of an exchange message.

    Missing or non-string fields come back as empty strings. Raises
    ``ValueError`` when the message is not a JSON object.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid message from Delta Exchange: {exc}") from exc
    if not isinstance(msg, dict):
        raise ValueError("message from Delta Exchange is not a JSON object")

    channel = msg.get("type")
    if not isinstance(channel, str):
        logger.warning("message does not contain a valid 'type' field: %s", msg)
        channel = ""
    symbol = msg.get("symbol")
    if not isinstance(symbol, str):
        logger.warning("message does not contain a valid 'symbol' field: %s", msg)
        symbol = ""
    return channel, symbol


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DeltaWebsocketClient:
    """Keeps a websocket connection to Delta Exchange and routes its messages."""

    def __init__(self, config: Delta, *, reconnect_delay: float = 5.0) -> None:
        self.url = config.url
        self.channels = list(config.channels)
        self.product_ids = list(config.product_ids)
        self.reconnect_max = config.reconnect_max
        self.reconnect_delay = reconnect_delay
        self.reconnect_count = 0
        self.connected_at: datetime | None = None
        self.last_error = ""
        self.last_error_at: datetime | None = None
        self.total_messages = 0
        self._handlers: dict[str, MessageHandler] = {}
        self._subscriptions: dict[str, None] = {}
        self._connected = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._reader: asyncio.Task | None = None
        self._closed = False

    def _record_error(self, text: str) -> None:
        self.last_error = text
        self.last_error_at = _now()

    async def connect(self) -> None:
        """Open the connection and start reading; does nothing when connected."""
        if self._connected:
            return
        logger.info("connecting to Delta Exchange at %s", self.url)
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            ws = await self._session.ws_connect(self.url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            self._record_error(f"Failed to connect to Delta Exchange: {exc}")
            raise DeltaError(f"failed to connect to Delta Exchange: {exc}") from exc

        self._ws = ws
        self._connected = True
        self.connected_at = _now()
        self.reconnect_count = 0
        self._reader = asyncio.create_task(self._read_pump(ws))

    def register_handler(self, channel: str, handler: MessageHandler) -> None:
        """Route messages of ``channel`` to ``handler``, replacing any earlier one."""
        self._handlers[channel] = handler

    def dispatch(self, raw: str | bytes) -> bool:
        """Pass one exchange message to its channel's handler.

        Returns whether a handler was called. Messages that are not JSON
        objects are logged and dropped.
        """
        try:
            channel, product_id = parse_exchange_message(raw)
        except ValueError as exc:
            logger.warning("error parsing message from Delta Exchange: %s", exc)
            return False
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")

        self.total_messages += 1
        logger.debug(
            "channel %s product %s message count %d",
            channel,
            product_id,
            self.total_messages,
        )
        handler = self._handlers.get(channel)
        if handler is None:
            return False
        handler(raw, product_id)
        return True

    async def _read_messages(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self.dispatch(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                return str(ws.exception())
        return f"connection closed with code {ws.close_code}"

    async def _read_pump(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            reason = await self._read_messages(ws)
        except asyncio.CancelledError:
            if self._ws is ws:
                self._connected = False
            await ws.close()
            raise
        self._record_error(f"Error reading from Delta Exchange: {reason}")
        if self._ws is ws:
            self._connected = False
        await ws.close()
        if not self._closed:
            await self._reconnect()

    async def _reconnect(self) -> None:
        self.reconnect_count += 1
        if self.reconnect_count > self.reconnect_max:
            logger.warning(
                "Exceeded maximum reconnection attempts (%d)", self.reconnect_max
            )
            return
        logger.info(
            "Reconnecting to Delta Exchange (attempt %d/%d)...",
            self.reconnect_count,
            self.reconnect_max,
        )
        await asyncio.sleep(self.reconnect_delay)
        try:
            await self.connect()
        except DeltaError as exc:
            logger.warning("Failed to reconnect to Delta Exchange: %s", exc)

    async def subscribe(self, channel: str, product_ids: Iterable[str] | None) -> None:
        """Subscribe to ``channel`` for the given products (all when empty)."""
        data = json.dumps(subscribe_message(channel, product_ids))
        ws = self._ws
        if not self._connected or ws is None:
            raise DeltaError("not connected to Delta Exchange")
        try:
            await ws.send_str(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise DeltaError(f"failed to send subscription message: {exc}") from exc
        self._subscriptions[channel] = None

    async def unsubscribe(self, channel: str) -> None:
        """Unsubscribe from ``channel``."""
        ws = self._ws
        if not self._connected or ws is None:
            raise DeltaError("not connected to Delta Exchange")
        data = json.dumps(unsubscribe_message(channel))
        try:
            await ws.send_str(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise DeltaError(f"failed to send unsubscription message: {exc}") from exc
        self._subscriptions.pop(channel, None)

    async def close(self) -> None:
        """Stop reading, close the connection and never reconnect again."""
        self._closed = True
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        self._connected = False

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if ws is not None:
            await ws.close()
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    def is_connected(self) -> bool:
        """Whether the connection to Delta Exchange is open."""
        return self._connected

    def connection_status(self) -> dict[str, Any]:
        """Describe the connection state; unset times are ``None``."""
        return {
            "connected": self._connected,
            "connected_at": self.connected_at,
            "reconnect_count": self.reconnect_count,
            "reconnect_max": self.reconnect_max,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
            "subscribed_channels": self.subscribed_channels(),
        }

    def subscribed_channels(self) -> list[str]:
        """Channels currently subscribed to."""
        return list(self._subscriptions)