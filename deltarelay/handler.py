"""Client-facing websocket endpoint that relays exchange data to subscribers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import aiohttp
from aiohttp import web

from deltarelay.config import Config
from deltarelay.delta_client import DeltaError, DeltaWebsocketClient

logger = logging.getLogger(__name__)

SEND_BUFFER_SIZE = 256
PING_PERIOD = 30.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(message: dict[str, Any]) -> str:
    return json.dumps(message, sort_keys=True, separators=(",", ":"))


def _format_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value) if isinstance(value, int) else repr(value)


def _symbols_to_product_ids(symbols: list[Any]) -> list[str]:
    product_ids: list[str] = []
    for symbol in symbols:
        if isinstance(symbol, str):
            if symbol == "all":
                return ["all"]
            product_ids.append(symbol)
        elif isinstance(symbol, (int, float)) and not isinstance(symbol, bool):
            product_ids.append(_format_number(symbol))
    return product_ids


def parse_subscription_channels(msg: dict[str, Any]) -> list[tuple[str, list[str]]] | None:
    """Return the ``(channel, product_ids)`` pairs named in a (un)subscribe message.

    Returns ``None`` when the message has no ``payload`` object. Channel
    entries without a string ``name`` are skipped; the symbol ``"all"``
    replaces every other symbol of its channel.
    """
    payload = msg.get("payload")
    if not isinstance(payload, dict):
        return None
    channels = payload.get("channels")
    if not isinstance(channels, list):
        return []
    result: list[tuple[str, list[str]]] = []
    for entry in channels:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        if not isinstance(name, str):
            logger.warning("Channel object does not contain a name")
            continue
        symbols = entry.get("symbols")
        product_ids = _symbols_to_product_ids(symbols) if isinstance(symbols, list) else []
        result.append((name, product_ids))
    return result


@dataclass(eq=False)
class Client:
    """A connected websocket client with its outgoing queue and subscriptions."""

    ws: web.WebSocketResponse | None = None
    id: str = field(default_factory=lambda: str(time.time_ns()))
    subscriptions: set[str] = field(default_factory=set)
    product_filters: dict[str, list[str]] = field(default_factory=dict)
    connected_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)
    closed: bool = False
    _queue: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    _eof: bool = field(default=False, repr=False)

    def offer(self, message: str) -> bool:
        """Queue ``message`` unless the queue is full or closed; report success."""
        if self.closed or self._queue.qsize() >= SEND_BUFFER_SIZE:
            return False
        self._queue.put_nowait(message)
        return True

    def enqueue(self, message: str) -> None:
        """Queue ``message`` regardless of the buffer limit, unless closed."""
        if not self.closed:
            self._queue.put_nowait(message)

    def close_send(self) -> None:
        """Close the outgoing queue; the writer stops after what is queued."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def receive(self) -> str | None:
        """Wait for the next outgoing message; ``None`` once the queue is closed."""
        if self._eof:
            return None
        item = await self._queue.get()
        if item is None:
            self._eof = True
        return item

    def drain(self) -> list[str]:
        """Take every message queued right now without waiting."""
        items: list[str] = []
        while not self._eof:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                self._eof = True
                break
            items.append(item)
        return items


class WebsocketHandler:
    """Accepts client websockets, tracks subscriptions and fans out messages."""

    def __init__(self, config: Config, delta_client: Any | None = None) -> None:
        self.config = config
        if delta_client is None and config.delta.enabled:
            delta_client = DeltaWebsocketClient(config.delta)
        self.delta_client = delta_client
        self.messages_sent = 0
        self.messages_received = 0
        self._clients: dict[Client, None] = {}
        self._subscriptions: dict[str, dict[Client, None]] = {}

    async def start(self) -> None:
        """Connect to Delta Exchange when enabled; a failure is only logged."""
        if self.delta_client is None:
            return
        try:
            await self.delta_client.connect()
        except DeltaError as exc:
            logger.error("Failed to connect to Delta Exchange: %s", exc)

    def origin_allowed(self, origin: str) -> bool:
        """Whether a connection from ``origin`` may be accepted."""
        if not self.config.websocket.check_origin:
            return True
        return any(
            allowed == "*" or allowed == origin
            for allowed in self.config.cors_allowed_origins()
        )

    async def handle_websocket(self, request: web.Request) -> web.StreamResponse:
        """Upgrade ``request`` to a websocket and serve the client until it leaves."""
        if not self.origin_allowed(request.headers.get("Origin", "")):
            logger.warning("Failed to upgrade connection: origin not allowed")
            return web.Response(status=403, text="Forbidden")

        ws = web.WebSocketResponse(
            heartbeat=PING_PERIOD,
            max_msg_size=self.config.websocket.max_message_size,
        )
        await ws.prepare(request)
        client = Client(ws=ws)
        self.register_client(client)
        writer = asyncio.create_task(self._write_pump(client))
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self.handle_message(client, msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Error reading message: %s", ws.exception())
                    break
        finally:
            self.unregister_client(client)
            await ws.close()
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        return ws

    async def _write_pump(self, client: Client) -> None:
        ws = client.ws
        if ws is None:
            return
        try:
            while True:
                message = await client.receive()
                if message is None:
                    break
                batch = [message, *client.drain()]
                await ws.send_str("\n".join(batch))
                self.messages_sent += len(batch)
        except (ConnectionError, RuntimeError, aiohttp.ClientError):
            pass
        finally:
            await ws.close()

    async def handle_message(self, client: Client, raw: str | bytes) -> None:
        """Process one message sent by ``client``."""
        client.last_activity = _now()
        self.messages_received += 1
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Error parsing message: %s", exc)
            return
        if not isinstance(msg, dict):
            logger.warning("Error parsing message: not a JSON object")
            return
        msg_type = msg.get("type")
        if not isinstance(msg_type, str):
            return
        if msg_type == "subscribe":
            await self.handle_subscribe(client, msg)
        elif msg_type == "unsubscribe":
            await self.handle_unsubscribe(client, msg)
        elif msg_type == "ping":
            self.handle_ping(client)
        else:
            logger.warning("Unknown message type: %s", msg_type)

    def _register_delta_handler(self, channel: str) -> None:
        def forward(message: str, product_id: str) -> None:
            self.broadcast_to_channel(channel, message, product_id)

        self.delta_client.register_handler(channel, forward)

    async def handle_subscribe(self, client: Client, msg: dict[str, Any]) -> None:
        """Subscribe ``client`` to the channels of ``msg`` and confirm."""
        channels = parse_subscription_channels(msg)
        if channels is None:
            logger.warning("Subscribe message does not contain a payload")
            return
        last_name = ""
        for name, product_ids in channels:
            last_name = name
            if self.delta_client is not None and msg.get("type") == "subscribe":
                self._register_delta_handler(name)
                try:
                    await self.delta_client.subscribe(name, product_ids)
                except DeltaError as exc:
                    logger.warning("Delta subscription to %s failed: %s", name, exc)
            self.subscribe_client(client, name, product_ids)

        client.enqueue(
            _encode(
                {
                    "type": "subscribed",
                    "payload": {"channels": [{"name": last_name, "symbols": ["all"]}]},
                }
            )
        )

    async def handle_unsubscribe(self, client: Client, msg: dict[str, Any]) -> None:
        """Unsubscribe ``client`` from the channels of ``msg`` and confirm."""
        channels = parse_subscription_channels(msg)
        if channels is None:
            logger.warning("Unsubscribe message does not contain a payload")
            return
        last_name = ""
        for name, _ in channels:
            last_name = name
            if self.delta_client is not None and msg.get("type") == "unsubscribe":
                subscribers = self._subscriptions.get(name)
                if subscribers:
                    logger.info(
                        "still %d clients subscribed to channel %s", len(subscribers), name
                    )
                else:
                    try:
                        await self.delta_client.unsubscribe(name)
                    except DeltaError as exc:
                        logger.warning("Delta unsubscription from %s failed: %s", name, exc)
            self.unsubscribe_client(client, name)

        client.enqueue(_encode({"type": "unsubscribed", "channel": last_name}))

    def handle_ping(self, client: Client) -> None:
        """Answer a ping with a pong carrying the time in milliseconds."""
        client.enqueue(_encode({"type": "pong", "time": time.time_ns() // 1_000_000}))

    def subscribe_client(self, client: Client, channel: str, product_ids: list[str]) -> None:
        """Add ``client`` to ``channel`` with the given product filter."""
        client.subscriptions.add(channel)
        client.product_filters[channel] = list(product_ids)
        self._subscriptions.setdefault(channel, {})[client] = None

    def unsubscribe_client(self, client: Client, channel: str) -> None:
        """Remove ``client`` from ``channel``; empty channels are dropped."""
        client.subscriptions.discard(channel)
        client.product_filters.pop(channel, None)
        subscribers = self._subscriptions.get(channel)
        if subscribers is not None:
            subscribers.pop(client, None)
            if not subscribers:
                del self._subscriptions[channel]

    def register_client(self, client: Client) -> None:
        """Start tracking ``client``."""
        self._clients[client] = None

    def unregister_client(self, client: Client) -> None:
        """Stop tracking ``client``, close its queue and drop its subscriptions."""
        if client in self._clients:
            del self._clients[client]
            client.close_send()
        for channel in list(self._subscriptions):
            subscribers = self._subscriptions[channel]
            if client in subscribers:
                del subscribers[client]
                if not subscribers:
                    del self._subscriptions[channel]

    def broadcast_to_channel(
        self, channel: str, message: str | bytes, product_id: str
    ) -> None:
        """Queue ``message`` for every subscriber of ``channel`` whose filter matches."""
        subscribers = self._subscriptions.get(channel)
        if subscribers is None:
            return
        if isinstance(message, (bytes, bytearray)):
            message = message.decode("utf-8", errors="replace")
        for client in list(subscribers):
            wanted = client.product_filters.get(channel)
            if wanted and product_id not in wanted:
                continue
            if not client.offer(message):
                self.unregister_client(client)

    def delta_connection_status(self) -> dict[str, Any]:
        """Connection status of the Delta Exchange client."""
        if self.delta_client is not None:
            return self.delta_client.connection_status()
        return {"connected": False}

    def statistics(self) -> dict[str, Any]:
        """Counters describing connections, subscriptions and traffic."""
        by_channel = {channel: len(subs) for channel, subs in self._subscriptions.items()}
        external: dict[str, bool] = {}
        if self.delta_client is not None:
            external["delta"] = self.delta_client.is_connected()
        return {
            "active_connections": len(self._clients),
            "active_subscriptions": sum(by_channel.values()),
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "subscriptions_by_channel": by_channel,
            "external_sources": external,
        }

    async def close(self) -> None:
        """Close every client connection and the Delta Exchange client."""
        for client in list(self._clients):
            if client.ws is not None:
                await client.ws.close()
        if self.delta_client is not None:
            await self.delta_client.close()