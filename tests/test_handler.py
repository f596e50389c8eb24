import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from deltarelay.config import Config
from deltarelay.delta_client import DeltaError
from deltarelay.handler import (
    SEND_BUFFER_SIZE,
    Client,
    WebsocketHandler,
    parse_subscription_channels,
)


class FakeDelta:
    def __init__(self, fail=False):
        self.handlers = {}
        self.subscribed = []
        self.unsubscribed = []
        self.fail = fail

    def register_handler(self, channel, handler):
        self.handlers[channel] = handler

    async def subscribe(self, channel, product_ids):
        if self.fail:
            raise DeltaError("not connected to Delta Exchange")
        self.subscribed.append((channel, list(product_ids)))

    async def unsubscribe(self, channel):
        self.unsubscribed.append(channel)

    def is_connected(self):
        return True

    def connection_status(self):
        return {"connected": True}

    async def close(self):
        pass


def sub_msg(kind, name, symbols=None):
    entry = {"name": name}
    if symbols is not None:
        entry["symbols"] = symbols
    return {"type": kind, "payload": {"channels": [entry]}}


def test_parse_without_payload_is_none():
    assert parse_subscription_channels({"type": "subscribe"}) is None


def test_parse_symbols_strings_and_numbers():
    msg = sub_msg("subscribe", "v2/ticker", ["BTCUSD", 27, 2.5])
    assert parse_subscription_channels(msg) == [("v2/ticker", ["BTCUSD", "27", "2.5"])]


def test_parse_all_replaces_other_symbols():
    msg = sub_msg("subscribe", "v2/ticker", ["BTCUSD", "all", "ETHUSD"])
    assert parse_subscription_channels(msg) == [("v2/ticker", ["all"])]


def test_parse_skips_nameless_channels():
    msg = {"type": "subscribe", "payload": {"channels": [{"symbols": ["X"]}, {"name": "a"}]}}
    assert parse_subscription_channels(msg) == [("a", [])]


@pytest.mark.asyncio
async def test_subscribe_confirms_and_counts():
    handler = WebsocketHandler(Config())
    client = Client()
    handler.register_client(client)
    await handler.handle_subscribe(client, sub_msg("subscribe", "v2/ticker", ["BTCUSD"]))
    assert client.drain() == [
        '{"payload":{"channels":[{"name":"v2/ticker","symbols":["all"]}]},"type":"subscribed"}'
    ]
    stats = handler.statistics()
    assert stats["subscriptions_by_channel"] == {"v2/ticker": 1}
    assert stats["active_subscriptions"] == 1
    assert stats["active_connections"] == 1
    assert client.product_filters == {"v2/ticker": ["BTCUSD"]}


@pytest.mark.asyncio
async def test_subscribe_without_payload_sends_nothing():
    handler = WebsocketHandler(Config())
    client = Client()
    await handler.handle_subscribe(client, {"type": "subscribe"})
    assert client.drain() == []


def test_broadcast_respects_product_filter():
    handler = WebsocketHandler(Config())
    btc, anything = Client(), Client()
    handler.subscribe_client(btc, "v2/ticker", ["BTCUSD"])
    handler.subscribe_client(anything, "v2/ticker", [])
    handler.broadcast_to_channel("v2/ticker", "eth-tick", "ETHUSD")
    handler.broadcast_to_channel("v2/ticker", b"btc-tick", "BTCUSD")
    assert btc.drain() == ["btc-tick"]
    assert anything.drain() == ["eth-tick", "btc-tick"]


def test_broadcast_to_unknown_channel_queues_nothing():
    handler = WebsocketHandler(Config())
    client = Client()
    handler.subscribe_client(client, "a", [])
    handler.broadcast_to_channel("b", "m", "X")
    assert client.drain() == []


@pytest.mark.asyncio
async def test_broadcast_to_full_client_unregisters_it():
    handler = WebsocketHandler(Config())
    client = Client()
    handler.register_client(client)
    handler.subscribe_client(client, "v2/ticker", [])
    for _ in range(SEND_BUFFER_SIZE):
        assert client.offer("m")
    handler.broadcast_to_channel("v2/ticker", "overflow", "BTCUSD")
    stats = handler.statistics()
    assert stats["active_connections"] == 0
    assert stats["subscriptions_by_channel"] == {}
    assert client.closed
    assert len(client.drain()) == SEND_BUFFER_SIZE
    assert await client.receive() is None


@pytest.mark.asyncio
async def test_unsubscribe_removes_and_confirms():
    handler = WebsocketHandler(Config())
    client = Client()
    handler.subscribe_client(client, "v2/ticker", [])
    await handler.handle_unsubscribe(client, sub_msg("unsubscribe", "v2/ticker"))
    assert json.loads(client.drain()[0]) == {"type": "unsubscribed", "channel": "v2/ticker"}
    assert handler.statistics()["subscriptions_by_channel"] == {}
    assert client.subscriptions == set()


@pytest.mark.asyncio
async def test_delta_subscription_forwards_to_clients():
    delta = FakeDelta()
    handler = WebsocketHandler(Config(), delta_client=delta)
    client = Client()
    await handler.handle_subscribe(client, sub_msg("subscribe", "v2/ticker", ["BTCUSD"]))
    client.drain()
    assert delta.subscribed == [("v2/ticker", ["BTCUSD"])]
    delta.handlers["v2/ticker"]("tick", "BTCUSD")
    assert client.drain() == ["tick"]


@pytest.mark.asyncio
async def test_delta_failure_still_subscribes_client():
    handler = WebsocketHandler(Config(), delta_client=FakeDelta(fail=True))
    client = Client()
    await handler.handle_subscribe(client, sub_msg("subscribe", "v2/ticker"))
    assert handler.statistics()["subscriptions_by_channel"] == {"v2/ticker": 1}


@pytest.mark.asyncio
async def test_delta_unsubscribe_only_when_channel_unused():
    delta = FakeDelta()
    handler = WebsocketHandler(Config(), delta_client=delta)
    stays, leaves = Client(), Client()
    handler.subscribe_client(stays, "v2/ticker", [])
    await handler.handle_unsubscribe(leaves, sub_msg("unsubscribe", "v2/ticker"))
    assert delta.unsubscribed == []
    await handler.handle_unsubscribe(leaves, sub_msg("unsubscribe", "other"))
    assert delta.unsubscribed == ["other"]


@pytest.mark.asyncio
async def test_ping_answers_pong():
    handler = WebsocketHandler(Config())
    client = Client()
    await handler.handle_message(client, '{"type":"ping"}')
    reply = json.loads(client.drain()[0])
    assert reply["type"] == "pong"
    assert isinstance(reply["time"], int) and reply["time"] > 0
    assert handler.statistics()["messages_received"] == 1


@pytest.mark.asyncio
async def test_invalid_json_counts_but_is_ignored():
    handler = WebsocketHandler(Config())
    client = Client()
    await handler.handle_message(client, b"not json")
    assert handler.messages_received == 1
    assert client.drain() == []


def test_origin_checks():
    config = Config()
    assert WebsocketHandler(config).origin_allowed("http://evil.example.com")
    config.websocket.check_origin = True
    config.security.cors_allowed_origins = "http://a.example.com,http://b.example.com"
    handler = WebsocketHandler(config)
    assert handler.origin_allowed("http://b.example.com")
    assert not handler.origin_allowed("http://c.example.com")


def test_status_without_delta():
    handler = WebsocketHandler(Config())
    assert handler.delta_connection_status() == {"connected": False}
    assert handler.statistics()["external_sources"] == {}


def test_statistics_reports_delta_source():
    handler = WebsocketHandler(Config(), delta_client=FakeDelta())
    assert handler.statistics()["external_sources"] == {"delta": True}


@pytest.mark.asyncio
async def test_unregister_closes_queue():
    handler = WebsocketHandler(Config())
    client = Client()
    handler.register_client(client)
    handler.subscribe_client(client, "a", [])
    handler.unregister_client(client)
    assert await client.receive() is None
    assert not client.offer("late")
    assert handler.statistics()["active_connections"] == 0


@pytest.mark.asyncio
async def test_websocket_roundtrip():
    handler = WebsocketHandler(Config())
    app = web.Application()
    app.router.add_get("/ws", handler.handle_websocket)
    async with TestClient(TestServer(app)) as http:
        ws = await http.ws_connect("/ws")
        await ws.send_str(json.dumps(sub_msg("subscribe", "v2/ticker", ["BTCUSD"])))
        confirmation = json.loads(await ws.receive_str(timeout=5))
        assert confirmation["type"] == "subscribed"
        handler.broadcast_to_channel("v2/ticker", "tick", "BTCUSD")
        assert await ws.receive_str(timeout=5) == "tick"
        assert handler.statistics()["messages_sent"] >= 2
        await ws.close()


@pytest.mark.asyncio
async def test_websocket_rejects_origin():
    config = Config()
    config.websocket.check_origin = True
    config.security.cors_allowed_origins = "http://a.example.com"
    handler = WebsocketHandler(config)
    app = web.Application()
    app.router.add_get("/ws", handler.handle_websocket)
    async with TestClient(TestServer(app)) as http:
        resp = await http.get("/ws", headers={"Origin": "http://c.example.com"})
        assert resp.status == 403