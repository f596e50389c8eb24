# deltarelay

A websocket relay. It keeps one upstream connection to the Delta Exchange
websocket feed and fans the messages it receives out to any number of
downstream websocket clients. Each client picks the channels and symbols it
wants. The relay also serves a health check and an optional JSON metrics
endpoint. It has a service object that reports subscriptions, connection
state and traffic counters.

## Installation

```
pip install .
```

To install the test tools as well:

```
pip install ".[test]"
```

## Running

```
deltarelay
```

The command takes no options. It runs until it receives SIGINT or SIGTERM,
and then it closes client connections, the upstream connection and the HTTP
server. It uses the configuration built by `deltarelay.config.load_config`:

- HTTP port 8083
- upstream `wss://socket.india.delta.exchange`, enabled
- up to 5 reconnection attempts, 5 seconds apart, after the upstream
  connection drops
- metrics endpoint disabled
- origin checking disabled

It serves these endpoints:

- `GET /ws`: the websocket endpoint for clients
- `GET /health`: answers `OK`
- `config.metrics.endpoint`, only when `config.metrics.enabled` is true.
  It returns `{"active_connections":…,"active_subscriptions":…,"messages_sent":…,"messages_received":…}`.

When `config.websocket.check_origin` is true, a connection is accepted only
if its `Origin` header appears in `config.security.cors_allowed_origins`,
which is a comma-separated string. `*` allows every origin, and so does an
empty string. A connection from any other origin is refused with 403.

## Client protocol

Clients send JSON text frames.

To subscribe to one or more channels, optionally filtered by symbol:

```json
{"type": "subscribe", "payload": {"channels": [{"name": "v2/ticker", "symbols": ["BTCUSD"]}]}}
```

The symbol `"all"` subscribes to every symbol on the channel. Numeric symbols
are taken as strings. For each channel, the relay does three things:

1. It subscribes upstream.
2. It routes every upstream message whose `type` equals the channel name to
   the channel's subscribers.
3. It skips a subscriber whose symbol filter does not contain the message's
   `symbol`.

The reply is:

```json
{"payload":{"channels":[{"name":"v2/ticker","symbols":["all"]}]},"type":"subscribed"}
```

To unsubscribe:

```json
{"type": "unsubscribe", "payload": {"channels": [{"name": "v2/ticker"}]}}
```

The relay unsubscribes upstream only when no other client remains on the
channel. It replies `{"channel":"v2/ticker","type":"unsubscribed"}`.

Keep-alive:

```json
{"type": "ping"}
```

The relay answers `{"time":<milliseconds since epoch>,"type":"pong"}`.

Several outgoing messages that are queued at once are sent in one frame,
separated by newlines. A client whose queue holds 256 messages when a
broadcast arrives is disconnected.

## Using it from Python

```python
import asyncio

from deltarelay.config import load_config
from deltarelay.app import run

config = load_config("deltarelay")
config.delta.enabled = False  # no upstream connection, e.g. for local testing
config.metrics.enabled = True
config.metrics.endpoint = "/metrics"

asyncio.run(run(config))  # serves until SIGINT/SIGTERM
```

The modules are:

- `deltarelay.config`: the `Config` dataclass and its nested settings
  (`Delta`, `WebsocketSettings`, `AuthSettings`, `SecuritySettings`,
  `MetricsSettings`). It also has `load_config(service_name)`, which returns
  the built-in defaults.
- `deltarelay.delta_client`: `DeltaWebsocketClient` for the upstream feed.
  It provides `connect()`, `subscribe()`, `unsubscribe()`,
  `register_handler()`, `dispatch()`, `close()`, `is_connected()`,
  `connection_status()` and `subscribed_channels()`. Failures raise
  `DeltaError`. The module also has the message builders
  `subscribe_message()` and `unsubscribe_message()` and the parser
  `parse_exchange_message()`.
- `deltarelay.handler`: `WebsocketHandler`, which accepts clients and tracks
  their subscriptions. It provides `broadcast_to_channel()` to push a message
  to matching subscribers and `statistics()` for counters.
  `delta_connection_status()` returns the upstream connection state. The
  module also has `parse_subscription_channels()` for (un)subscribe payloads.
- `deltarelay.service`: `WebsocketService`, which wraps a handler and returns
  dataclasses:
  - `get_statistics()` returns a `StatisticsResponse`.
  - `get_subscription_status()` returns a list of `Subscription`.
  - `get_connection_status()` returns a `ConnectionStatusResponse`.
  - `subscribe()` returns a `SubscribeResponse`.
  - `unsubscribe()`.
  - `broadcast()` filters by the first product id and raises `ValueError`
    when none is given.
- `deltarelay.app`: `create_app(handler, config)` builds the `aiohttp`
  application, so you can mount it in your own server. It also has
  `metrics_body()`, `run()` and `main()`.

## What it does not do

- `load_config` reads no configuration file or environment variables. To
  change a setting, edit the returned `Config` in code.
- `WebsocketService` is a plain Python object. The package serves no remote
  procedure call API for it, so only the HTTP port is opened.
- `WebsocketService.subscribe()` and `unsubscribe()` only acknowledge the
  request. They do not change any client's subscriptions.
- The authentication and rate-limit settings are stored but not enforced.

## Tests

```
pip install ".[test]"
pytest
```