"""HTTP application and command-line entry point of the websocket service."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
from collections.abc import Sequence
from typing import Any

from aiohttp import web

from deltarelay.config import Config, load_config
from deltarelay.handler import WebsocketHandler

logger = logging.getLogger(__name__)

SERVICE_NAME = "websocket-service"
SHUTDOWN_TIMEOUT = 5.0


def metrics_body(stats: dict[str, Any]) -> str:
    """Render the metrics JSON document from handler statistics."""
    keys = ("active_connections", "active_subscriptions", "messages_sent", "messages_received")
    return json.dumps({key: int(stats[key]) for key in keys}, separators=(",", ":"))


def create_app(handler: WebsocketHandler, config: Config) -> web.Application:
    """Build the HTTP application serving websockets, health and metrics."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return web.Response(text="OK")

    app.router.add_get("/ws", handler.handle_websocket)
    app.router.add_get("/health", health)

    if config.metrics.enabled:

        async def metrics(request: web.Request) -> web.Response:
            return web.Response(
                text=metrics_body(handler.statistics()),
                content_type="application/json",
            )

        app.router.add_get(config.metrics.endpoint, metrics)

    return app


async def run(config: Config) -> None:
    """Serve until SIGINT or SIGTERM, then shut down cleanly."""
    handler = WebsocketHandler(config)
    await handler.start()

    runner = web.AppRunner(create_app(handler, config), shutdown_timeout=SHUTDOWN_TIMEOUT)
    await runner.setup()
    site = web.TCPSite(runner, port=config.http_port)
    await site.start()
    logger.info("Starting HTTP server on port %d", config.http_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)

    try:
        await stop.wait()
        logger.info("Received interrupt signal, shutting down...")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await handler.close()
        logger.info("Shutting down HTTP server...")
        await runner.cleanup()
        logger.info("Server shutdown complete")


def main(argv: Sequence[str] | None = None) -> int:
    """Start the websocket service."""
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Relay Delta Exchange websocket data to subscribed clients.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = load_config(SERVICE_NAME)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(config))
    return 0