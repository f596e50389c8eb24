"""Websocket relay that fans Delta Exchange market data out to subscribed clients."""

__version__ = "0.1.0"