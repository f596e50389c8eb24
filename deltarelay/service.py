"""Request/response service API over the websocket handler."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from deltarelay.config import Config
from deltarelay.handler import WebsocketHandler

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _subscription_id(channel: str) -> str:
    return f"{channel}-{time.time_ns()}"


@dataclass
class Subscription:
    """A channel with the number of clients subscribed to it."""

    subscription_id: str
    channel: str
    client_count: int
    created_at: datetime = field(default_factory=_now)


@dataclass
class SubscribeResponse:
    """Answer to a subscribe request."""

    subscription_id: str
    channel: str
    product_ids: list[str]
    created_at: datetime = field(default_factory=_now)


@dataclass
class ConnectionStatus:
    """State of the connection to one external source."""

    connected: bool = False
    connected_at: datetime | None = None
    reconnect_attempts: int = 0
    last_error: str = ""
    last_error_at: datetime | None = None


@dataclass
class ConnectionStatusResponse:
    """Connection states keyed by external source name."""

    connections: dict[str, ConnectionStatus] = field(default_factory=dict)


@dataclass
class StatisticsResponse:
    """Counters describing the websocket service."""

    active_connections: int = 0
    active_subscriptions: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    subscriptions_by_channel: dict[str, int] = field(default_factory=dict)
    external_sources: dict[str, bool] = field(default_factory=dict)


class WebsocketService:
    """Service operations for managing subscriptions and broadcasting."""

    def __init__(self, config: Config, websocket_handler: WebsocketHandler) -> None:
        self.config = config
        self.websocket_handler = websocket_handler

    def subscribe(self, channel: str, product_ids: Iterable[str]) -> SubscribeResponse:
        """Acknowledge a subscription to ``channel``."""
        product_ids = list(product_ids)
        logger.info(
            "Subscribe request received for channel %s with product IDs %s",
            channel,
            product_ids,
        )
        return SubscribeResponse(
            subscription_id=_subscription_id(channel),
            channel=channel,
            product_ids=product_ids,
        )

    def unsubscribe(self, subscription_id: str) -> None:
        """Acknowledge the removal of a subscription."""
        logger.info("Unsubscribe request received for subscription ID %s", subscription_id)

    def get_subscription_status(
        self, subscription_id: str, channel: str
    ) -> list[Subscription]:
        """List every channel that has subscribers, with its client count."""
        logger.info(
            "GetSubscriptionStatus request received for subscription ID %s and channel %s",
            subscription_id,
            channel,
        )
        stats = self.websocket_handler.statistics()
        by_channel = stats.get("subscriptions_by_channel", {})
        return [
            Subscription(
                subscription_id=_subscription_id(name),
                channel=name,
                client_count=count,
            )
            for name, count in by_channel.items()
        ]

    def get_connection_status(self) -> ConnectionStatusResponse:
        """Report the state of connections to external sources."""
        logger.info("GetConnectionStatus request received")
        response = ConnectionStatusResponse()
        if not self.config.delta.enabled:
            return response

        status = self.websocket_handler.delta_connection_status()
        delta = ConnectionStatus(connected=bool(status.get("connected", False)))
        connected_at = status.get("connected_at")
        if isinstance(connected_at, datetime):
            delta.connected_at = connected_at
        reconnect_count = status.get("reconnect_count")
        if isinstance(reconnect_count, int) and not isinstance(reconnect_count, bool):
            delta.reconnect_attempts = reconnect_count
        last_error = status.get("last_error")
        if isinstance(last_error, str):
            delta.last_error = last_error
        last_error_at = status.get("last_error_at")
        if isinstance(last_error_at, datetime):
            delta.last_error_at = last_error_at
        response.connections["delta"] = delta
        return response

    def broadcast(
        self, channel: str, message: str | bytes, product_ids: Iterable[int]
    ) -> None:
        """Send ``message`` to subscribers of ``channel`` filtered by the first product id."""
        ids = [str(product_id) for product_id in product_ids]
        logger.info(
            "Broadcast request received for channel %s with %d bytes",
            channel,
            len(message),
        )
        if not ids:
            raise ValueError("broadcast requires at least one product id")
        self.websocket_handler.broadcast_to_channel(channel, message, ids[0])

    def get_statistics(self) -> StatisticsResponse:
        """Return the handler's statistics."""
        logger.info("GetStatistics request received")
        stats = self.websocket_handler.statistics()
        return StatisticsResponse(
            active_connections=stats["active_connections"],
            active_subscriptions=stats["active_subscriptions"],
            messages_sent=stats["messages_sent"],
            messages_received=stats["messages_received"],
            subscriptions_by_channel=dict(stats.get("subscriptions_by_channel", {})),
            external_sources=dict(stats.get("external_sources", {})),
        )