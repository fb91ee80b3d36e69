"""
Notification Bus
================
Domain notifications published after settlement, cancellation, refund,
invoice queueing and coin expiry.

Publishing is fire-and-forget from the pipeline's point of view:
``NotificationBus.emit`` never raises, a failed publish is logged and
reported as ``False``.

- InMemoryEventBus: default, keeps every notification for inspection
- RabbitMQEventBus: persistent messages on a topic exchange routed by
  ``<hotel_id>.<event_type>`` so each restaurant's dashboard can bind to
  its own traffic. Publishing backs off after repeated broker failures.

pip install pydantic aio-pika structlog
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
from pydantic import BaseModel, Field

from tabletop.config import EventBusSettings, bus_settings
from tabletop.schemas.domain import utcnow


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class EventType(str, Enum):
    PAYMENT_SETTLED = "payment.settled"
    PAYMENT_FAILED = "payment.failed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_REFUNDED = "order.refunded"
    COINS_EXPIRED = "coins.expired"
    INVOICE_QUEUED = "invoice.queued"


class BaseEvent(BaseModel):
    """One published notification."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_component: str
    hotel_id: Optional[str] = None
    payload: dict = Field(default_factory=dict)

    def routing_key(self) -> str:
        # Platform-wide notifications (coin expiry) have no hotel
        return f"{self.hotel_id or 'platform'}.{self.event_type.value}"


# =============================================================================
# PUBLISH GUARD
# =============================================================================

class PublishGuard:
    """
    Stops hammering an unreachable broker.

    After ``failure_threshold`` consecutive failures publishing is refused
    for ``cooldown`` seconds, then a single attempt is let through.
    """

    def __init__(
        self,
        failure_threshold: int = bus_settings.PUBLISH_FAILURE_THRESHOLD,
        cooldown: float = bus_settings.PUBLISH_COOLDOWN_SECONDS,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.consecutive_failures = 0
        self._blocked_until = 0.0
        self._logger = structlog.get_logger().bind(component="publish_guard")

    @property
    def blocked(self) -> bool:
        return time.monotonic() < self._blocked_until

    def succeeded(self):
        if self.consecutive_failures:
            self._logger.info("publish_recovered", after_failures=self.consecutive_failures)
        self.consecutive_failures = 0
        self._blocked_until = 0.0

    def failed(self, error: Exception):
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.failure_threshold:
            self._blocked_until = time.monotonic() + self.cooldown
            self._logger.warning("publish_blocked",
                                 failures=self.consecutive_failures,
                                 cooldown=self.cooldown,
                                 error=str(error))


# =============================================================================
# BUS BACKENDS
# =============================================================================

class IEventBus(ABC):
    """Publish-only transport for notifications."""

    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @abstractmethod
    async def publish(self, event: BaseEvent) -> bool:
        """Raise ConnectionError when the notification cannot be delivered."""
        pass


class InMemoryEventBus(IEventBus):

    def __init__(self):
        self._events: list[BaseEvent] = []
        self._connected = False
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="inmemory_event_bus")

    async def connect(self) -> bool:
        self._connected = True
        return True

    async def disconnect(self) -> bool:
        self._connected = False
        return True

    async def health_check(self) -> bool:
        return self._connected

    async def publish(self, event: BaseEvent) -> bool:
        if not self._connected:
            raise ConnectionError("Event bus not connected")

        async with self._lock:
            self._events.append(event)

        self._logger.debug("event_published",
                           event_type=event.event_type.value,
                           routing_key=event.routing_key())
        return True

    def get_published_events(self, event_type: Optional[EventType] = None) -> list[BaseEvent]:
        return [e for e in self._events if event_type is None or e.event_type == event_type]


class RabbitMQEventBus(IEventBus):

    def __init__(self, config: EventBusSettings = bus_settings, guard: Optional[PublishGuard] = None):
        self._config = config
        self._guard = guard or PublishGuard()

        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._logger = structlog.get_logger().bind(component="rabbitmq_event_bus")

    async def connect(self) -> bool:
        try:
            self._connection = await aio_pika.connect_robust(self._config.RABBITMQ_URL)
            self._channel = await self._connection.channel(publisher_confirms=True)
            self._exchange = await self._channel.declare_exchange(
                self._config.EXCHANGE_NAME,
                ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            self._logger.error("connection_failed", error=str(e))
            raise

        self._logger.info("connected", exchange=self._config.EXCHANGE_NAME)
        return True

    async def disconnect(self) -> bool:
        try:
            if self._channel:
                await self._channel.close()
            if self._connection:
                await self._connection.close()
        except Exception as e:
            self._logger.error("disconnect_error", error=str(e))
            return False

        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        return bool(
            self._connection and not self._connection.is_closed
            and self._channel and not self._channel.is_closed
        )

    async def publish(self, event: BaseEvent) -> bool:
        if self._guard.blocked:
            raise ConnectionError("Publishing paused after repeated broker failures")
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")

        message = Message(
            body=event.model_dump_json().encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            correlation_id=event.correlation_id,
            message_id=event.event_id,
            timestamp=event.timestamp,
            headers={"event_type": event.event_type.value, "source_component": event.source_component},
            expiration=self._config.MESSAGE_TTL_MS / 1000,
        )
        try:
            await self._exchange.publish(message, routing_key=event.routing_key())
        except Exception as e:
            self._guard.failed(e)
            raise ConnectionError(f"Publish failed: {e}") from e

        self._guard.succeeded()
        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          routing_key=event.routing_key())
        return True


def create_event_bus(use_rabbitmq: bool = False) -> IEventBus:
    if use_rabbitmq:
        return RabbitMQEventBus()
    return InMemoryEventBus()


# =============================================================================
# NOTIFICATION BUS
# =============================================================================

class NotificationBus:
    """Fire-and-forget facade the pipeline emits through."""

    def __init__(self, bus: IEventBus, source_component: str = "settlement"):
        self.bus = bus
        self.source_component = source_component
        self._logger = structlog.get_logger().bind(component="notification_bus")

    async def emit(
        self,
        event_type: EventType,
        payload: dict,
        correlation_id: Optional[str] = None,
        hotel_id: Optional[str] = None,
    ) -> bool:
        event = BaseEvent(
            event_type=event_type,
            source_component=self.source_component,
            correlation_id=correlation_id or str(uuid.uuid4()),
            hotel_id=hotel_id,
            payload=payload,
        )
        try:
            return await self.bus.publish(event)
        except Exception as e:
            self._logger.warning("emit_failed",
                                 event_type=event_type.value,
                                 correlation_id=event.correlation_id,
                                 error=str(e))
            return False
