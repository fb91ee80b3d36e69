"""
Settlement pipeline: normalize -> settle -> ledger -> fulfillment fan-out.
"""

from tabletop.pipeline.event_bus import (
    EventType,
    IEventBus,
    InMemoryEventBus,
    NotificationBus,
    create_event_bus,
)
from tabletop.pipeline.ledger import CoinLedger
from tabletop.pipeline.normalizer import GatewayEventNormalizer
from tabletop.pipeline.orchestrator import SettlementOrchestrator
from tabletop.pipeline.poller import StatusPoller
from tabletop.pipeline.side_effects import FulfillmentSideEffects
from tabletop.pipeline.state_machine import OrderStateMachine

__all__ = [
    "CoinLedger",
    "EventType",
    "FulfillmentSideEffects",
    "GatewayEventNormalizer",
    "IEventBus",
    "InMemoryEventBus",
    "NotificationBus",
    "OrderStateMachine",
    "SettlementOrchestrator",
    "StatusPoller",
    "create_event_bus",
]
