"""
Staff assignment collaborator.

Settlement asks for a waiter once an order is paid. The built-in service
keeps an on-shift roster per (hotel, branch) and picks the staff member with
the fewest active orders.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from tabletop.schemas import Order
from tabletop.schemas.domain import utcnow


class Assignment(BaseModel):
    order_id: str
    staff_id: str
    assigned_at: datetime = Field(default_factory=utcnow)
    method: str = "least_loaded"


class AssignmentResult(BaseModel):
    success: bool
    assignment: Optional[Assignment] = None
    reason: Optional[str] = None


class IAssignmentService(ABC):

    @abstractmethod
    async def assign_order(self, order: Order) -> AssignmentResult:
        pass


class RosterAssignmentService(IAssignmentService):
    """Least-loaded assignment over an in-memory on-shift roster."""

    def __init__(self):
        self._roster: dict[tuple[str, Optional[str]], set[str]] = defaultdict(set)
        self._load: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="assignment_service")

    async def clock_in(self, staff_id: str, hotel_id: str, branch_id: Optional[str] = None):
        async with self._lock:
            self._roster[(hotel_id, branch_id)].add(staff_id)

    async def clock_out(self, staff_id: str, hotel_id: str, branch_id: Optional[str] = None):
        async with self._lock:
            self._roster[(hotel_id, branch_id)].discard(staff_id)

    async def release(self, staff_id: str, order_id: str):
        async with self._lock:
            self._load[staff_id].discard(order_id)

    async def assign_order(self, order: Order) -> AssignmentResult:
        async with self._lock:
            on_shift = self._roster.get((order.hotel_id, order.branch_id)) or set()
            if not on_shift:
                self._logger.warning("no_staff_available",
                                     order_id=order.order_id,
                                     hotel_id=order.hotel_id,
                                     branch_id=order.branch_id)
                return AssignmentResult(success=False, reason="No staff on shift")

            for staff_id, orders in self._load.items():
                if order.order_id in orders:
                    return AssignmentResult(
                        success=True,
                        assignment=Assignment(order_id=order.order_id, staff_id=staff_id),
                    )

            staff_id = min(sorted(on_shift), key=lambda s: len(self._load[s]))
            self._load[staff_id].add(order.order_id)

        self._logger.info("order_assigned", order_id=order.order_id, staff_id=staff_id)
        return AssignmentResult(
            success=True,
            assignment=Assignment(order_id=order.order_id, staff_id=staff_id),
        )
