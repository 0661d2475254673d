"""
Order Store
===========
Persistence interfaces for orders, order items and the processed-event
ledger, plus in-memory implementations used for local development and tests.

The interface mirrors what the hosted data store exposes: create rows,
update a row by id (optionally guarded on current column values), read by
id. There are no multi-row transactions.
"""

import asyncio
import hashlib
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import PersistenceError
from schemas.orders import Order, OrderItem
from schemas.webhooks import ProcessedEvent, ReconcileOutcome


# =============================================================================
# PERSISTENCE INTERFACES
# =============================================================================

class IOrderStore(ABC):
    """Order and order-item persistence"""

    @abstractmethod
    async def insert_order(self, row: Dict[str, Any]) -> Order:
        """Insert one order row and return it as stored (with id)."""

    @abstractmethod
    async def insert_order_items(self, rows: List[Dict[str, Any]]) -> List[OrderItem]:
        """Insert all item rows in a single batch."""

    @abstractmethod
    async def update_order(
        self,
        order_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        """
        Apply changes to one order. When expected is given the update only
        applies if every expected column currently holds that value.
        Returns the updated order, or None if no row matched.
        """

    @abstractmethod
    async def delete_order(self, order_id: str) -> bool:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        """Return the order with its items, or None."""

    @abstractmethod
    async def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        """Return orders with items, newest first. All orders when user_id is None."""

    async def close(self) -> None:
        pass


class IEventLedger(ABC):
    """Processed webhook event ledger (unique on event id)"""

    @abstractmethod
    async def try_claim(self, event_id: str, event_type: str) -> bool:
        """Record the event as processing. Returns False if already recorded."""

    @abstractmethod
    async def mark_completed(
        self,
        event_id: str,
        outcome: ReconcileOutcome,
        order_id: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    async def release(self, event_id: str) -> None:
        """Drop a claim so a redelivery can be applied again."""

    @abstractmethod
    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _matches(record: Dict[str, Any], expected: Optional[Dict[str, Any]]) -> bool:
    if not expected:
        return True
    return all(record.get(column) == value for column, value in expected.items())


class InMemoryOrderStore(IOrderStore):
    """asyncio-safe in-memory order store"""

    def __init__(self):
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._items: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def generate_order_number(order_id: str) -> str:
        h = hashlib.sha256(f"order:{order_id}".encode()).hexdigest()[:8].upper()
        return f"ORD-{h}"

    def _build(self, record: Dict[str, Any]) -> Order:
        items = self._items.get(record["id"], [])
        return Order.model_validate({**record, "items": items})

    async def insert_order(self, row: Dict[str, Any]) -> Order:
        async with self._lock:
            order_id = str(uuid.uuid4())
            now = _now()
            record = {
                "currency": "eur",
                "status": "pending",
                "payment_status": "pending",
                "stripe_session_id": None,
                **row,
                "id": order_id,
                "order_number": self.generate_order_number(order_id),
                "created_at": now,
                "updated_at": now,
            }
            self._orders[order_id] = record
            return self._build(record)

    async def insert_order_items(self, rows: List[Dict[str, Any]]) -> List[OrderItem]:
        async with self._lock:
            stored = []
            for row in rows:
                if row.get("order_id") not in self._orders:
                    raise PersistenceError(f"Order {row.get('order_id')} does not exist")
                stored.append({**row, "id": str(uuid.uuid4()), "created_at": _now()})
            for record in stored:
                self._items.setdefault(record["order_id"], []).append(record)
            return [OrderItem.model_validate(r) for r in stored]

    async def update_order(
        self,
        order_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        async with self._lock:
            record = self._orders.get(order_id)
            if record is None or not _matches(record, expected):
                return None
            record.update(changes)
            record["updated_at"] = _now()
            return self._build(record)

    async def delete_order(self, order_id: str) -> bool:
        async with self._lock:
            self._items.pop(order_id, None)
            return self._orders.pop(order_id, None) is not None

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            record = self._orders.get(order_id)
            return self._build(record) if record else None

    async def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        async with self._lock:
            # dict preserves insertion order, so reversed() is newest first
            records = [
                r for r in reversed(self._orders.values())
                if user_id is None or r["user_id"] == user_id
            ]
            return [self._build(r) for r in records]


class InMemoryEventLedger(IEventLedger):
    def __init__(self):
        self._events: Dict[str, ProcessedEvent] = {}
        self._lock = asyncio.Lock()

    async def try_claim(self, event_id: str, event_type: str) -> bool:
        async with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = ProcessedEvent(event_id=event_id, event_type=event_type)
            return True

    async def mark_completed(
        self,
        event_id: str,
        outcome: ReconcileOutcome,
        order_id: Optional[str] = None,
    ) -> None:
        async with self._lock:
            record = self._events.get(event_id)
            if record:
                record.status = "completed"
                record.outcome = outcome
                record.order_id = order_id

    async def release(self, event_id: str) -> None:
        async with self._lock:
            self._events.pop(event_id, None)

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        async with self._lock:
            return self._events.get(event_id)
