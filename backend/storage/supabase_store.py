"""
Supabase Store
==============
IOrderStore / IEventLedger backed by Supabase's PostgREST API.

Every call goes through one shared httpx.AsyncClient authenticated with the
service-role key. Row-level guards are expressed as PostgREST filters
(``?id=eq.<id>&status=eq.pending``) so each guarded update is a single
atomic row mutation on the server.
"""

import uuid
from typing import Any, Dict, List, Optional

import httpx
import structlog

from config import Settings
from errors import PersistenceError
from schemas.orders import Order, OrderItem
from schemas.webhooks import ProcessedEvent, ReconcileOutcome
from storage.order_store import IEventLedger, IOrderStore

logger = structlog.get_logger(component="supabase_store")

ORDERS_TABLE = "orders"
ORDER_ITEMS_TABLE = "order_items"
LEDGER_TABLE = "processed_webhook_events"

ORDER_WITH_ITEMS = "*,items:order_items(*)"


def _eq(value: Any) -> str:
    return f"eq.{value}"


def _is_uuid(value: str) -> bool:
    # ids are uuid columns; PostgREST answers 400 for anything else
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class SupabaseClient:
    """Thin PostgREST client shared by the order store and the event ledger"""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings.require("supabase_url", "supabase_service_role_key")
        key = settings.supabase_service_role_key
        self._client = httpx.AsyncClient(
            base_url=f"{settings.supabase_url.rstrip('/')}/rest/v1",
            timeout=settings.supabase_timeout_seconds,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            return await self._client.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error("store_request_failed", method=method, table=table, error=str(e))
            raise PersistenceError(f"Data store unreachable: {type(e).__name__}") from e

    @staticmethod
    def raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        logger.error("store_error",
                     action=action,
                     status=response.status_code,
                     body=response.text[:500])
        raise PersistenceError(f"Failed to {action}")

    async def close(self) -> None:
        await self._client.aclose()


class SupabaseOrderStore(IOrderStore):
    def __init__(self, client: SupabaseClient):
        self._db = client

    async def insert_order(self, row: Dict[str, Any]) -> Order:
        response = await self._db.request(
            "POST", ORDERS_TABLE, json=row, prefer="return=representation"
        )
        self._db.raise_for_status(response, "create order")
        rows = response.json()
        if not rows:
            raise PersistenceError("Failed to create order")
        return Order.model_validate(rows[0])

    async def insert_order_items(self, rows: List[Dict[str, Any]]) -> List[OrderItem]:
        response = await self._db.request(
            "POST", ORDER_ITEMS_TABLE, json=rows, prefer="return=representation"
        )
        self._db.raise_for_status(response, "create order items")
        return [OrderItem.model_validate(r) for r in response.json()]

    async def update_order(
        self,
        order_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        if not _is_uuid(order_id):
            return None
        params = {"id": _eq(order_id)}
        for column, value in (expected or {}).items():
            params[column] = _eq(value)
        response = await self._db.request(
            "PATCH", ORDERS_TABLE, params=params, json=changes, prefer="return=representation"
        )
        self._db.raise_for_status(response, "update order")
        rows = response.json()
        return Order.model_validate(rows[0]) if rows else None

    async def delete_order(self, order_id: str) -> bool:
        if not _is_uuid(order_id):
            return False
        response = await self._db.request(
            "DELETE", ORDERS_TABLE, params={"id": _eq(order_id)}, prefer="return=representation"
        )
        self._db.raise_for_status(response, "delete order")
        return bool(response.json())

    async def get_order(self, order_id: str) -> Optional[Order]:
        if not _is_uuid(order_id):
            return None
        response = await self._db.request(
            "GET", ORDERS_TABLE, params={"id": _eq(order_id), "select": ORDER_WITH_ITEMS}
        )
        self._db.raise_for_status(response, "fetch order")
        rows = response.json()
        return Order.model_validate(rows[0]) if rows else None

    async def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        params = {"select": ORDER_WITH_ITEMS, "order": "created_at.desc"}
        if user_id is not None:
            params["user_id"] = _eq(user_id)
        response = await self._db.request("GET", ORDERS_TABLE, params=params)
        self._db.raise_for_status(response, "list orders")
        return [Order.model_validate(r) for r in response.json()]

    async def close(self) -> None:
        await self._db.close()


class SupabaseEventLedger(IEventLedger):
    """Ledger table with a unique constraint on event_id"""

    def __init__(self, client: SupabaseClient):
        self._db = client

    async def try_claim(self, event_id: str, event_type: str) -> bool:
        response = await self._db.request(
            "POST",
            LEDGER_TABLE,
            json={"event_id": event_id, "event_type": event_type, "status": "processing"},
            prefer="return=minimal",
        )
        # 409: unique violation on event_id, already claimed
        if response.status_code == 409:
            return False
        self._db.raise_for_status(response, "record webhook event")
        return True

    async def mark_completed(
        self,
        event_id: str,
        outcome: ReconcileOutcome,
        order_id: Optional[str] = None,
    ) -> None:
        response = await self._db.request(
            "PATCH",
            LEDGER_TABLE,
            params={"event_id": _eq(event_id)},
            json={"status": "completed", "outcome": outcome.value, "order_id": order_id},
            prefer="return=minimal",
        )
        self._db.raise_for_status(response, "complete webhook event")

    async def release(self, event_id: str) -> None:
        response = await self._db.request(
            "DELETE", LEDGER_TABLE, params={"event_id": _eq(event_id)}, prefer="return=minimal"
        )
        self._db.raise_for_status(response, "release webhook event")

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        response = await self._db.request(
            "GET", LEDGER_TABLE, params={"event_id": _eq(event_id)}
        )
        self._db.raise_for_status(response, "fetch webhook event")
        rows = response.json()
        return ProcessedEvent.model_validate(rows[0]) if rows else None
