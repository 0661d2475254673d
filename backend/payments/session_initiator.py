"""
Session Initiator
=================
Turns a validated checkout payload into a durable order and a redirectable
Stripe Checkout Session.

Flow:
    validate -> insert order -> insert items (compensate on failure)
    -> line items from stored items -> Stripe session -> backfill session id

Example:
    initiator = SessionInitiator(settings, store, StripeCheckout(settings))
    session = await initiator.create_session(request)
    # redirect the shopper to session.url
"""

from typing import Any, Dict, List

import structlog

from config import Settings
from errors import PersistenceError
from payments.stripe_checkout import (
    StripeCheckout,
    build_line_items,
    build_success_url,
    line_items_total,
)
from schemas.orders import (
    CheckoutRequest,
    CheckoutSession,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
)
from storage.order_store import IOrderStore


class SessionInitiator:
    def __init__(self, settings: Settings, store: IOrderStore, checkout: StripeCheckout):
        # Credential gate runs once, at construction
        settings.require("stripe_secret_key")
        self.settings = settings
        self.store = store
        self.checkout = checkout
        self._logger = structlog.get_logger().bind(component="session_initiator")

    # =========================================================================
    # CHECKOUT SESSION CREATION
    # =========================================================================

    async def create_session(self, request: CheckoutRequest) -> CheckoutSession:
        data = request.order_data
        log = self._logger.bind(user_id=data.user_id)
        log.info("checkout_initiated",
                 total_amount=data.total_amount,
                 item_count=len(data.order_items))

        order = await self.store.insert_order(self._order_row(request))
        log = log.bind(order_id=order.id)
        log.info("order_created", order_number=order.order_number)

        items = await self._insert_items(order, request, log)

        line_items = build_line_items(items, order.currency)
        charged = line_items_total(line_items)
        if charged != order.total_amount:
            # Unreachable for validated payloads unless the store rewrote amounts
            log.error("amount_mismatch", charged=charged, total_amount=order.total_amount)
            raise PersistenceError("Stored items do not match order total")

        session = await self.checkout.create_session(
            line_items=line_items,
            success_url=build_success_url(request.success_url, order.id),
            cancel_url=request.cancel_url,
            order_id=order.id,
        )
        log = log.bind(stripe_session_id=session.id)
        log.info("stripe_session_created")

        await self._backfill_session_id(order.id, session.id, log)

        return CheckoutSession(session_id=session.id, url=session.url, order_id=order.id)

    def _order_row(self, request: CheckoutRequest) -> Dict[str, Any]:
        data = request.order_data
        billing = data.billing_address or data.shipping_address
        return {
            "user_id": data.user_id,
            "total_amount": data.total_amount,
            "currency": self.settings.currency,
            "shipping_address": data.shipping_address.model_dump(by_alias=True, exclude_none=True),
            "billing_address": billing.model_dump(by_alias=True, exclude_none=True),
            "payment_method": "card",
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "notes": data.notes,
        }

    async def _insert_items(self, order: Order, request: CheckoutRequest, log) -> List[OrderItem]:
        rows = [
            {**item.model_dump(), "order_id": order.id}
            for item in request.order_data.order_items
        ]
        try:
            items = await self.store.insert_order_items(rows)
        except Exception:
            await self._compensate(order.id, log)
            raise
        log.info("order_items_created", item_count=len(items))
        return items

    async def _compensate(self, order_id: str, log) -> None:
        """Remove an order whose items never landed."""
        try:
            deleted = await self.store.delete_order(order_id)
            log.warning("order_compensated", deleted=deleted)
        except PersistenceError as e:
            log.error("order_orphaned", error=str(e))

    async def _backfill_session_id(self, order_id: str, session_id: str, log) -> None:
        # Best effort: the webhook still correlates through metadata/client_reference_id
        try:
            updated = await self.store.update_order(order_id, {"stripe_session_id": session_id})
        except PersistenceError as e:
            log.warning("session_backfill_failed", error=str(e))
            return
        if updated is None:
            log.warning("session_backfill_failed", error="order not found")
