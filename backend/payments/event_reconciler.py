"""
Event Reconciler
================
Applies Stripe lifecycle events to the order they reference.

- Signature header is checked before the body is parsed
- Every event id is claimed in the processed-event ledger, so redelivery is a no-op
- Transitions are single guarded updates (only from pending/pending), so a
  late or replayed event can never regress a terminal order
- Every delivery ends in exactly one ReconcileResult (handled/ignored/failed)

Example:
    reconciler = EventReconciler(store, ledger, WebhookVerifier(settings))
    result = await reconciler.handle(raw_body, request.headers.get("stripe-signature"))
"""

import json
from typing import Awaitable, Callable, Dict, Optional

import structlog
from pydantic import ValidationError

from errors import CheckoutError, WebhookPayloadError
from payments.stripe_checkout import WebhookVerifier
from schemas.orders import OrderStatus, PaymentStatus
from schemas.webhooks import (
    EventKind,
    ReconcileOutcome,
    ReconcileResult,
    WebhookEnvelope,
)
from storage.order_store import IEventLedger, IOrderStore

WebhookHandler = Callable[[WebhookEnvelope], Awaitable[ReconcileResult]]

PENDING_GUARD = {
    "status": OrderStatus.PENDING.value,
    "payment_status": PaymentStatus.PENDING.value,
}


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """Maps event kinds to handlers. Unregistered kinds are ignored."""

    def __init__(self):
        self._handlers: Dict[EventKind, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, kind: EventKind):
        """Decorator to register handler for event kind"""
        def decorator(handler: WebhookHandler):
            self._handlers[kind] = handler
            self._logger.debug("handler_registered", event_type=kind.value)
            return handler
        return decorator

    async def route(self, envelope: WebhookEnvelope) -> ReconcileResult:
        handler = self._handlers.get(envelope.kind)
        if not handler:
            self._logger.info("unhandled_event_type", event_type=envelope.type)
            return ReconcileResult.ignored(envelope, f"Unhandled event type: {envelope.type}")
        return await handler(envelope)

    @property
    def supported_events(self) -> list:
        return [kind.value for kind in self._handlers]


# =============================================================================
# EVENT RECONCILER
# =============================================================================

class EventReconciler:
    def __init__(self, store: IOrderStore, ledger: IEventLedger, verifier: WebhookVerifier):
        self.store = store
        self.ledger = ledger
        self.verifier = verifier
        self.router = WebhookRouter()
        self._register_handlers()
        self._logger = structlog.get_logger().bind(component="event_reconciler")

    async def handle(self, payload: bytes, signature: Optional[str]) -> ReconcileResult:
        """
        Authenticate, parse and apply one delivery.

        Raises SignatureMissingError / SignatureInvalidError / WebhookPayloadError
        for deliveries that must be rejected with 400. Everything else becomes
        a ReconcileResult.
        """
        self.verifier.verify(payload, signature)
        envelope = self.parse(payload)

        log = self._logger.bind(event_type=envelope.type, event_id=envelope.id)
        log.info("webhook_received")

        if envelope.id:
            duplicate = await self._claim(envelope, log)
            if duplicate is not None:
                return duplicate
        else:
            log.warning("webhook_without_event_id")

        try:
            result = await self.router.route(envelope)
        except CheckoutError as e:
            log.error("webhook_handler_failed", error=e.message)
            result = ReconcileResult.failed(envelope, e.message)
        except Exception as e:
            # The claim must still be released or every redelivery is refused
            log.exception("webhook_handler_crashed", error=str(e))
            result = ReconcileResult.failed(envelope, "Webhook processing failed")

        await self._settle(envelope, result, log)

        log.info("webhook_processed",
                 outcome=result.outcome.value,
                 order_id=result.order_id,
                 reason=result.reason)
        return result

    @staticmethod
    def parse(payload: bytes) -> WebhookEnvelope:
        try:
            return WebhookEnvelope.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as e:
            raise WebhookPayloadError("Invalid webhook payload") from e

    async def _claim(self, envelope: WebhookEnvelope, log) -> Optional[ReconcileResult]:
        """Claim the event id. Returns a result when the delivery must stop here."""
        try:
            if await self.ledger.try_claim(envelope.id, envelope.type):
                return None
            record = await self.ledger.get(envelope.id)
        except CheckoutError as e:
            log.error("ledger_unavailable", error=e.message)
            return ReconcileResult.failed(envelope, e.message)

        if record is not None and record.status == "processing":
            # Another delivery holds the claim; fail so Stripe redelivers later
            log.warning("webhook_in_progress")
            return ReconcileResult.failed(envelope, "Event is already being processed")

        log.info("webhook_duplicate")
        return ReconcileResult.ignored(
            envelope, "Event already processed", order_id=record.order_id if record else None
        )

    async def _settle(self, envelope: WebhookEnvelope, result: ReconcileResult, log) -> None:
        if not envelope.id:
            return
        try:
            if result.outcome == ReconcileOutcome.FAILED:
                await self.ledger.release(envelope.id)
            else:
                await self.ledger.mark_completed(envelope.id, result.outcome, result.order_id)
        except CheckoutError as e:
            log.error("ledger_update_failed", error=e.message)

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _register_handlers(self):
        @self.router.register(EventKind.CHECKOUT_COMPLETED)
        async def handle_checkout_completed(envelope: WebhookEnvelope):
            return await self._transition(envelope, OrderStatus.CONFIRMED, PaymentStatus.PAID)

        @self.router.register(EventKind.CHECKOUT_EXPIRED)
        async def handle_checkout_expired(envelope: WebhookEnvelope):
            return await self._transition(envelope, OrderStatus.CANCELLED, PaymentStatus.FAILED)

        @self.router.register(EventKind.PAYMENT_FAILED)
        async def handle_payment_failed(envelope: WebhookEnvelope):
            return await self._on_payment_failed(envelope)

    async def _transition(
        self,
        envelope: WebhookEnvelope,
        status: OrderStatus,
        payment_status: PaymentStatus,
    ) -> ReconcileResult:
        log = self._logger.bind(event_type=envelope.type, event_id=envelope.id)
        candidates = envelope.correlation_candidates()
        if not candidates:
            log.warning("order_reference_missing")
            return ReconcileResult.ignored(envelope, "Event carries no order reference")

        changes = {"status": status.value, "payment_status": payment_status.value}
        for order_id in candidates:
            updated = await self.store.update_order(order_id, changes, expected=PENDING_GUARD)
            if updated is not None:
                log.info("order_transitioned",
                         order_id=order_id,
                         status=status.value,
                         payment_status=payment_status.value)
                return ReconcileResult.handled(envelope, order_id)

            existing = await self.store.get_order(order_id)
            if existing is not None:
                log.info("order_already_settled",
                         order_id=order_id,
                         status=existing.status.value,
                         payment_status=existing.payment_status.value)
                return ReconcileResult.ignored(
                    envelope,
                    f"Order already {existing.status.value}/{existing.payment_status.value}",
                    order_id=order_id,
                )

        log.warning("order_not_found", candidates=candidates)
        return ReconcileResult.ignored(envelope, "No matching order")

    async def _on_payment_failed(self, envelope: WebhookEnvelope) -> ReconcileResult:
        payment_intent = envelope.object
        error = payment_intent.get("last_payment_error") or {}
        self._logger.warning("payment_failed",
                             event_id=envelope.id,
                             payment_intent_id=payment_intent.get("id"),
                             error_code=error.get("code"),
                             decline_code=error.get("decline_code"))
        # Checkout can still be retried by the shopper; expiry settles the order
        return ReconcileResult.ignored(envelope, "Payment failure logged without transition")
