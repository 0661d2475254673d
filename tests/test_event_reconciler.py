"""Tests for EventReconciler and WebhookRouter."""

import hashlib
import hmac
import json
import time

import pytest

from conftest import make_event
from config import Settings
from errors import (
    PersistenceError,
    SignatureInvalidError,
    SignatureMissingError,
    WebhookPayloadError,
)
from payments.event_reconciler import EventReconciler, WebhookRouter
from payments.stripe_checkout import WebhookVerifier
from schemas.orders import OrderStatus, PaymentStatus
from schemas.webhooks import EventKind, ReconcileOutcome, WebhookEnvelope
from storage.order_store import InMemoryEventLedger, InMemoryOrderStore

SIGNATURE = "t=1700000000,v1=unverified"


class FailingUpdateStore(InMemoryOrderStore):
    async def update_order(self, order_id, changes, expected=None):
        raise PersistenceError("Failed to update order")


async def _pending_order(store: InMemoryOrderStore) -> str:
    order = await store.insert_order({
        "user_id": "user-123",
        "total_amount": 5248,
        "status": "pending",
        "payment_status": "pending",
    })
    return order.id


def _reconciler(store, ledger=None, settings=None) -> EventReconciler:
    verifier = WebhookVerifier(settings or Settings())
    return EventReconciler(store, ledger or InMemoryEventLedger(), verifier)


def _body(event) -> bytes:
    return json.dumps(event).encode()


@pytest.mark.asyncio
async def test_completed_event_confirms_order():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)

    result = await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id=order_id)), SIGNATURE
    )

    assert result.outcome == ReconcileOutcome.HANDLED
    assert result.order_id == order_id
    order = await store.get_order(order_id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_completed_event_twice_is_idempotent():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)
    body = _body(make_event("checkout.session.completed", order_id=order_id))

    first = await reconciler.handle(body, SIGNATURE)
    second = await reconciler.handle(body, SIGNATURE)

    assert first.outcome == ReconcileOutcome.HANDLED
    assert second.outcome == ReconcileOutcome.IGNORED
    assert second.reason == "Event already processed"
    order = await store.get_order(order_id)
    assert (order.status, order.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)


@pytest.mark.asyncio
async def test_redelivery_with_new_event_id_does_not_error():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)

    await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id=order_id, event_id="evt_a")), SIGNATURE
    )
    result = await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id=order_id, event_id="evt_b")), SIGNATURE
    )

    assert result.outcome == ReconcileOutcome.IGNORED
    assert result.order_id == order_id
    order = await store.get_order(order_id)
    assert (order.status, order.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)


@pytest.mark.asyncio
async def test_expired_event_cancels_pending_order_only():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    before = (await store.get_order(order_id)).model_dump()
    reconciler = _reconciler(store)

    result = await reconciler.handle(
        _body(make_event("checkout.session.expired", order_id=order_id)), SIGNATURE
    )

    assert result.outcome == ReconcileOutcome.HANDLED
    after = (await store.get_order(order_id)).model_dump()
    assert after["status"] == OrderStatus.CANCELLED
    assert after["payment_status"] == PaymentStatus.FAILED
    unchanged = {"status", "payment_status", "updated_at"}
    assert {k: v for k, v in after.items() if k not in unchanged} == {
        k: v for k, v in before.items() if k not in unchanged
    }


@pytest.mark.asyncio
async def test_late_expiry_never_regresses_paid_order():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)

    await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id=order_id, event_id="evt_paid")), SIGNATURE
    )
    result = await reconciler.handle(
        _body(make_event("checkout.session.expired", order_id=order_id, event_id="evt_expired")), SIGNATURE
    )

    assert result.outcome == ReconcileOutcome.IGNORED
    assert result.reason == "Order already confirmed/paid"
    order = await store.get_order(order_id)
    assert (order.status, order.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)


@pytest.mark.asyncio
async def test_unknown_order_is_acknowledged_without_mutation():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)

    result = await reconciler.handle(
        _body(make_event(
            "checkout.session.completed",
            order_id="missing-order",
            client_reference_id="also-missing",
        )),
        SIGNATURE,
    )

    assert result.outcome == ReconcileOutcome.IGNORED
    assert result.reason == "No matching order"
    order = await store.get_order(order_id)
    assert order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_event_without_reference_is_ignored():
    reconciler = _reconciler(InMemoryOrderStore())

    result = await reconciler.handle(_body(make_event("checkout.session.completed")), SIGNATURE)

    assert result.outcome == ReconcileOutcome.IGNORED
    assert result.reason == "Event carries no order reference"


@pytest.mark.asyncio
async def test_client_reference_id_is_fallback():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)

    result = await reconciler.handle(
        _body(make_event("checkout.session.completed", client_reference_id=order_id)), SIGNATURE
    )

    assert result.outcome == ReconcileOutcome.HANDLED
    assert result.order_id == order_id


@pytest.mark.asyncio
async def test_metadata_wins_over_client_reference_id():
    store = InMemoryOrderStore()
    primary = await _pending_order(store)
    secondary = await _pending_order(store)
    reconciler = _reconciler(store)

    result = await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id=primary, client_reference_id=secondary)),
        SIGNATURE,
    )

    assert result.order_id == primary
    assert (await store.get_order(secondary)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_stale_metadata_falls_back_to_client_reference_id():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)

    result = await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id="gone", client_reference_id=order_id)),
        SIGNATURE,
    )

    assert result.outcome == ReconcileOutcome.HANDLED
    assert result.order_id == order_id


@pytest.mark.asyncio
async def test_payment_failed_is_logged_without_transition():
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store)
    event = {
        "id": "evt_pi_failed",
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": "pi_123",
            "metadata": {"order_id": order_id},
            "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds"},
        }},
    }

    result = await reconciler.handle(_body(event), SIGNATURE)

    assert result.outcome == ReconcileOutcome.IGNORED
    assert (await store.get_order(order_id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_unrecognized_event_type_is_ignored():
    ledger = InMemoryEventLedger()
    reconciler = _reconciler(InMemoryOrderStore(), ledger)
    event = {"id": "evt_refund", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}

    result = await reconciler.handle(_body(event), SIGNATURE)

    assert result.outcome == ReconcileOutcome.IGNORED
    assert result.reason == "Unhandled event type: charge.refunded"
    record = await ledger.get("evt_refund")
    assert record.status == "completed"
    assert record.outcome == ReconcileOutcome.IGNORED


@pytest.mark.asyncio
async def test_missing_signature_rejected_before_parsing():
    reconciler = _reconciler(InMemoryOrderStore())

    with pytest.raises(SignatureMissingError):
        await reconciler.handle(b"this is not json", None)

    with pytest.raises(SignatureMissingError):
        await reconciler.handle(b"this is not json", "")


@pytest.mark.asyncio
async def test_malformed_body_rejected():
    reconciler = _reconciler(InMemoryOrderStore())

    with pytest.raises(WebhookPayloadError):
        await reconciler.handle(b"{not json", SIGNATURE)

    with pytest.raises(WebhookPayloadError):
        await reconciler.handle(b'{"data": {}}', SIGNATURE)


@pytest.mark.asyncio
async def test_store_failure_releases_claim_for_redelivery():
    ledger = InMemoryEventLedger()
    reconciler = _reconciler(FailingUpdateStore(), ledger)
    body = _body(make_event("checkout.session.completed", order_id="order-1", event_id="evt_retry"))

    result = await reconciler.handle(body, SIGNATURE)

    assert result.outcome == ReconcileOutcome.FAILED
    assert result.reason == "Failed to update order"
    assert await ledger.get("evt_retry") is None


@pytest.mark.asyncio
async def test_unexpected_error_releases_claim_and_redelivery_applies():
    class FlakyStore(InMemoryOrderStore):
        def __init__(self):
            super().__init__()
            self.failures = 1

        async def update_order(self, order_id, changes, expected=None):
            if self.failures:
                self.failures -= 1
                raise ValueError("unexpected row shape")
            return await super().update_order(order_id, changes, expected)

    store = FlakyStore()
    ledger = InMemoryEventLedger()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store, ledger)
    body = _body(make_event("checkout.session.completed", order_id=order_id, event_id="evt_flaky"))

    first = await reconciler.handle(body, SIGNATURE)

    assert first.outcome == ReconcileOutcome.FAILED
    assert await ledger.get("evt_flaky") is None
    assert (await store.get_order(order_id)).status == OrderStatus.PENDING

    second = await reconciler.handle(body, SIGNATURE)

    assert second.outcome == ReconcileOutcome.HANDLED
    order = await store.get_order(order_id)
    assert (order.status, order.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)
    assert (await ledger.get("evt_flaky")).status == "completed"


@pytest.mark.asyncio
async def test_event_in_progress_fails_for_redelivery():
    ledger = InMemoryEventLedger()
    await ledger.try_claim("evt_busy", "checkout.session.completed")
    reconciler = _reconciler(InMemoryOrderStore(), ledger)

    result = await reconciler.handle(
        _body(make_event("checkout.session.completed", order_id="order-1", event_id="evt_busy")), SIGNATURE
    )

    assert result.outcome == ReconcileOutcome.FAILED
    # the other delivery still holds its claim
    assert (await ledger.get("evt_busy")).status == "processing"


def _stripe_signature(payload: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.mark.asyncio
async def test_signature_verified_when_secret_configured():
    settings = Settings(stripe_webhook_secret="whsec_test_secret")
    store = InMemoryOrderStore()
    order_id = await _pending_order(store)
    reconciler = _reconciler(store, settings=settings)
    body = _body(make_event("checkout.session.completed", order_id=order_id))

    with pytest.raises(SignatureInvalidError):
        await reconciler.handle(body, SIGNATURE)
    assert (await store.get_order(order_id)).status == OrderStatus.PENDING

    result = await reconciler.handle(body, _stripe_signature(body, "whsec_test_secret"))
    assert result.outcome == ReconcileOutcome.HANDLED


def test_verifier_mode():
    assert WebhookVerifier(Settings()).mode == "presence_only"
    assert WebhookVerifier(Settings(stripe_webhook_secret="whsec_x")).mode == "verified"


@pytest.mark.asyncio
async def test_router_dispatches_registered_kinds_only():
    router = WebhookRouter()
    seen = []

    @router.register(EventKind.CHECKOUT_EXPIRED)
    async def on_expired(envelope):
        seen.append(envelope.type)
        return None

    await router.route(WebhookEnvelope(type="checkout.session.expired"))
    ignored = await router.route(WebhookEnvelope(type="invoice.paid"))

    assert seen == ["checkout.session.expired"]
    assert ignored.outcome == ReconcileOutcome.IGNORED
    assert router.supported_events == ["checkout.session.expired"]
