"""Shared fixtures: settings, in-memory stores, a fake Stripe gateway and payloads."""

import copy
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from config import Settings
from errors import PaymentProviderError
from payments.stripe_checkout import HostedSession
from storage.order_store import InMemoryEventLedger, InMemoryOrderStore


class FakeCheckout:
    """Stands in for StripeCheckout; records every session request."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def create_session(self, *, line_items, success_url, cancel_url, order_id) -> HostedSession:
        self.calls.append({
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "order_id": order_id,
        })
        if self.fail:
            raise PaymentProviderError("Failed to create Stripe session")
        session_id = f"cs_test_{len(self.calls)}"
        return HostedSession(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")


SHIPPING = {
    "firstName": "Ada",
    "lastName": "Lovelace",
    "address": "12 Rue de la Paix",
    "city": "Paris",
    "postalCode": "75002",
    "country": "FR",
    "phone": "+33100000000",
}

ORDER_ITEMS = [
    {
        "product_id": "prod-case",
        "product_variant_id": "var-case-black",
        "product_name": "Prismatic Case",
        "variant_name": "Black",
        "quantity": 2,
        "unit_price": 1999,
        "total_price": 3998,
    },
    {
        "product_id": "prod-cable",
        "product_name": "USB-C Cable",
        "quantity": 1,
        "unit_price": 1250,
        "total_price": 1250,
    },
]


def make_checkout_payload(items: Optional[List[Dict[str, Any]]] = None, **order_overrides) -> Dict[str, Any]:
    items = copy.deepcopy(ORDER_ITEMS if items is None else items)
    order_data = {
        "user_id": "user-123",
        "total_amount": sum(item["total_price"] for item in items),
        "shipping_address": dict(SHIPPING),
        "notes": "Leave at the door",
        "order_items": items,
    }
    order_data.update(order_overrides)
    return {
        "orderData": order_data,
        "successUrl": "https://shop.example/order-success",
        "cancelUrl": "https://shop.example/checkout",
    }


def make_event(
    event_type: str,
    order_id: Optional[str] = None,
    client_reference_id: Optional[str] = None,
    event_id: str = "evt_test_1",
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {"id": "cs_test_1", "object": "checkout.session"}
    if order_id is not None:
        obj["metadata"] = {"order_id": order_id}
    if client_reference_id is not None:
        obj["client_reference_id"] = client_reference_id
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def settings() -> Settings:
    return Settings(env="development", stripe_secret_key="sk_test_123")


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def ledger() -> InMemoryEventLedger:
    return InMemoryEventLedger()


@pytest.fixture
def fake_checkout() -> FakeCheckout:
    return FakeCheckout()


@pytest.fixture
def client(settings, store, ledger, fake_checkout) -> TestClient:
    app = create_app(settings, store=store, ledger=ledger, checkout=fake_checkout)
    with TestClient(app) as test_client:
        yield test_client
