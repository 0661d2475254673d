"""
Stripe gateway: hosted Checkout Session creation and webhook signature checks.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import stripe
import structlog

from config import Settings
from errors import PaymentProviderError, SignatureInvalidError, SignatureMissingError
from schemas.orders import OrderItem

logger = structlog.get_logger(component="stripe_checkout")

# Stripe substitutes its own session id for this placeholder on redirect
CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass
class HostedSession:
    id: str
    url: str


class StripeCheckout:
    """Creates one-time payment Checkout Sessions with the configured secret key."""

    def __init__(self, settings: Settings):
        settings.require("stripe_secret_key")
        self._api_key = settings.stripe_secret_key
        # The core never retries; Stripe redelivery is the only retry path
        stripe.max_network_retries = 0

    async def create_session(
        self,
        *,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        order_id: str,
    ) -> HostedSession:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._api_key,
                mode="payment",
                line_items=line_items,
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=order_id,
                metadata={"order_id": order_id},
                idempotency_key=f"checkout_{order_id}",
            )
        except stripe.StripeError as e:
            logger.error("stripe_session_failed",
                         order_id=order_id,
                         error=str(e),
                         error_type=type(e).__name__)
            raise PaymentProviderError("Failed to create Stripe session") from e

        return HostedSession(id=session.id, url=session.url)


class WebhookVerifier:
    """
    Checks the stripe-signature header.

    With STRIPE_WEBHOOK_SECRET configured the header is verified against the
    raw body. Without it only the header's presence is enforced.
    """

    def __init__(self, settings: Settings):
        self._secret = settings.stripe_webhook_secret

    @property
    def mode(self) -> str:
        return "verified" if self._secret else "presence_only"

    def verify(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise SignatureMissingError("No signature")
        if not self._secret:
            return
        try:
            stripe.Webhook.construct_event(payload, signature, self._secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureInvalidError("Invalid signature") from e
        except ValueError as e:
            # construct_event also parses the body
            raise SignatureInvalidError("Invalid payload") from e


def build_success_url(success_url: str, order_id: str) -> str:
    separator = "&" if "?" in success_url else "?"
    return f"{success_url}{separator}session_id={CHECKOUT_SESSION_PLACEHOLDER}&order_id={order_id}"


def build_line_items(items: List[OrderItem], currency: str) -> List[Dict[str, Any]]:
    """Stripe line items from persisted order items"""
    return [
        {
            "price_data": {
                "currency": currency,
                "product_data": {"name": item.display_name},
                "unit_amount": item.unit_price,
            },
            "quantity": item.quantity,
        }
        for item in items
    ]


def line_items_total(line_items: List[Dict[str, Any]]) -> int:
    return sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items)
