# payments/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — PAYMENTS MODULE
# ============================================================================
# Session Initiator, Event Reconciler and order services
# ============================================================================

from payments.event_reconciler import EventReconciler, WebhookRouter
from payments.orders import FULFILMENT_TRANSITIONS, OrderService
from payments.session_initiator import SessionInitiator
from payments.stripe_checkout import (
    HostedSession,
    StripeCheckout,
    WebhookVerifier,
    build_line_items,
    build_success_url,
)

__all__ = [
    "EventReconciler",
    "WebhookRouter",
    "FULFILMENT_TRANSITIONS",
    "OrderService",
    "SessionInitiator",
    "HostedSession",
    "StripeCheckout",
    "WebhookVerifier",
    "build_line_items",
    "build_success_url",
]
