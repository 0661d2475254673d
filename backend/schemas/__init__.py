# schemas/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — SCHEMAS MODULE
# ============================================================================

from schemas.orders import (
    Address,
    CheckoutRequest,
    CheckoutSession,
    Order,
    OrderData,
    OrderItem,
    OrderItemInput,
    OrderStatus,
    PaymentStatus,
    StatusUpdate,
)

from schemas.webhooks import (
    EventKind,
    ProcessedEvent,
    ReconcileOutcome,
    ReconcileResult,
    WebhookEnvelope,
)

__all__ = [
    # Orders
    "Address",
    "CheckoutRequest",
    "CheckoutSession",
    "Order",
    "OrderData",
    "OrderItem",
    "OrderItemInput",
    "OrderStatus",
    "PaymentStatus",
    "StatusUpdate",
    # Webhooks
    "EventKind",
    "ProcessedEvent",
    "ReconcileOutcome",
    "ReconcileResult",
    "WebhookEnvelope",
]
