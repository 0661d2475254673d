# schemas/webhooks.py
# ============================================================================
# STOREFRONT CHECKOUT — STRIPE WEBHOOK SCHEMAS
# ============================================================================
# Inbound event envelope and the tagged result every reconciler handler
# returns. The HTTP layer maps results to status codes.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """Closed set of Stripe event types the reconciler knows about."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, event_type: Optional[str]) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


class WebhookData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    object_: Dict[str, Any] = Field(default_factory=dict, alias="object")


class WebhookEnvelope(BaseModel):
    """Stripe event as delivered to the webhook endpoint"""
    id: Optional[str] = None
    type: str
    data: WebhookData = Field(default_factory=WebhookData)

    @property
    def kind(self) -> EventKind:
        return EventKind.parse(self.type)

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.object_

    def correlation_candidates(self) -> list:
        """Order id candidates in resolution order: metadata first, then client reference."""
        metadata = self.object.get("metadata") or {}
        candidates = []
        for candidate in (metadata.get("order_id"), self.object.get("client_reference_id")):
            if candidate and candidate not in candidates:
                candidates.append(candidate)
        return candidates


class ReconcileOutcome(str, Enum):
    HANDLED = "handled"
    IGNORED = "ignored"
    FAILED = "failed"


class ReconcileResult(BaseModel):
    """Result of applying one event. Exactly one per delivery."""
    outcome: ReconcileOutcome
    event_type: str
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def handled(cls, envelope: WebhookEnvelope, order_id: str) -> "ReconcileResult":
        return cls(
            outcome=ReconcileOutcome.HANDLED,
            event_type=envelope.type,
            event_id=envelope.id,
            order_id=order_id,
        )

    @classmethod
    def ignored(
        cls, envelope: WebhookEnvelope, reason: str, order_id: Optional[str] = None
    ) -> "ReconcileResult":
        return cls(
            outcome=ReconcileOutcome.IGNORED,
            event_type=envelope.type,
            event_id=envelope.id,
            order_id=order_id,
            reason=reason,
        )

    @classmethod
    def failed(
        cls, envelope: WebhookEnvelope, reason: str, order_id: Optional[str] = None
    ) -> "ReconcileResult":
        return cls(
            outcome=ReconcileOutcome.FAILED,
            event_type=envelope.type,
            event_id=envelope.id,
            order_id=order_id,
            reason=reason,
        )


class ProcessedEvent(BaseModel):
    """Row of the processed-event ledger"""
    event_id: str
    event_type: str
    status: str = "processing"  # "processing", "completed"
    outcome: Optional[ReconcileOutcome] = None
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
