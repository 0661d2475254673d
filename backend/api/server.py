"""
Storefront Checkout Server
==========================
FastAPI application serving:
- POST /functions/v1/create-payment-session   (Session Initiator)
- POST /functions/v1/stripe-webhook           (Event Reconciler)
- GET/PATCH /api/orders...                    (order queries, fulfilment)
- GET /health

Run:
    uvicorn api.server:create_app --factory
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.cors import CHECKOUT_CORS_HEADERS, webhook_cors_headers
from config import Settings
from errors import CheckoutError, CheckoutValidationError, ConfigurationError
from payments.event_reconciler import EventReconciler
from payments.orders import OrderService
from payments.session_initiator import SessionInitiator
from payments.stripe_checkout import StripeCheckout, WebhookVerifier
from schemas.orders import CheckoutRequest, Order, StatusUpdate
from schemas.webhooks import ReconcileOutcome
from storage.order_store import IEventLedger, IOrderStore, InMemoryEventLedger
from storage.supabase_store import SupabaseClient, SupabaseEventLedger, SupabaseOrderStore

VERSION = "1.0.0"

CHECKOUT_PATH = "/functions/v1/create-payment-session"
WEBHOOK_PATH = "/functions/v1/stripe-webhook"


def configure_logging(settings: Settings) -> None:
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if settings.is_development
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )


# =============================================================================
# COMPONENT WIRING
# =============================================================================

@dataclass
class Components:
    """Handlers built once at startup. A None handler failed its config gate."""
    store: Optional[IOrderStore] = None
    ledger: Optional[IEventLedger] = None
    initiator: Optional[SessionInitiator] = None
    reconciler: Optional[EventReconciler] = None
    orders: Optional[OrderService] = None
    errors: Dict[str, str] = field(default_factory=dict)
    owns_store: bool = False

    def status(self) -> Dict[str, str]:
        return {
            "session_initiator": "ready" if self.initiator else self.errors.get("session_initiator", "unavailable"),
            "event_reconciler": "ready" if self.reconciler else self.errors.get("event_reconciler", "unavailable"),
            "signature_mode": self.reconciler.verifier.mode if self.reconciler else "unavailable",
        }


def build_components(
    settings: Settings,
    store: Optional[IOrderStore] = None,
    ledger: Optional[IEventLedger] = None,
    checkout: Optional[StripeCheckout] = None,
) -> Components:
    log = structlog.get_logger().bind(component="server")
    components = Components(store=store, ledger=ledger)

    if components.store is None:
        try:
            client = SupabaseClient(settings)
        except ConfigurationError as e:
            log.error("data_store_unconfigured", error=e.message)
            components.errors["session_initiator"] = e.message
            components.errors["event_reconciler"] = e.message
            return components
        components.store = SupabaseOrderStore(client)
        components.ledger = components.ledger or SupabaseEventLedger(client)
        components.owns_store = True

    if components.ledger is None:
        log.warning("event_ledger_in_memory")
        components.ledger = InMemoryEventLedger()

    components.orders = OrderService(components.store)

    try:
        components.initiator = SessionInitiator(
            settings, components.store, checkout or StripeCheckout(settings)
        )
    except ConfigurationError as e:
        log.error("session_initiator_disabled", error=e.message)
        components.errors["session_initiator"] = e.message

    verifier = WebhookVerifier(settings)
    if verifier.mode == "presence_only":
        log.warning("webhook_signature_unverified",
                    detail="STRIPE_WEBHOOK_SECRET not set, only header presence is checked")
    components.reconciler = EventReconciler(components.store, components.ledger, verifier)

    return components


def _error(message: str, status_code: int, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[IOrderStore] = None,
    ledger: Optional[IEventLedger] = None,
    checkout: Optional[StripeCheckout] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    logger = structlog.get_logger().bind(component="server")

    components = build_components(settings, store, ledger, checkout)
    webhook_headers = webhook_cors_headers(settings)
    started_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=settings.env, **components.status())
        yield
        logger.info("server_shutting_down")
        if components.owns_store and components.store:
            await components.store.close()

    app = FastAPI(
        title="Storefront Checkout",
        description="Order creation, Stripe checkout and payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.components = components

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        return _error(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error(f"Invalid request: {_describe(exc.errors())}", 422)

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        uptime = (datetime.now(timezone.utc) - started_at).total_seconds()
        return {
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": uptime,
            "components": components.status(),
        }

    # =========================================================================
    # SESSION INITIATOR
    # =========================================================================

    @app.options(CHECKOUT_PATH)
    async def checkout_preflight():
        return Response(headers=CHECKOUT_CORS_HEADERS)

    @app.post(CHECKOUT_PATH)
    async def create_payment_session(request: Request):
        if components.initiator is None:
            return _error(components.errors["session_initiator"], 500, CHECKOUT_CORS_HEADERS)

        try:
            checkout_request = _parse_checkout(await request.body())
            session = await components.initiator.create_session(checkout_request)
        except CheckoutError as e:
            return _error(e.message, e.status_code, CHECKOUT_CORS_HEADERS)
        except Exception as e:
            logger.exception("create_payment_session_failed", error=str(e))
            return _error(str(e), 500, CHECKOUT_CORS_HEADERS)

        return JSONResponse(session.model_dump(by_alias=True), headers=CHECKOUT_CORS_HEADERS)

    # =========================================================================
    # EVENT RECONCILER
    # =========================================================================

    @app.options(WEBHOOK_PATH)
    async def webhook_preflight():
        return Response(headers=webhook_headers)

    @app.post(WEBHOOK_PATH)
    async def stripe_webhook(request: Request):
        if components.reconciler is None:
            return _error(components.errors["event_reconciler"], 500, webhook_headers)

        signature = request.headers.get("stripe-signature")
        try:
            result = await components.reconciler.handle(await request.body(), signature)
        except CheckoutError as e:
            logger.warning("webhook_rejected", error=e.message, status=e.status_code)
            return _error(e.message, e.status_code, webhook_headers)
        except Exception as e:
            logger.exception("stripe_webhook_failed", error=str(e))
            return _error(str(e), 500, webhook_headers)

        if result.outcome == ReconcileOutcome.FAILED:
            return _error(result.reason or "Webhook processing failed", 500, webhook_headers)
        return JSONResponse({"received": True}, headers=webhook_headers)

    # =========================================================================
    # ORDERS
    # =========================================================================

    def _order_service() -> OrderService:
        if components.orders is None:
            raise ConfigurationError(components.errors.get("event_reconciler", "Data store unavailable"))
        return components.orders

    @app.get("/api/orders/{order_id}", response_model=Order)
    async def get_order(order_id: str):
        return await _order_service().get_order(order_id)

    @app.get("/api/orders", response_model=List[Order])
    async def list_orders(user_id: Optional[str] = Query(None, min_length=1)):
        return await _order_service().list_orders(user_id)

    @app.patch("/api/orders/{order_id}/status", response_model=Order)
    async def update_order_status(order_id: str, update: StatusUpdate):
        return await _order_service().update_status(order_id, update.status)

    return app


def _parse_checkout(body: bytes) -> CheckoutRequest:
    try:
        return CheckoutRequest.model_validate_json(body)
    except ValidationError as e:
        raise CheckoutValidationError(f"Invalid checkout payload: {_describe(e.errors())}") from e


def _describe(errors) -> str:
    """First validation error as 'loc: msg'"""
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg", "invalid"))


def main():
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
