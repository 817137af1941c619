"""
Storefront: FastAPI entry point

Checkout, payment and order endpoints. Identity comes from the upstream
auth layer as X-User-Id / X-User-Role headers.

  ┌──────────┐  quote / checkout  ┌────────────┐   order_events   ┌──────────────┐
  │  Client  │ ─────────────────▶ │ Storefront │ ──── Redis ────▶ │  subscriber  │
  └──────────┘                    │    API     │   Pub/Sub        │ (email)      │
  ┌──────────┐  webhooks          │            │                  └──────────────┘
  │ Razorpay │ ─────────────────▶ │            │
  └──────────┘                    └─────┬──────┘
                                        │
                               ┌────────▼────────┐
                               │ orders, coupons │
                               │ catalog, events │
                               └─────────────────┘
"""

import asyncio
import logging
import traceback
from collections.abc import Callable
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from . import commands, config, event_store, gateway, messages
from .database import init_schema, make_engine, make_session_factory
from .errors import NotAuthenticated, OrderAccessDenied, StorefrontError
from .gateway import RazorpayClient
from .models import Customer, Order, PaymentMethod, Settings
from .notifications import EmailNotifier, run_subscriber
from .reconciler import PaymentReconciler
from .schemas import (
    CancelOrderRequest,
    CheckoutRequest,
    PaymentFailureRequest,
    QuoteRequest,
    UpdateStatusRequest,
    VerifyPaymentRequest,
)
from .settings_store import get_settings

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def _error_body(kind: str, message: str, **extra) -> dict:
    error = {"kind": kind, "message": message}
    error.update(extra)
    return {"success": False, "error": error}


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise NotAuthenticated()
    return user_id


def _require_admin(user_id: str | None, role: str | None) -> str:
    user_id = _require_user(user_id)
    if role != ADMIN_ROLE:
        raise OrderAccessDenied("Admin access required")
    return user_id


def _check_owner(order: Order, user_id: str, role: str | None) -> None:
    if order.user_id != user_id and role != ADMIN_ROLE:
        raise OrderAccessDenied()


def _order_body(order: Order) -> dict:
    return order.model_dump(mode="json")


def _cart(req: QuoteRequest) -> list[tuple[str, int]]:
    return [(item.product_id, item.quantity) for item in req.items]


def _customer(user_id: str, req: CheckoutRequest) -> Customer:
    return Customer(id=user_id, **req.customer.model_dump())


def create_app(
    session_factory: sessionmaker | None = None,
    redis: aioredis.Redis | None = None,
    gateway_factory: Callable[[Settings], RazorpayClient] = gateway.client_for,
    notifier: EmailNotifier | None = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators passed in are used as-is; whatever is missing (database,
    Redis) is created by the lifespan from the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        engine = None
        if state.session_factory is None:
            engine = make_engine(config.DATABASE_URL)
            await init_schema(engine)
            state.session_factory = make_session_factory(engine)
        owns_redis = state.redis is None
        if owns_redis:
            state.redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)

        shutdown_event = asyncio.Event()
        subscriber_task = None
        if state.notifier.enabled:
            subscriber_task = asyncio.create_task(
                run_subscriber(config.REDIS_URL, state.session_factory, state.notifier, shutdown_event)
            )
        yield
        shutdown_event.set()
        if subscriber_task is not None:
            subscriber_task.cancel()
            try:
                await subscriber_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Order event subscriber stopped with an error")
        if owns_redis:
            await state.redis.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Storefront", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.gateway_factory = gateway_factory
    app.state.notifier = notifier or EmailNotifier()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error rendering ──────────────────────────

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.kind, exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=_error_body("validation_error", "Invalid request", details=details),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        extra = {}
        if config.is_development():
            extra["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(
            status_code=500,
            content=_error_body("internal_error", "Internal server error", **extra),
        )

    def reconciler(request: Request) -> PaymentReconciler:
        state = request.app.state
        return PaymentReconciler(state.redis, state.gateway_factory)

    # ── Checkout ─────────────────────────────────

    @app.post("/api/checkout/quote")
    async def quote_cart(
        req: QuoteRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ):
        """Price a cart without storing anything."""
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            settings = await get_settings(session)
            quote = await commands.prepare_quote(session, settings, user_id, _cart(req), req.coupon_code)
        return {"success": True, "quote": quote.model_dump(mode="json")}

    # ── Gateway payments ─────────────────────────

    @app.post("/api/payments/razorpay/orders")
    async def create_gateway_order(
        req: CheckoutRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            settings = await get_settings(session)
            order, intent = await reconciler(request).start_gateway_checkout(
                session,
                settings,
                _customer(user_id, req),
                _cart(req),
                req.shipping_address,
                req.coupon_code,
            )
        return {
            "success": True,
            "order": _order_body(order),
            "razorpay_order_id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "key_id": settings.payment_methods.razorpay.key_id,
        }

    @app.post("/api/payments/razorpay/verify")
    async def verify_gateway_payment(
        req: VerifyPaymentRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            settings = await get_settings(session)
            order = await reconciler(request).verify_payment(
                session,
                settings,
                req.order_id,
                user_id,
                req.razorpay_order_id,
                req.razorpay_payment_id,
                req.razorpay_signature,
            )
        return {"success": True, "message": "Payment verified successfully", "order": _order_body(order)}

    @app.post("/api/payments/razorpay/failure")
    async def report_gateway_failure(
        req: PaymentFailureRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            order = await reconciler(request).record_failure(session, req.order_id, user_id, req.error)
        return {"success": True, "order": _order_body(order)}

    @app.post("/api/payments/razorpay/webhook")
    async def gateway_webhook(
        request: Request,
        x_razorpay_signature: str | None = Header(default=None),
    ):
        """Gateway callback; acknowledged unless the signature is wrong."""
        raw_body = await request.body()
        async with request.app.state.session_factory() as session:
            settings = await get_settings(session)
            result = await reconciler(request).handle_webhook(
                session, settings, raw_body, x_razorpay_signature
            )
        return {"success": True, **result}

    @app.get("/api/payments/{order_id}/status")
    async def payment_status(
        order_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_user_role: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            order = await commands.load_order(session, order_id)
        _check_owner(order, user_id, x_user_role)
        return {
            "success": True,
            "order_number": order.order_number,
            "payment_method": order.payment_method.value,
            "payment_status": order.payment_status.value,
            "order_status": order.order_status.value,
            "total": str(order.total),
        }

    # ── Manual checkout ──────────────────────────

    @app.post("/api/orders/whatsapp")
    async def create_whatsapp_order(
        req: CheckoutRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            settings = await get_settings(session)
            order = await reconciler(request).start_manual_checkout(
                session,
                settings,
                PaymentMethod.WHATSAPP,
                _customer(user_id, req),
                _cart(req),
                req.shipping_address,
                req.coupon_code,
                req.notes,
            )
        summary = messages.order_summary(order, settings.store_name)
        return {
            "success": True,
            "order": _order_body(order),
            "whatsapp_message": summary,
            "whatsapp_url": messages.whatsapp_url(settings.payment_methods.whatsapp.number, summary),
        }

    @app.post("/api/orders/cod")
    async def create_cod_order(
        req: CheckoutRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            settings = await get_settings(session)
            order = await reconciler(request).start_manual_checkout(
                session,
                settings,
                PaymentMethod.COD,
                _customer(user_id, req),
                _cart(req),
                req.shipping_address,
                req.coupon_code,
                req.notes,
            )
        return {"success": True, "message": "Order placed successfully", "order": _order_body(order)}

    # ── Orders ───────────────────────────────────

    @app.get("/api/orders/{order_id}")
    async def get_order(
        order_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_user_role: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        async with request.app.state.session_factory() as session:
            order = await commands.load_order(session, order_id)
        _check_owner(order, user_id, x_user_role)
        return {"success": True, "order": _order_body(order)}

    @app.put("/api/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str,
        request: Request,
        req: CancelOrderRequest | None = None,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        reason = req.reason if req else None
        async with request.app.state.session_factory() as session:
            order = await commands.user_cancel(
                session, request.app.state.redis, order_id, user_id, reason
            )
        return {"success": True, "message": "Order cancelled successfully", "order": _order_body(order)}

    @app.put("/api/orders/{order_id}/status")
    async def update_order_status(
        order_id: str,
        req: UpdateStatusRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_user_role: str | None = Header(default=None),
    ):
        """Admin status change (fulfilment, cancel, return)."""
        _require_admin(x_user_id, x_user_role)
        async with request.app.state.session_factory() as session:
            order = await commands.admin_transition(
                session,
                request.app.state.redis,
                order_id,
                req.status,
                tracking_number=req.tracking_number,
                admin_notes=req.admin_notes,
                note=req.note,
            )
        return {"success": True, "order": _order_body(order)}

    # ── Event log ────────────────────────────────

    @app.get("/events/{order_id}")
    async def get_order_events(
        order_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_user_role: str | None = Header(default=None),
    ):
        _require_admin(x_user_id, x_user_role)
        async with request.app.state.session_factory() as session:
            events = await event_store.history(session, order_id)
        return [event.model_dump(mode="json") for event in events]

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "storefront"}

    return app


app = create_app()
