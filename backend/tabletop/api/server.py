# api/server.py
# ============================================================================
# TABLETOP SETTLEMENT: FASTAPI SERVER
# ============================================================================
# Gateway webhooks, browser redirects, status polling, cancellation/refund
# and coin balance endpoints over the settlement pipeline.
# ============================================================================

import asyncio
import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import parse_qsl

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tabletop.bootstrap import Container, create_container
from tabletop.config import job_config, settings
from tabletop.errors import (
    ActiveCartExists,
    CancellationNotAllowed,
    ConcurrentModification,
    EntryNotReversible,
    GatewayError,
    GatewayTimeout,
    InsufficientBalance,
    MalformedEvent,
    OrderNotFound,
    RefundNotAllowed,
    SettlementError,
    SignatureInvalid,
    UnsupportedProvider,
    UserNotFound,
)
from tabletop.logging_config import configure_logging
from tabletop.schemas import LedgerEntryType, SettlementResult
from tabletop.tasks import coin_expiry_loop, get_invoice_queue_stats, invoice_retry_loop

logger = structlog.get_logger().bind(component="api")

VERSION = "2.0.0"

# Most specific first; the first isinstance match wins
ERROR_STATUS: list[tuple[type[SettlementError], int]] = [
    (SignatureInvalid, 400),
    (MalformedEvent, 400),
    (UnsupportedProvider, 400),
    (OrderNotFound, 404),
    (UserNotFound, 404),
    (CancellationNotAllowed, 409),
    (RefundNotAllowed, 409),
    (InsufficientBalance, 409),
    (EntryNotReversible, 409),
    (ConcurrentModification, 409),
    (ActiveCartExists, 409),
    (GatewayTimeout, 503),
    (GatewayError, 502),
]


def status_for(error: SettlementError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CancelRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: str = Field(default="Cancelled by user", max_length=500)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = Field(default="Refund requested", max_length=500)
    actor: Optional[str] = None


class AdjustCoinsRequest(BaseModel):
    amount: int
    reason: str = Field(..., min_length=1, max_length=500)
    admin_id: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str
    event_bus: bool
    database: Optional[bool] = None
    providers: list[str]
    invoice_queue: dict[str, Any]


def settlement_body(result: SettlementResult) -> dict:
    order = result.order
    return {
        "success": result.success,
        "status": result.status.value,
        "order_id": order.order_id if order else None,
        "payment_status": order.payment.payment_status.value if order else None,
        "order_status": order.status.value if order else None,
        "reason": result.reason,
    }


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the API.

    With an injected container (tests) the app neither builds nor closes it
    and starts no background loops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = datetime.now(timezone.utc)
        if container is not None:
            yield
            return

        configure_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)
        logger.info("server_starting", version=VERSION, env=settings.ENV)

        built = await create_container()
        repos = built.repositories
        built.background_tasks.extend([
            asyncio.create_task(coin_expiry_loop(built.ledger, built.notifications)),
            asyncio.create_task(invoice_retry_loop(
                repos.invoice_jobs, repos.orders, built.invoices, built.state_machine
            )),
        ])
        app.state.container = built

        yield

        logger.info("server_stopping")
        await built.close()

    app = FastAPI(
        title="Tabletop Settlement",
        description="Payment settlement and coin ledger for restaurant ordering",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.started_at = datetime.now(timezone.utc)
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        status = status_for(exc)
        headers = {"Retry-After": str(settings.RETRY_AFTER_SECONDS)} if exc.retryable else None
        log = logger.warning if status < 500 else logger.error
        log("request_failed", path=request.url.path, status_code=status,
            error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": type(exc).__name__, "detail": str(exc)},
            headers=headers,
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"success": False, "error": "ValueError", "detail": str(exc)})

    register_routes(app)
    return app


def _container(request: Request) -> Container:
    return request.app.state.container


async def _callback_params(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params

    body = await request.body()
    if not body:
        return params
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise MalformedEvent("callback body is not valid JSON")
        if not isinstance(data, dict):
            raise MalformedEvent("callback body must be an object")
        params.update(data)
    else:
        params.update(parse_qsl(body.decode(errors="replace"), keep_blank_values=True))
    return params


# ============================================================================
# ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI):

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        c = _container(request)
        database = c.repositories.database
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        bus_ok = await c.bus.health_check()
        db_ok = await database.health_check() if database is not None else None
        return HealthResponse(
            status="healthy" if bus_ok and db_ok is not False else "degraded",
            version=VERSION,
            uptime_seconds=uptime,
            storage_backend="postgres" if database is not None else "memory",
            event_bus=bus_ok,
            database=db_ok,
            providers=c.registry.providers,
            invoice_queue=await get_invoice_queue_stats(c.repositories.invoice_jobs, job_config),
        )

    # ---- Gateway webhooks --------------------------------------------------

    async def handle_webhook(provider: str, request: Request, hotel_id: Optional[str]) -> dict:
        """
        Gateway server-to-server notification.

        Anything past signature verification answers 200 so the gateway
        stops retrying; only bad signatures, unreadable payloads and gateway
        timeouts get a non-success status.
        """
        c = _container(request)
        body = await request.body()
        event = c.normalizer.normalize_webhook(provider, body, dict(request.headers), hotel_id=hotel_id)

        try:
            result = await c.orchestrator.settle(event)
        except OrderNotFound as e:
            logger.warning("webhook_order_not_found", provider=provider, reference=e.reference)
            return {"success": False, "status": "order_not_found", "reason": str(e)}

        return settlement_body(result)

    @app.post("/api/v1/webhooks/{provider}")
    async def gateway_webhook(provider: str, request: Request):
        return await handle_webhook(provider, request, None)

    @app.post("/api/v1/webhooks/{provider}/{hotel_id}")
    async def hotel_gateway_webhook(provider: str, hotel_id: str, request: Request):
        return await handle_webhook(provider, request, hotel_id)

    # ---- Browser redirects -------------------------------------------------

    async def handle_callback(provider: str, request: Request, hotel_id: Optional[str]) -> dict:
        c = _container(request)
        params = await _callback_params(request)
        event = c.normalizer.normalize_callback(provider, params, method=request.method, hotel_id=hotel_id)
        result = await c.orchestrator.settle(event)
        return settlement_body(result)

    @app.api_route("/api/v1/payments/callback/{provider}", methods=["GET", "POST"])
    async def payment_callback(provider: str, request: Request):
        return await handle_callback(provider, request, None)

    @app.api_route("/api/v1/payments/callback/{provider}/{hotel_id}", methods=["GET", "POST"])
    async def hotel_payment_callback(provider: str, hotel_id: str, request: Request):
        return await handle_callback(provider, request, hotel_id)

    # ---- Status polling ----------------------------------------------------

    @app.get("/api/v1/payments/{order_id}/status")
    async def payment_status(order_id: str, request: Request):
        result = await _container(request).poller.reconcile(order_id)
        body = result.model_dump(mode="json", exclude={"settlement"})
        body["settlement"] = settlement_body(result.settlement) if result.settlement else None
        return body

    # ---- Cancellation & refund ----------------------------------------------

    @app.post("/api/v1/orders/{order_id}/cancel")
    async def cancel_order(order_id: str, payload: CancelRequest, request: Request):
        result = await _container(request).orchestrator.cancel(order_id, payload.actor, payload.reason)
        return settlement_body(result)

    @app.post("/api/v1/orders/{order_id}/refund")
    async def refund_order(order_id: str, payload: RefundRequest, request: Request):
        result = await _container(request).orchestrator.refund(
            order_id, amount=payload.amount, reason=payload.reason, actor=payload.actor
        )
        return settlement_body(result)

    # ---- Coins --------------------------------------------------------------

    @app.get("/api/v1/users/{user_id}/coins")
    async def coin_summary(user_id: str, request: Request):
        summary = await _container(request).ledger.summary(user_id)
        return summary.model_dump()

    @app.get("/api/v1/users/{user_id}/coins/history")
    async def coin_history(
        user_id: str,
        request: Request,
        type: Optional[LedgerEntryType] = None,
        limit: int = 20,
        offset: int = 0,
    ):
        limit = max(1, min(limit, 100))
        entries = await _container(request).ledger.history(user_id, type, limit=limit, offset=max(offset, 0))
        return {
            "user_id": user_id,
            "entries": [e.model_dump(mode="json") for e in entries],
            "limit": limit,
            "offset": offset,
        }

    @app.post("/api/v1/admin/users/{user_id}/coins/adjust")
    async def adjust_coins(user_id: str, payload: AdjustCoinsRequest, request: Request):
        entry = await _container(request).ledger.adjust(user_id, payload.amount, payload.reason, payload.admin_id)
        return {"success": True, "entry": entry.model_dump(mode="json")}


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

def main():
    uvicorn.run(
        "tabletop.api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.ENV == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
