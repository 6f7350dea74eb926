from __future__ import annotations
import uuid
from typing import AsyncIterator, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, PlainTextResponse

from .auth import AuthContext, decode_bearer, require_role
from .config import (
    CHECKOUT_RETURN_URL, DATABASE_URL, LOG_JSON, LOG_LEVEL, MOCK_WEBHOOK_URL,
    REFUND_ROLES, SCAN_ROLES, WEBHOOK_URL,
)
from .errors import BoxOfficeError, NotFound, ValidationFailed
from .infra import timings
from .infra.logs import configure_logging
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import timeit
from .model import inventory, orders, reconcile, refunds, tickets
from .model.orm import Base
from .model.reservation import check_cart, coalesce_cart
from .payments import BACKEND as PAYMENT_BACKEND, MockPay, PaymentAdapter
from .payments import new_adapter
from .schemas import (
    CapacityCheckIn, CheckoutIn, RefundIn, ResumePaymentIn, ScanIn,
)

configure_logging(LOG_LEVEL, LOG_JSON)
logger = structlog.get_logger(__name__)

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncIterator[GatedAsyncSession]:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)

adapter: PaymentAdapter = new_adapter()


def get_adapter() -> PaymentAdapter:
    return adapter


def get_auth(
    authorization: Optional[str] = Header(default=None),
) -> Optional[AuthContext]:
    return decode_bearer(authorization)


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)


# ---
# request context / errors
# ---
@app.middleware("http")
async def _request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path,
    )
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(BoxOfficeError)
async def _boxoffice_error(request: Request, exc: BoxOfficeError):
    if exc.status_code >= 500:
        logger.error("request_failed", code=exc.code, message=exc.message)
    else:
        logger.info("request_rejected", code=exc.code,
                    status=exc.status_code)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(
    request: Request, exc: RequestValidationError
):
    err = ValidationFailed(
        "request is invalid", details=jsonable_encoder(exc.errors())
    )
    return ORJSONResponse(err.to_dict(), status_code=err.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("boxoffice_starting", payment_provider=PAYMENT_BACKEND,
                database=engine.dialect.name)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _adapter_stop():
    await adapter.aclose()


@app.get("/healthz")
async def healthz():
    return {"ok": True}


# ----------------------------
# Inventory / capacity
# ----------------------------
@app.get("/api/events/{event_id}/inventory")
async def get_inventory(event_id: str, db=Depends(get_db)):
    return await inventory.inventory_snapshot(db, event_id)


@app.post("/api/capacity/check")
async def capacity_check(body: CapacityCheckIn, db=Depends(get_db)):
    lines = coalesce_cart([i.model_dump() for i in body.items])
    async with timeit("capacity.check"):
        async with db.gated():
            async with db.session.begin():
                reservation = await check_cart(
                    db.session, body.event_id, lines
                )
    return reservation.public()


# ----------------------------
# Checkout
# ----------------------------
@app.post("/orders", status_code=201)
@app.post("/api/orders", status_code=201)
async def create_checkout(
    body: CheckoutIn,
    db=Depends(get_db),
    pay: PaymentAdapter = Depends(get_adapter),
    auth: Optional[AuthContext] = Depends(get_auth),
):
    async with timeit("api.checkout"):
        result = await orders.create_order(
            db, pay,
            event_id=body.event_id,
            items=[i.model_dump() for i in body.items],
            email=body.email,
            purchaser_name=body.purchaser_name,
            discount_code=body.discount_code,
            auth=auth,
            return_url=CHECKOUT_RETURN_URL,
            webhook_url=WEBHOOK_URL,
        )
    return result.public()


@app.get("/orders/lookup")
@app.get("/api/orders/lookup")
async def lookup_order(token: str = "", db=Depends(get_db)):
    return await orders.lookup_order(db, token)


@app.post("/api/orders/{order_id}/payment")
async def resume_payment(
    order_id: str,
    body: ResumePaymentIn,
    db=Depends(get_db),
    pay: PaymentAdapter = Depends(get_adapter),
):
    return await orders.resume_payment(
        db, pay, order_id=order_id, token=body.token,
        return_url=CHECKOUT_RETURN_URL, webhook_url=WEBHOOK_URL,
    )


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db=Depends(get_db),
    pay: PaymentAdapter = Depends(get_adapter),
):
    form = await request.form()
    object_id = pay.parse_webhook(form)
    if object_id is None:
        return PlainTextResponse("missing id", status_code=400)
    async with timeit("api.webhook"):
        result = await reconcile.handle_webhook(db, pay, object_id)
    # never tell the caller more than "done" or "try again"
    body = "OK" if result.status_code == 200 else "retry"
    return PlainTextResponse(body, status_code=result.status_code)


# ----------------------------
# Staff: refunds, tickets
# ----------------------------
@app.post("/refunds", status_code=201)
@app.post("/api/refunds", status_code=201)
async def create_refund(
    body: RefundIn,
    db=Depends(get_db),
    pay: PaymentAdapter = Depends(get_adapter),
    auth: Optional[AuthContext] = Depends(get_auth),
):
    staff = require_role(auth, REFUND_ROLES)
    result = await refunds.create_refund(
        db, pay,
        order_id=body.order_id,
        idempotency_key=body.idempotency_key,
        amount=body.amount,
        items=[i.model_dump() for i in body.items] if body.items else None,
        reason=body.reason,
        actor_user_id=staff.user_id,
        org_id=staff.org_id,
    )
    return result.public()


@app.get("/api/orders/{order_id}/refunds")
async def refund_summary(
    order_id: str,
    db=Depends(get_db),
    auth: Optional[AuthContext] = Depends(get_auth),
):
    staff = require_role(auth, REFUND_ROLES)
    return await refunds.refund_summary(db, order_id, org_id=staff.org_id)


@app.post("/api/orders/{order_id}/tickets")
async def issue_order_tickets(
    order_id: str,
    db=Depends(get_db),
    auth: Optional[AuthContext] = Depends(get_auth),
):
    staff = require_role(auth, REFUND_ROLES)
    issued = await tickets.issue_tickets(db, order_id, org_id=staff.org_id)
    return {"order_id": order_id, "tickets": [t.public() for t in issued]}


@app.post("/api/tickets/scan")
async def scan_ticket(
    body: ScanIn,
    db=Depends(get_db),
    auth: Optional[AuthContext] = Depends(get_auth),
):
    staff = require_role(auth, SCAN_ROLES)
    ticket = await tickets.check_in(db, body.token, org_id=staff.org_id)
    return ticket.public()


@app.get("/api/admin/timings")
async def api_admin_timings(
    auth: Optional[AuthContext] = Depends(get_auth),
):
    require_role(auth, REFUND_ROLES)
    return timings.snapshot()


# ----------------------------
# MockPay (development provider)
# ----------------------------
def _mockpay(pay: PaymentAdapter) -> MockPay:
    if not isinstance(pay, MockPay):
        raise NotFound("mock provider is not enabled")
    return pay


async def _deliver_mock_webhook(object_id: str) -> bool:
    http: Optional[httpx.AsyncClient] = getattr(app.state, "http", None)
    if http is None:
        return False
    try:
        await http.post(MOCK_WEBHOOK_URL, data={"id": object_id})
    except httpx.HTTPError as e:
        # the caller can emit again
        logger.warning("mock_webhook_delivery_failed", object_id=object_id,
                       error=str(e))
        return False
    return True


@app.post("/mockpay/{payment_id}/emit")
async def mockpay_emit(
    payment_id: str, request: Request,
    pay: PaymentAdapter = Depends(get_adapter),
):
    mock = _mockpay(pay)
    form = await request.form()
    status = form.get("t") or "paid"
    if status not in {"paid", "failed", "canceled", "expired"}:
        raise ValidationFailed("invalid status", details={"t": status})
    if payment_id not in mock.payments:
        raise NotFound("payment not found")
    mock.set_payment_status(payment_id, status)
    delivered = await _deliver_mock_webhook(payment_id)
    return {"payment_id": payment_id, "status": status,
            "delivered": delivered}


@app.post("/mockpay/refunds/{refund_id}/emit")
async def mockpay_refund_emit(
    refund_id: str, request: Request,
    pay: PaymentAdapter = Depends(get_adapter),
):
    mock = _mockpay(pay)
    form = await request.form()
    status = form.get("t") or "refunded"
    if status not in {"refunded", "failed", "canceled", "processing"}:
        raise ValidationFailed("invalid status", details={"t": status})
    if refund_id not in mock.refunds:
        raise NotFound("refund not found")
    mock.set_refund_status(refund_id, status)
    delivered = await _deliver_mock_webhook(refund_id)
    return {"refund_id": refund_id, "status": status, "delivered": delivered}
