# model/orders.py
"""
Order orchestrator.

create_order() runs capacity validation and order persistence in a single
transaction, so the inventory row locks taken by the reservation check are
held until the pending order is durable. The payment provider is only
called after that transaction committed; no lock is ever held across a
provider round trip.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import AuthContext
from ..config import (
    ACCESS_TOKEN_MAX_AGE_SECONDS, CHECKOUT_RETURN_URL, WEBHOOK_URL,
)
from ..errors import (
    CartRejected, Conflict, NotFound, PaymentProviderError, PersistenceError,
    ProviderError, ValidationFailed,
)
from ..helpers import (
    ct_equal, hash_token, is_valid_email, new_id, new_token, now_ts, to_iso,
)
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..payments import PaymentAdapter
from . import audit
from .orm import DiscountCode, Event, Order, OrderItem, Payment
from .reservation import Reservation, check_cart, coalesce_cart
from .tickets import IssuedTicket, issue_for_locked_order, tickets_for_order

logger = structlog.get_logger(__name__)

PURCHASABLE_EVENT_STATUSES = ("published",)
ACTIVE_PAYMENT_STATUSES = ("open", "pending", "authorized")
DEAD_PAYMENT_STATUSES = ("failed", "canceled", "expired")


@dataclass
class CheckoutResult:
    order: Order
    items: List[OrderItem]
    access_token: str
    payment: Optional[Payment] = None
    tickets: List[IssuedTicket] = field(default_factory=list)

    def public(self) -> dict:
        out = order_view(self.order, self.items, self.tickets)
        out["access_token"] = self.access_token
        out["checkout_redirect_url"] = (
            self.payment.checkout_url if self.payment is not None else None
        )
        return out


def order_view(
    order: Order,
    items: List[OrderItem],
    tickets: Optional[list] = None,
    payment: Optional[Payment] = None,
) -> dict:
    out = {
        "order_id": order.id,
        "event_id": order.event_id,
        "status": order.status,
        "email": order.email,
        "purchaser_name": order.purchaser_name,
        "subtotal_amount": order.subtotal_amount,
        "discount_amount": order.discount_amount,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "items": [
            {
                "id": it.id,
                "ticket_type_id": it.ticket_type_id,
                "product_id": it.product_id,
                "variant_id": it.variant_id,
                "name": it.name,
                "quantity": it.quantity,
                "unit_price": it.unit_price,
                "line_total": it.line_total,
                "vat_amount": it.vat_amount,
            }
            for it in items
        ],
        "tickets": [
            t.public() if isinstance(t, IssuedTicket) else {
                "id": t.id,
                "ticket_type_id": t.ticket_type_id,
                "sequence_no": t.sequence_no,
                "status": t.status,
                "token_preview": t.scan_token_preview,
            }
            for t in (tickets or [])
        ],
    }
    if payment is not None:
        out["payment"] = {
            "status": payment.status,
            "checkout_redirect_url": (
                payment.checkout_url
                if payment.status in ACTIVE_PAYMENT_STATUSES else None
            ),
        }
    return out


def _build_items(order_id: str, reservation: Reservation) -> List[OrderItem]:
    out = []
    for line in reservation.items:
        vat = line.vat_percentage
        out.append(OrderItem(
            id=new_id(),
            order_id=order_id,
            ticket_type_id=line.ticket_type_id,
            product_id=line.product_id,
            variant_id=line.variant_id,
            name=line.name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.line_total,
            vat_percentage=vat,
            # prices include VAT
            vat_amount=(line.line_total * vat) // (100 + vat) if vat else 0,
        ))
    return out


async def _discount_for(
    session: AsyncSession, event_id: str, code: Optional[str],
    subtotal: int,
) -> tuple[int, Optional[str]]:
    if not code:
        return 0, None
    row = (await session.execute(
        select(DiscountCode).where(
            DiscountCode.event_id == event_id,
            DiscountCode.code == code.strip().upper(),
        )
    )).scalar_one_or_none()
    if row is None or not row.is_active:
        raise ValidationFailed(
            "discount code is not valid", code="INVALID_DISCOUNT_CODE",
        )
    if row.percent_off:
        off = subtotal * min(max(row.percent_off, 0), 100) // 100
    else:
        off = row.amount_off or 0
    return max(0, min(off, subtotal)), row.id


# ------------------------------------------------------------------------------
# checkout
# ------------------------------------------------------------------------------
async def create_order(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    *,
    event_id: str,
    items: list,
    email: str,
    purchaser_name: Optional[str] = None,
    auth: Optional[AuthContext] = None,
    discount_code: Optional[str] = None,
    return_url: str = CHECKOUT_RETURN_URL,
    webhook_url: str = WEBHOOK_URL,
) -> CheckoutResult:
    email = (email or "").strip()
    if not is_valid_email(email):
        raise ValidationFailed(
            "a valid email address is required", details={"field": "email"}
        )
    lines = coalesce_cart(items)

    access_token = new_token()
    ts = now_ts()
    persist_failed = False
    tickets: List[IssuedTicket] = []
    order_items: List[OrderItem] = []

    async with timeit("orders.reserve_and_persist"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                event = await s.get(Event, event_id)
                if event is None:
                    raise NotFound("event not found", code="EVENT_NOT_FOUND")
                if event.status not in PURCHASABLE_EVENT_STATUSES:
                    raise Conflict(
                        "event is not open for purchases",
                        code="EVENT_NOT_PURCHASABLE",
                        details={"status": event.status},
                    )

                reservation = await check_cart(s, event.id, lines)
                if not reservation.valid:
                    raise CartRejected(
                        "some items cannot be reserved",
                        code=reservation.error_code(),
                        details={
                            "retryable": reservation.retryable,
                            "per_item": [
                                i.public() for i in reservation.items
                            ],
                        },
                    )

                subtotal = reservation.total_price
                discount, discount_id = await _discount_for(
                    s, event.id, discount_code, subtotal
                )
                order = Order(
                    id=new_id(),
                    org_id=event.org_id,
                    event_id=event.id,
                    user_id=auth.user_id if auth else None,
                    email=email,
                    purchaser_name=(purchaser_name or "").strip() or None,
                    status="pending",
                    subtotal_amount=subtotal,
                    discount_amount=discount,
                    total_amount=subtotal - discount,
                    currency=event.currency,
                    discount_code_id=discount_id,
                    access_token_hash=hash_token(access_token),
                    access_token_issued_at=ts,
                    created_at=ts,
                    updated_at=ts,
                )
                s.add(order)
                await s.flush()

                try:
                    async with s.begin_nested():
                        order_items = _build_items(order.id, reservation)
                        s.add_all(order_items)
                except SQLAlchemyError as e:
                    logger.error("order_items_persist_failed",
                                 order_id=order.id, error=str(e))
                    order.status = "failed"
                    order_items = []
                    persist_failed = True

                if not persist_failed and order.total_amount == 0:
                    order.status = "paid"
                    order.paid_at = ts
                    await s.flush()
                    tickets = await issue_for_locked_order(s, order)
                    audit.enqueue_notification(
                        s,
                        org_id=order.org_id,
                        recipient=order.email,
                        template="order_confirmation",
                        payload={
                            "order_id": order.id,
                            "tickets": [t.public() for t in tickets],
                        },
                    )

    if persist_failed:
        raise PersistenceError(
            "order could not be saved", code="ORDER_PERSIST_FAILED",
            details={"order_id": order.id},
        )

    logger.info(
        "order_created", order_id=order.id, event_id=event_id,
        status=order.status, total_amount=order.total_amount,
    )
    await audit.record(
        db, action="order_created", entity_type="order", entity_id=order.id,
        org_id=order.org_id, actor_user_id=order.user_id,
        details={"total_amount": order.total_amount,
                 "items": len(order_items)},
    )

    result = CheckoutResult(
        order=order, items=order_items, access_token=access_token,
        tickets=tickets,
    )
    if order.status == "paid":
        return result

    result.payment = await _start_payment(
        db, adapter, order, return_url=return_url, webhook_url=webhook_url,
        fail_order=True,
    )
    return result


async def _start_payment(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    order: Order,
    *,
    return_url: str,
    webhook_url: str,
    fail_order: bool,
) -> Payment:
    try:
        async with timeit("provider.create_payment"):
            info = await adapter.create_payment(
                amount=order.total_amount,
                currency=order.currency,
                description=f"Order {order.id[:8]}",
                redirect_url=f"{return_url}?order_id={order.id}",
                webhook_url=webhook_url,
                metadata={"order_id": order.id},
            )
    except ProviderError as e:
        logger.warning("payment_create_failed", order_id=order.id,
                       retryable=e.retryable, error=str(e))
        if fail_order:
            await mark_failed(db, order.id)
            await audit.record(
                db, action="payment_create_failed", entity_type="order",
                entity_id=order.id, org_id=order.org_id,
                details={"error": str(e)},
            )
        raise PaymentProviderError(
            "payment provider could not start the payment",
            details={"order_id": order.id, "retryable": e.retryable},
        ) from e

    ts = now_ts()
    payment = Payment(
        id=new_id(),
        order_id=order.id,
        provider=adapter.name,
        provider_payment_id=info["id"],
        amount=order.total_amount,
        currency=order.currency,
        status=info["status"],
        checkout_url=info.get("checkout_url"),
        created_at=ts,
        updated_at=ts,
    )
    try:
        async with db.gated():
            async with db.session.begin():
                db.session.add(payment)
    except IntegrityError:
        # a webhook for this payment arrived first and recorded it
        async with db.gated():
            async with db.session.begin():
                payment = (await db.session.execute(
                    select(Payment)
                    .where(Payment.provider_payment_id == info["id"])
                )).scalar_one()
    logger.info("payment_created", order_id=order.id,
                provider_payment_id=payment.provider_payment_id)
    return payment


async def mark_failed(db: GatedAsyncSession, order_id: str) -> bool:
    """pending -> failed; releases the order's reservation."""
    async with db.gated():
        async with db.session.begin():
            result = await db.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == "pending")
                .values(status="failed", updated_at=now_ts())
                .execution_options(synchronize_session=False)
            )
    return bool(result.rowcount)


# ------------------------------------------------------------------------------
# guest access
# ------------------------------------------------------------------------------
async def _order_by_token(
    session: AsyncSession, token: str
) -> Optional[Order]:
    if not token:
        return None
    order = (await session.execute(
        select(Order).where(Order.access_token_hash == hash_token(token))
    )).scalar_one_or_none()
    if order is None or order.access_token_issued_at is None:
        return None
    if now_ts() - order.access_token_issued_at > ACCESS_TOKEN_MAX_AGE_SECONDS:
        return None
    return order


async def latest_payment(
    session: AsyncSession, order_id: str
) -> Optional[Payment]:
    return (await session.execute(
        select(Payment)
        .where(Payment.order_id == order_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(1)
    )).scalar_one_or_none()


async def load_items(session: AsyncSession, order_id: str) -> List[OrderItem]:
    return list((await session.execute(
        select(OrderItem)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.id)
    )).scalars().all())


async def lookup_order(db: GatedAsyncSession, token: str) -> dict:
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await _order_by_token(s, token)
            if order is None:
                raise NotFound("order not found", code="ORDER_NOT_FOUND")
            items = await load_items(s, order.id)
            tickets = await tickets_for_order(s, order.id)
            payment = await latest_payment(s, order.id)
    return order_view(order, items, tickets, payment)


async def resume_payment(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    *,
    order_id: str,
    token: str,
    return_url: str = CHECKOUT_RETURN_URL,
    webhook_url: str = WEBHOOK_URL,
) -> dict:
    """Hand a guest back a checkout URL for a still-pending order."""
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await _order_by_token(s, token)
            if order is None or not ct_equal(order.id, order_id):
                raise NotFound("order not found", code="ORDER_NOT_FOUND")
            if order.status != "pending" or order.total_amount == 0:
                raise Conflict(
                    "order is not awaiting payment",
                    code="ORDER_NOT_PAYABLE",
                    details={"status": order.status},
                )
            latest = await latest_payment(s, order.id)

    if latest is not None and latest.status not in DEAD_PAYMENT_STATUSES:
        try:
            info = await adapter.get_payment(latest.provider_payment_id)
        except ProviderError as e:
            raise PaymentProviderError(
                "payment provider unavailable",
                details={"retryable": e.retryable},
            ) from e
        if info is not None:
            if info["status"] in ACTIVE_PAYMENT_STATUSES and \
                    info.get("checkout_url"):
                return {"order_id": order.id,
                        "checkout_redirect_url": info["checkout_url"]}
            if info["status"] not in DEAD_PAYMENT_STATUSES:
                raise Conflict(
                    "payment is already being processed",
                    code="PAYMENT_IN_PROGRESS",
                    details={"status": info["status"]},
                )

    payment = await _start_payment(
        db, adapter, order, return_url=return_url, webhook_url=webhook_url,
        fail_order=False,
    )
    return {"order_id": order.id,
            "checkout_redirect_url": payment.checkout_url}


# ------------------------------------------------------------------------------
# sweep
# ------------------------------------------------------------------------------
async def expire_stale_orders(
    db: GatedAsyncSession, max_age_seconds: int,
    now: Optional[float] = None,
) -> int:
    """Cancel pending orders older than ``max_age_seconds``. A payment that
    still succeeds afterwards goes through the late-success path.
    """
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            result = await db.session.execute(
                update(Order)
                .where(Order.status == "pending",
                       Order.created_at < now - max_age_seconds)
                .values(status="cancelled", updated_at=now)
                .execution_options(synchronize_session=False)
            )
    n = result.rowcount or 0
    logger.info("stale_orders_expired", count=n,
                max_age_seconds=max_age_seconds)
    return n
