# model/refunds.py
"""
Refund processor.

A refund row is committed as ``pending`` before the provider is asked to
move money, so the refundable ceiling already accounts for it while the
provider call is in flight. Provider status changes (from the create call
or from webhooks) all go through apply_refund_status().
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    Conflict, NotFound, PaymentProviderError, ProviderRejected,
    ProviderUnavailable, ValidationFailed,
)
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..payments import PaymentAdapter
from . import audit
from .orm import Order, OrderItem, Payment, Refund, RefundItem, TicketInstance
from .tickets import lock_order, void_for_order

logger = structlog.get_logger(__name__)

REFUNDABLE_ORDER_STATUSES = ("paid", "overbooked")
# refunds that hold part of the refundable amount
LIVE_REFUND_STATUSES = ("pending", "queued", "processing", "refunded")

# provider status -> local status
REFUND_STATUS_MAP = {
    "queued": "queued",
    "pending": "processing",
    "processing": "processing",
    "refunded": "refunded",
    "failed": "failed",
    "canceled": "canceled",
}


@dataclass
class RefundResult:
    refund: Refund
    idempotent: bool = False

    def public(self) -> dict:
        out = refund_view(self.refund)
        out["idempotent"] = self.idempotent
        return out


def refund_view(r: Refund) -> dict:
    return {
        "refund_id": r.id,
        "order_id": r.order_id,
        "amount": r.amount,
        "currency": r.currency,
        "status": r.status,
        "reason": r.reason,
        "is_full_refund": r.is_full_refund,
        "tickets_voided": r.tickets_voided,
        "provider_refund_id": r.provider_refund_id,
        "created_at": to_iso(r.created_at),
        "refunded_at": to_iso(r.refunded_at),
    }


async def _refund_by_key(session: AsyncSession, key: str) -> Optional[Refund]:
    return (await session.execute(
        select(Refund).where(Refund.idempotency_key == key)
    )).scalar_one_or_none()


async def lock_refund(session: AsyncSession, refund_id: str) -> Refund:
    return (await session.execute(
        select(Refund)
        .where(Refund.id == refund_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one()


async def refunded_total(session: AsyncSession, order_id: str) -> int:
    return int((await session.execute(
        select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.order_id == order_id,
            Refund.status.in_(LIVE_REFUND_STATUSES),
        )
    )).scalar_one())


async def _refunded_qty_by_item(
    session: AsyncSession, order_id: str
) -> Dict[str, int]:
    rows = (await session.execute(
        select(RefundItem.order_item_id,
               func.coalesce(func.sum(RefundItem.quantity), 0))
        .join(Refund, Refund.id == RefundItem.refund_id)
        .where(Refund.order_id == order_id,
               Refund.status.in_(LIVE_REFUND_STATUSES))
        .group_by(RefundItem.order_item_id)
    )).all()
    return {k: int(v) for k, v in rows}


async def _price_items(
    session: AsyncSession, order: Order, items: List[dict]
) -> tuple[int, List[RefundItem]]:
    order_items = {
        it.id: it for it in (await session.execute(
            select(OrderItem).where(OrderItem.order_id == order.id)
        )).scalars().all()
    }
    already = await _refunded_qty_by_item(session, order.id)
    seen: Dict[str, int] = {}
    out: List[RefundItem] = []
    total = 0
    for raw in items:
        item_id = raw.get("order_item_id")
        qty = raw.get("quantity")
        ticket_id = raw.get("ticket_instance_id")
        oi = order_items.get(item_id)
        if oi is None:
            raise ValidationFailed(
                "order item does not belong to this order",
                details={"order_item_id": item_id},
            )
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise ValidationFailed(
                "quantity must be a positive integer",
                details={"order_item_id": item_id, "quantity": qty},
            )
        if item_id in seen:
            raise ValidationFailed(
                "order item listed twice", details={"order_item_id": item_id}
            )
        if ticket_id is not None:
            owner = (await session.execute(
                select(TicketInstance.order_item_id)
                .where(TicketInstance.id == ticket_id)
            )).scalar_one_or_none()
            if owner != item_id or qty != 1:
                raise ValidationFailed(
                    "ticket does not match the order item",
                    details={"ticket_instance_id": ticket_id},
                )
        left = oi.quantity - already.get(item_id, 0)
        if qty > left:
            raise Conflict(
                "refund exceeds the refundable quantity",
                code="EXCEEDS_REFUNDABLE",
                details={"order_item_id": item_id, "requested": qty,
                         "refundable": max(left, 0)},
            )
        seen[item_id] = qty
        amount = oi.unit_price * qty
        total += amount
        out.append(RefundItem(
            id=new_id(), order_item_id=item_id, ticket_instance_id=ticket_id,
            quantity=qty, amount=amount,
        ))
    if not out:
        raise ValidationFailed("items must not be empty")
    return total, out


# ------------------------------------------------------------------------------
# status transitions (shared with the webhook reconciler)
# ------------------------------------------------------------------------------
async def apply_refund_status(
    session: AsyncSession, refund: Refund, order: Order, provider_status: str
) -> str:
    """Apply a provider status to a locked refund row.

    Returns the local status. Ticket voiding and the confirmation happen at
    most once per refund no matter how often ``refunded`` is seen.
    """
    status = REFUND_STATUS_MAP.get(provider_status)
    if status is None:
        logger.warning("refund_status_unknown", refund_id=refund.id,
                       provider_status=provider_status)
        return refund.status

    ts = now_ts()
    if refund.status != status:
        # terminal states stay terminal
        if refund.status in ("refunded", "failed", "canceled"):
            logger.warning(
                "refund_status_regression_ignored", refund_id=refund.id,
                current=refund.status, provider_status=provider_status,
            )
            return refund.status
        refund.status = status
        refund.updated_at = ts

    if status != "refunded":
        return status

    if refund.refunded_at is None:
        refund.refunded_at = ts

    if refund.is_full_refund and not refund.tickets_voided:
        await void_for_order(session, order.id, reason="refunded")
        refund.tickets_voided = True

    if not refund.notification_sent:
        audit.enqueue_notification(
            session,
            org_id=order.org_id,
            recipient=order.email,
            template="refund_confirmation",
            payload={
                "order_id": order.id,
                "refund_id": refund.id,
                "amount": refund.amount,
                "currency": refund.currency,
                "is_full_refund": refund.is_full_refund,
            },
        )
        refund.notification_sent = True
    return status


# ------------------------------------------------------------------------------
# create
# ------------------------------------------------------------------------------
async def create_refund(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    *,
    order_id: str,
    idempotency_key: str,
    amount: Optional[int] = None,
    items: Optional[List[dict]] = None,
    reason: Optional[str] = None,
    actor_user_id: Optional[str] = None,
    org_id: Optional[str] = None,
) -> RefundResult:
    """Refund ``amount`` (or the priced ``items``) of a paid order.

    Without either, the whole remaining refundable amount is refunded.
    Repeating a call with the same ``idempotency_key`` returns the refund
    from the first call. Only a refund whose provider call never got an
    answer is sent again, under the same key.
    """
    if not idempotency_key:
        raise ValidationFailed("idempotency_key is required")
    if amount is not None and items:
        raise ValidationFailed("give either amount or items, not both")

    async with db.gated():
        async with db.session.begin():
            existing = await _refund_by_key(db.session, idempotency_key)
    if existing is not None:
        return await _replay(db, adapter, existing, order_id, org_id)

    try:
        async with db.gated():
            async with db.session.begin():
                s = db.session
                order = await lock_order(s, order_id)
                if order is None or (
                    org_id is not None and order.org_id != org_id
                ):
                    raise NotFound("order not found", code="ORDER_NOT_FOUND")

                # lost a race against the same key while waiting
                existing = await _refund_by_key(s, idempotency_key)
                if existing is None:
                    refund = await _insert_refund(
                        s, order, idempotency_key=idempotency_key,
                        amount=amount, items=items, reason=reason,
                        actor_user_id=actor_user_id,
                    )
    except IntegrityError:
        async with db.gated():
            async with db.session.begin():
                existing = await _refund_by_key(db.session, idempotency_key)
        if existing is None:
            raise
    if existing is not None:
        return await _replay(db, adapter, existing, order_id, org_id)

    logger.info("refund_requested", refund_id=refund.id, order_id=order_id,
                amount=refund.amount, is_full_refund=refund.is_full_refund)
    return await _submit(db, adapter, refund, order_id=order_id,
                         reason=reason, actor_user_id=actor_user_id)


async def _submit(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    refund: Refund,
    *,
    order_id: str,
    reason: Optional[str] = None,
    actor_user_id: Optional[str] = None,
    idempotent: bool = False,
) -> RefundResult:
    # the provider dedupes on the idempotency key, so a resubmitted
    # pending refund cannot move money twice
    try:
        async with timeit("provider.create_refund"):
            info = await adapter.create_refund(
                payment_id=refund.provider_payment_id,
                amount=refund.amount,
                currency=refund.currency,
                description=reason or f"Refund order {order_id[:8]}",
                metadata={"order_id": order_id, "refund_id": refund.id},
                idempotency_key=refund.idempotency_key,
            )
    except ProviderUnavailable as e:
        # the provider may or may not have the refund; keep the amount
        # reserved until an operator or a retry settles it
        logger.error("refund_provider_unavailable", refund_id=refund.id,
                     error=str(e))
        await audit.record(
            db, action="refund_provider_unavailable", entity_type="refund",
            entity_id=refund.id, org_id=refund.org_id,
            actor_user_id=actor_user_id, details={"error": str(e)},
        )
        raise PaymentProviderError(
            "payment provider unavailable, refund left pending",
            code="PROVIDER_UNAVAILABLE",
            details={"refund_id": refund.id, "retryable": True,
                     "idempotency_key": refund.idempotency_key},
        ) from e
    except ProviderRejected as e:
        async with db.gated():
            async with db.session.begin():
                refund = await lock_refund(db.session, refund.id)
                refund.status = "failed"
                refund.updated_at = now_ts()
        logger.warning("refund_rejected", refund_id=refund.id,
                       provider_status=e.status, error=str(e))
        await audit.record(
            db, action="refund_failed", entity_type="refund",
            entity_id=refund.id, org_id=refund.org_id,
            actor_user_id=actor_user_id, details={"error": str(e)},
        )
        raise PaymentProviderError(
            "payment provider rejected the refund",
            details={"refund_id": refund.id, "provider_status": e.status},
        ) from e

    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await lock_order(s, order_id)
            refund = await lock_refund(s, refund.id)
            refund.provider_refund_id = info["id"]
            refund.updated_at = now_ts()
            await apply_refund_status(s, refund, order, info["status"])

    logger.info("refund_created", refund_id=refund.id,
                provider_refund_id=refund.provider_refund_id,
                status=refund.status)
    await audit.record(
        db, action="refund_created", entity_type="refund",
        entity_id=refund.id, org_id=refund.org_id,
        actor_user_id=actor_user_id,
        details={"order_id": order_id, "amount": refund.amount,
                 "is_full_refund": refund.is_full_refund,
                 "reason": reason},
    )
    return RefundResult(refund=refund, idempotent=idempotent)


async def _replay(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    existing: Refund,
    order_id: str,
    org_id: Optional[str] = None,
) -> RefundResult:
    if org_id is not None and existing.org_id != org_id:
        raise NotFound("order not found", code="ORDER_NOT_FOUND")
    if existing.order_id != order_id:
        raise Conflict(
            "idempotency key already used for another order",
            code="IDEMPOTENCY_KEY_REUSED",
        )
    if existing.status == "pending" and existing.provider_refund_id is None:
        # an earlier provider call never got an answer
        logger.info("refund_resubmitted", refund_id=existing.id)
        return await _submit(db, adapter, existing, order_id=order_id,
                             reason=existing.reason,
                             actor_user_id=existing.created_by,
                             idempotent=True)
    logger.info("refund_replayed", refund_id=existing.id)
    return RefundResult(refund=existing, idempotent=True)


async def _insert_refund(
    s: AsyncSession,
    order: Order,
    *,
    idempotency_key: str,
    amount: Optional[int],
    items: Optional[List[dict]],
    reason: Optional[str],
    actor_user_id: Optional[str],
) -> Refund:
    if order.status not in REFUNDABLE_ORDER_STATUSES:
        raise Conflict(
            "only paid orders can be refunded", code="ORDER_NOT_PAID",
            details={"status": order.status},
        )
    payment = (await s.execute(
        select(Payment)
        .where(Payment.order_id == order.id, Payment.status == "paid")
        .order_by(Payment.updated_at.desc())
        .limit(1)
    )).scalar_one_or_none()
    if payment is None:
        raise Conflict("order has no captured payment", code="NO_PAYMENT")

    remaining = order.total_amount - await refunded_total(s, order.id)
    if remaining <= 0:
        raise Conflict("order is already fully refunded",
                       code="ALREADY_REFUNDED")

    refund_items: List[RefundItem] = []
    if items:
        amount, refund_items = await _price_items(s, order, items)
    elif amount is None:
        amount = remaining

    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationFailed("amount must be a positive integer",
                               details={"amount": amount})
    if amount > remaining:
        raise Conflict(
            "refund exceeds the refundable amount",
            code="EXCEEDS_REFUNDABLE",
            details={"requested": amount, "refundable": remaining},
        )

    ts = now_ts()
    refund = Refund(
        id=new_id(),
        org_id=order.org_id,
        order_id=order.id,
        payment_id=payment.id,
        provider_payment_id=payment.provider_payment_id,
        amount=amount,
        currency=order.currency,
        status="pending",
        reason=reason,
        idempotency_key=idempotency_key,
        is_full_refund=amount == remaining,
        created_by=actor_user_id,
        created_at=ts,
        updated_at=ts,
    )
    s.add(refund)
    await s.flush()
    for ri in refund_items:
        ri.refund_id = refund.id
    s.add_all(refund_items)
    return refund


# ------------------------------------------------------------------------------
# read model
# ------------------------------------------------------------------------------
async def refund_summary(
    db: GatedAsyncSession, order_id: str, org_id: Optional[str] = None
) -> dict:
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await s.get(Order, order_id)
            if order is None or (
                org_id is not None and order.org_id != org_id
            ):
                raise NotFound("order not found", code="ORDER_NOT_FOUND")
            refunds = (await s.execute(
                select(Refund)
                .where(Refund.order_id == order_id)
                .order_by(Refund.created_at)
            )).scalars().all()

    refunded = sum(r.amount for r in refunds if r.status == "refunded")
    in_flight = sum(
        r.amount for r in refunds
        if r.status in ("pending", "queued", "processing")
    )
    paid = order.total_amount if order.status in REFUNDABLE_ORDER_STATUSES \
        else 0
    return {
        "order_id": order.id,
        "order_status": order.status,
        "currency": order.currency,
        "paid_amount": paid,
        "refunded_amount": refunded,
        "pending_amount": in_flight,
        "refundable_amount": max(paid - refunded - in_flight, 0),
        "refunds": [refund_view(r) for r in refunds],
    }
