# model/reconcile.py
"""
Webhook reconciler.

Provider notifications only carry an object id. The authoritative state is
always fetched from the provider, then applied exactly once:

  1. INSERT the (provider, "<id>:<status>") key into payment_events with
     ON CONFLICT DO NOTHING. No row inserted -> duplicate, stop.
  2. In the same transaction: lock the order, apply the transition, issue
     tickets, enqueue notifications, stamp processed_at.
  3. Commit. Any failure rolls back step 1 too, so the provider's retry
     gets a clean second attempt.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import JSON, bindparam, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import AUTO_REFUND_OVERBOOKED, OPERATOR_EMAIL
from ..errors import BoxOfficeError, ProviderError
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..payments import PaymentAdapter, PaymentInfo
from . import audit
from .inventory import final_shortages
from .orders import DEAD_PAYMENT_STATUSES, latest_payment
from .orm import Order, Payment, Refund
from .refunds import apply_refund_status, create_refund, lock_refund
from .tickets import issue_for_locked_order, lock_order

logger = structlog.get_logger(__name__)

# outcomes
UNKNOWN = "UNKNOWN"
DUPLICATE = "DUPLICATE"
PAID = "PAID"
OVERBOOKED = "OVERBOOKED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
ALREADY_FINAL = "ALREADY_FINAL"
SUPERSEDED = "SUPERSEDED"
IGNORED = "IGNORED"
AWAITING = "AWAITING"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
PROVIDER_ERROR = "PROVIDER_ERROR"
DB_ERROR = "DB_ERROR"

_AUDITED = {PAID, OVERBOOKED, FAILED, CANCELLED, AMOUNT_MISMATCH}


@dataclass
class WebhookResult:
    outcome: str
    status_code: int = 200
    order_id: Optional[str] = None


SQL_RECORD_EVENT = text("""
    INSERT INTO payment_events (
      id, provider, provider_event_id, provider_object_id, event_type,
      payload, received_at
    ) VALUES (
      :id, :provider, :event_id, :object_id, :event_type, :payload,
      :received_at
    )
    ON CONFLICT (provider, provider_event_id) DO NOTHING
""").bindparams(bindparam("payload", type_=JSON))

SQL_MARK_PROCESSED = text("""
    UPDATE payment_events
       SET processed_at = :ts, outcome = :outcome
     WHERE provider = :provider AND provider_event_id = :event_id
""")


async def _record_event(
    session: AsyncSession, *, provider: str, event_id: str, object_id: str,
    event_type: str, payload: dict,
) -> bool:
    result = await session.execute(SQL_RECORD_EVENT, {
        "id": new_id(),
        "provider": provider,
        "event_id": event_id,
        "object_id": object_id,
        "event_type": event_type,
        "payload": payload,
        "received_at": now_ts(),
    })
    return result.rowcount == 1


async def _mark_processed(
    session: AsyncSession, *, provider: str, event_id: str, outcome: str
) -> None:
    await session.execute(SQL_MARK_PROCESSED, {
        "ts": now_ts(), "outcome": outcome, "provider": provider,
        "event_id": event_id,
    })


# ------------------------------------------------------------------------------
# entry point
# ------------------------------------------------------------------------------
async def handle_webhook(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    object_id: str,
    *,
    auto_refund: bool = AUTO_REFUND_OVERBOOKED,
) -> WebhookResult:
    """Reconcile one notification. ``status_code`` is what the provider
    should see: 200 for anything that must not be retried, 5xx otherwise.
    """
    log = logger.bind(object_id=object_id, provider=adapter.name)
    try:
        if adapter.is_refund_id(object_id):
            result = await reconcile_refund(db, adapter, object_id)
        else:
            result = await reconcile_payment(
                db, adapter, object_id, auto_refund=auto_refund
            )
    except ProviderError as e:
        log.error("webhook_provider_error", error=str(e),
                  retryable=e.retryable)
        return WebhookResult(outcome=PROVIDER_ERROR, status_code=502)
    except SQLAlchemyError:
        log.exception("webhook_db_error")
        return WebhookResult(outcome=DB_ERROR, status_code=500)

    log.info("webhook_processed", outcome=result.outcome,
             order_id=result.order_id)
    return result


# ------------------------------------------------------------------------------
# payments
# ------------------------------------------------------------------------------
async def _payment_for(
    session: AsyncSession, provider: str, remote: PaymentInfo
) -> Optional[Payment]:
    payment = (await session.execute(
        select(Payment)
        .where(Payment.provider_payment_id == remote["id"])
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if payment is not None:
        return payment

    # notification beat the checkout's own insert; the provider metadata
    # still tells us which order it belongs to
    order_id = (remote.get("metadata") or {}).get("order_id")
    if not order_id or await session.get(Order, order_id) is None:
        return None
    ts = now_ts()
    payment = Payment(
        id=new_id(),
        order_id=order_id,
        provider=provider,
        provider_payment_id=remote["id"],
        amount=remote["amount"],
        currency=remote["currency"],
        status=remote["status"],
        checkout_url=remote.get("checkout_url"),
        created_at=ts,
        updated_at=ts,
    )
    session.add(payment)
    await session.flush()
    logger.warning("payment_recorded_from_webhook", order_id=order_id,
                   provider_payment_id=remote["id"])
    return payment


async def _apply_payment_status(
    session: AsyncSession, order: Order, payment: Payment,
    remote: PaymentInfo,
) -> tuple[str, dict]:
    status = remote["status"]
    ts = now_ts()
    # a captured payment stays captured locally, refunds track the rest
    if payment.status != "paid":
        payment.status = status
        payment.updated_at = ts

    if status == "paid":
        if order.status in ("paid", "overbooked"):
            return ALREADY_FINAL, {}

        if remote["amount"] != order.total_amount or \
                remote["currency"].upper() != order.currency.upper():
            details = {"expected": order.total_amount,
                       "received": remote["amount"],
                       "currency": remote["currency"]}
            logger.error("payment_amount_mismatch", order_id=order.id,
                         **details)
            return AMOUNT_MISMATCH, details

        previous = order.status
        short = await final_shortages(session, order.id)
        if short:
            order.status = "overbooked"
            order.updated_at = ts
            logger.critical("order_overbooked", order_id=order.id,
                            previous_status=previous, shortages=short)
            audit.enqueue_notification(
                session,
                org_id=order.org_id,
                recipient=OPERATOR_EMAIL,
                template="operator_overbooked_alert",
                payload={"order_id": order.id, "shortages": short,
                         "provider_payment_id": payment.provider_payment_id},
            )
            return OVERBOOKED, {"shortages": short,
                                "previous_status": previous}

        order.status = "paid"
        order.paid_at = ts
        order.updated_at = ts
        await session.flush()
        tickets = await issue_for_locked_order(session, order)
        audit.enqueue_notification(
            session,
            org_id=order.org_id,
            recipient=order.email,
            template="order_confirmation",
            payload={"order_id": order.id,
                     "tickets": [t.public() for t in tickets]},
        )
        if previous != "pending":
            logger.warning("late_payment_confirmed", order_id=order.id,
                           previous_status=previous)
        return PAID, {"tickets": len(tickets), "previous_status": previous}

    if status in DEAD_PAYMENT_STATUSES:
        if order.status != "pending":
            return IGNORED, {}
        latest = await latest_payment(session, order.id)
        if latest is not None and latest.id != payment.id:
            return SUPERSEDED, {}
        order.status = "failed" if status == "failed" else "cancelled"
        order.updated_at = ts
        return (FAILED if status == "failed" else CANCELLED), {}

    return AWAITING, {}


async def reconcile_payment(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    payment_id: str,
    *,
    auto_refund: bool = AUTO_REFUND_OVERBOOKED,
) -> WebhookResult:
    async with timeit("provider.get_payment"):
        remote = await adapter.get_payment(payment_id)
    if remote is None:
        logger.warning("webhook_unknown_payment",
                       provider_payment_id=payment_id)
        return WebhookResult(outcome=UNKNOWN)

    event_id = f"{payment_id}:{remote['status']}"
    async with timeit("webhook.apply_payment"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                payment = await _payment_for(s, adapter.name, remote)
                if payment is None:
                    logger.warning("webhook_payment_not_ours",
                                   provider_payment_id=payment_id)
                    return WebhookResult(outcome=UNKNOWN)

                fresh = await _record_event(
                    s, provider=adapter.name, event_id=event_id,
                    object_id=payment_id,
                    event_type=f"payment.{remote['status']}",
                    payload=dict(remote),
                )
                if not fresh:
                    return WebhookResult(outcome=DUPLICATE,
                                         order_id=payment.order_id)

                order = await lock_order(s, payment.order_id)
                outcome, details = await _apply_payment_status(
                    s, order, payment, remote
                )
                await _mark_processed(s, provider=adapter.name,
                                      event_id=event_id, outcome=outcome)

    if outcome in _AUDITED:
        await audit.record(
            db, action=f"payment_{outcome.lower()}", entity_type="order",
            entity_id=order.id, org_id=order.org_id,
            details={"provider_payment_id": payment_id, **details},
        )

    if outcome == OVERBOOKED and auto_refund:
        await _refund_overbooked(db, adapter, order)

    return WebhookResult(outcome=outcome, order_id=order.id)


async def _refund_overbooked(
    db: GatedAsyncSession, adapter: PaymentAdapter, order: Order
) -> None:
    try:
        await create_refund(
            db, adapter, order_id=order.id,
            idempotency_key=f"overbooked:{order.id}",
            reason="Sold out before your payment completed",
        )
    except BoxOfficeError as e:
        # the order stays overbooked; an operator will pick it up
        logger.error("overbooked_auto_refund_failed", order_id=order.id,
                     code=e.code, error=e.message)


# ------------------------------------------------------------------------------
# refunds
# ------------------------------------------------------------------------------
async def reconcile_refund(
    db: GatedAsyncSession, adapter: PaymentAdapter, refund_id: str
) -> WebhookResult:
    async with db.gated():
        async with db.session.begin():
            local = (await db.session.execute(
                select(Refund).where(Refund.provider_refund_id == refund_id)
            )).scalar_one_or_none()
    if local is None:
        logger.warning("webhook_unknown_refund", provider_refund_id=refund_id)
        return WebhookResult(outcome=UNKNOWN)

    async with timeit("provider.get_refund"):
        remote = await adapter.get_refund(local.provider_payment_id, refund_id)
    if remote is None:
        return WebhookResult(outcome=UNKNOWN, order_id=local.order_id)

    event_id = f"refund:{refund_id}:{remote['status']}"
    async with timeit("webhook.apply_refund"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                fresh = await _record_event(
                    s, provider=adapter.name, event_id=event_id,
                    object_id=refund_id,
                    event_type=f"refund.{remote['status']}",
                    payload=dict(remote),
                )
                if not fresh:
                    return WebhookResult(outcome=DUPLICATE,
                                         order_id=local.order_id)
                order = await lock_order(s, local.order_id)
                refund = await lock_refund(s, local.id)
                status = await apply_refund_status(
                    s, refund, order, remote["status"]
                )
                outcome = f"REFUND_{status.upper()}"
                await _mark_processed(s, provider=adapter.name,
                                      event_id=event_id, outcome=outcome)

    if status in ("refunded", "failed", "canceled"):
        await audit.record(
            db, action=f"refund_{status}", entity_type="refund",
            entity_id=refund.id, org_id=refund.org_id,
            details={"order_id": order.id, "amount": refund.amount,
                     "tickets_voided": refund.tickets_voided},
        )
    return WebhookResult(outcome=outcome, order_id=order.id)
