import pytest
from sqlalchemy import select

from boxoffice.errors import (
    Conflict, NotFound, PaymentProviderError, ProviderRejected,
    ProviderUnavailable, ValidationFailed,
)
from boxoffice.model import reconcile
from boxoffice.model.inventory import inventory_snapshot
from boxoffice.model.orders import load_items
from boxoffice.model.orm import NotificationOutbox, Refund, TicketInstance
from boxoffice.model.refunds import create_refund, refund_summary
from boxoffice.payments import MockPay

pytestmark = pytest.mark.asyncio


class _RejectingPay(MockPay):
    async def create_refund(self, **kw):
        self.calls.append("create_refund")
        raise ProviderRejected("insufficient balance", status=422)


class _UnreachablePay(MockPay):
    async def create_refund(self, **kw):
        self.calls.append("create_refund")
        raise ProviderUnavailable("connect timeout")


async def _rows(database, model, *where):
    async with database.open() as db:
        async with db.session.begin():
            return (await db.session.execute(
                select(model).where(*where)
            )).scalars().all()


async def test_full_refund_then_nothing_left(catalog, paid_order, db,
                                             mockpay) -> None:
    order_id = (await paid_order(catalog, quantity=2)).order.id
    res = await create_refund(
        db, mockpay, order_id=order_id, idempotency_key="refund-key-1",
        reason="customer request",
    )
    refund = res.refund
    assert res.idempotent is False
    assert refund.amount == 2 * catalog.price
    assert refund.is_full_refund is True
    assert refund.status == "processing"
    assert refund.provider_refund_id.startswith("re_mock")

    with pytest.raises(Conflict) as exc:
        await create_refund(db, mockpay, order_id=order_id,
                            idempotency_key="refund-key-2")
    assert exc.value.code == "ALREADY_REFUNDED"


async def test_partial_refunds_respect_ceiling(catalog, paid_order, db,
                                               mockpay) -> None:
    order_id = (await paid_order(catalog, quantity=2)).order.id
    first = await create_refund(db, mockpay, order_id=order_id,
                                idempotency_key="partial-1", amount=6000)
    assert first.refund.is_full_refund is False

    with pytest.raises(Conflict) as exc:
        await create_refund(db, mockpay, order_id=order_id,
                            idempotency_key="partial-2", amount=5000)
    assert exc.value.code == "EXCEEDS_REFUNDABLE"
    assert exc.value.details["refundable"] == 4000

    last = await create_refund(db, mockpay, order_id=order_id,
                               idempotency_key="partial-3", amount=4000)
    assert last.refund.is_full_refund is True

    summary = await refund_summary(db, order_id)
    assert summary["paid_amount"] == 10000
    assert summary["pending_amount"] == 10000
    assert summary["refundable_amount"] == 0
    assert len(summary["refunds"]) == 2


async def test_same_key_reaches_provider_once(catalog, paid_order, db,
                                              mockpay) -> None:
    order_id = (await paid_order(catalog)).order.id
    first = await create_refund(db, mockpay, order_id=order_id,
                                idempotency_key="same-key-1")
    again = await create_refund(db, mockpay, order_id=order_id,
                                idempotency_key="same-key-1")
    assert again.idempotent is True
    assert again.refund.id == first.refund.id
    assert mockpay.calls.count("create_refund") == 1


async def test_key_reuse_across_orders(make_catalog, paid_order, db,
                                       mockpay) -> None:
    c = await make_catalog(capacity=10)
    one = (await paid_order(c)).order.id
    two = (await paid_order(c)).order.id
    await create_refund(db, mockpay, order_id=one,
                        idempotency_key="shared-key")
    with pytest.raises(Conflict) as exc:
        await create_refund(db, mockpay, order_id=two,
                            idempotency_key="shared-key")
    assert exc.value.code == "IDEMPOTENCY_KEY_REUSED"


async def test_unpaid_order_cannot_be_refunded(catalog, place_order, db,
                                               mockpay) -> None:
    order_id = (await place_order(catalog)).order.id
    with pytest.raises(Conflict) as exc:
        await create_refund(db, mockpay, order_id=order_id,
                            idempotency_key="unpaid-key")
    assert exc.value.code == "ORDER_NOT_PAID"


async def test_refund_scoped_to_organization(catalog, paid_order, db,
                                             mockpay) -> None:
    order_id = (await paid_order(catalog)).order.id
    with pytest.raises(NotFound):
        await create_refund(db, mockpay, order_id=order_id,
                            idempotency_key="other-org", org_id="org-2")


async def test_invalid_amounts(catalog, paid_order, db, mockpay) -> None:
    order_id = (await paid_order(catalog)).order.id
    with pytest.raises(ValidationFailed):
        await create_refund(db, mockpay, order_id=order_id,
                            idempotency_key="zero-amount", amount=0)
    with pytest.raises(ValidationFailed):
        await create_refund(db, mockpay, order_id=order_id,
                            idempotency_key="both-given", amount=100,
                            items=[{"order_item_id": "x", "quantity": 1}])


async def test_item_refund(catalog, paid_order, db, mockpay) -> None:
    order_id = (await paid_order(catalog, quantity=2)).order.id
    async with db.session.begin():
        item = (await load_items(db.session, order_id))[0]

    res = await create_refund(
        db, mockpay, order_id=order_id, idempotency_key="item-refund-1",
        items=[{"order_item_id": item.id, "quantity": 1}],
    )
    assert res.refund.amount == catalog.price
    assert res.refund.is_full_refund is False

    with pytest.raises(Conflict) as exc:
        await create_refund(
            db, mockpay, order_id=order_id, idempotency_key="item-refund-2",
            items=[{"order_item_id": item.id, "quantity": 2}],
        )
    assert exc.value.code == "EXCEEDS_REFUNDABLE"


async def test_full_refund_voids_tickets_once(
    catalog, paid_order, db, mockpay, database
) -> None:
    order_id = (await paid_order(catalog, quantity=2)).order.id
    res = await create_refund(db, mockpay, order_id=order_id,
                              idempotency_key="void-key-1")
    rid = res.refund.provider_refund_id

    mockpay.set_refund_status(rid, "refunded")
    first = await reconcile.handle_webhook(db, mockpay, rid)
    second = await reconcile.handle_webhook(db, mockpay, rid)
    assert first.outcome == "REFUND_REFUNDED"
    assert second.outcome == reconcile.DUPLICATE

    tickets = await _rows(database, TicketInstance,
                          TicketInstance.order_id == order_id)
    assert [t.status for t in tickets] == ["void", "void"]
    refund = (await _rows(database, Refund, Refund.id == res.refund.id))[0]
    assert refund.status == "refunded"
    assert refund.tickets_voided is True
    assert refund.refunded_at is not None
    notes = await _rows(database, NotificationOutbox,
                        NotificationOutbox.template == "refund_confirmation")
    assert len(notes) == 1

    # voided tickets hand their capacity back
    snap = await inventory_snapshot(db, catalog.event_id)
    assert snap["ticket_types"][0]["issued"] == 0

    summary = await refund_summary(db, order_id)
    assert summary["refunded_amount"] == 2 * catalog.price
    assert summary["refundable_amount"] == 0


async def test_partial_refund_keeps_tickets(catalog, paid_order, db, mockpay,
                                            database) -> None:
    order_id = (await paid_order(catalog, quantity=2)).order.id
    res = await create_refund(db, mockpay, order_id=order_id,
                              idempotency_key="keep-key-1", amount=1000)
    mockpay.set_refund_status(res.refund.provider_refund_id, "refunded")
    await reconcile.handle_webhook(db, mockpay,
                                   res.refund.provider_refund_id)

    tickets = await _rows(database, TicketInstance,
                          TicketInstance.order_id == order_id)
    assert {t.status for t in tickets} == {"issued"}


async def test_provider_rejection_fails_refund(catalog, paid_order, db,
                                               mockpay, database) -> None:
    order_id = (await paid_order(catalog)).order.id
    with pytest.raises(PaymentProviderError):
        await create_refund(db, _RejectingPay(), order_id=order_id,
                            idempotency_key="rejected-1")
    refund = (await _rows(database, Refund,
                          Refund.idempotency_key == "rejected-1"))[0]
    assert refund.status == "failed"

    # a failed refund no longer holds the refundable amount
    res = await create_refund(db, mockpay, order_id=order_id,
                              idempotency_key="rejected-2")
    assert res.refund.amount == catalog.price


async def test_provider_outage_leaves_refund_pending(
    catalog, paid_order, db, database
) -> None:
    order_id = (await paid_order(catalog)).order.id
    with pytest.raises(PaymentProviderError) as exc:
        await create_refund(db, _UnreachablePay(), order_id=order_id,
                            idempotency_key="outage-1")
    assert exc.value.code == "PROVIDER_UNAVAILABLE"
    refund = (await _rows(database, Refund,
                          Refund.idempotency_key == "outage-1"))[0]
    assert refund.status == "pending"
    assert refund.provider_refund_id is None


async def test_same_key_resubmits_after_outage(catalog, paid_order, db,
                                               mockpay, database) -> None:
    order_id = (await paid_order(catalog)).order.id
    with pytest.raises(PaymentProviderError) as exc:
        await create_refund(db, _UnreachablePay(), order_id=order_id,
                            idempotency_key="outage-retry-1")
    assert exc.value.details["retryable"] is True

    res = await create_refund(db, mockpay, order_id=order_id,
                              idempotency_key="outage-retry-1")
    assert res.idempotent is True
    assert res.refund.status == "processing"
    assert res.refund.provider_refund_id.startswith("re_mock")
    assert mockpay.calls.count("create_refund") == 1

    # answered now, so a further retry is a plain replay
    again = await create_refund(db, mockpay, order_id=order_id,
                                idempotency_key="outage-retry-1")
    assert again.refund.id == res.refund.id
    assert mockpay.calls.count("create_refund") == 1
    rows = await _rows(database, Refund, Refund.order_id == order_id)
    assert len(rows) == 1
