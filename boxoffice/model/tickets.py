from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import Conflict, NotFound
from ..helpers import hash_token, new_id, new_token, now_ts, token_preview
from ..infra.sql import GatedAsyncSession
from .orm import Order, OrderItem, TicketInstance

logger = structlog.get_logger(__name__)


@dataclass
class IssuedTicket:
    id: str
    ticket_type_id: str
    order_item_id: str
    sequence_no: int
    status: str
    token_preview: str
    # plaintext, only present on the call that created the ticket
    scan_token: Optional[str] = None

    def public(self) -> dict:
        d = {
            "id": self.id,
            "ticket_type_id": self.ticket_type_id,
            "sequence_no": self.sequence_no,
            "status": self.status,
            "token_preview": self.token_preview,
        }
        if self.scan_token is not None:
            d["scan_token"] = self.scan_token
        return d


def _from_row(t: TicketInstance) -> IssuedTicket:
    return IssuedTicket(
        id=t.id,
        ticket_type_id=t.ticket_type_id,
        order_item_id=t.order_item_id,
        sequence_no=t.sequence_no,
        status=t.status,
        token_preview=t.scan_token_preview,
    )


async def tickets_for_order(
    session: AsyncSession, order_id: str
) -> List[TicketInstance]:
    return list((await session.execute(
        select(TicketInstance)
        .where(TicketInstance.order_id == order_id)
        .order_by(TicketInstance.order_item_id, TicketInstance.sequence_no)
    )).scalars().all())


async def issue_for_locked_order(
    session: AsyncSession, order: Order
) -> List[IssuedTicket]:
    """Create one ticket per ticket unit of a paid order.

    The caller holds the order row lock inside its transaction. If the order
    already has tickets they are returned as-is (without plaintext tokens).
    """
    if order.status != "paid":
        raise Conflict(
            "tickets can only be issued for paid orders",
            code="ORDER_NOT_PAID", details={"status": order.status},
        )

    existing = await tickets_for_order(session, order.id)
    if existing:
        return [_from_row(t) for t in existing]

    items = (await session.execute(
        select(OrderItem)
        .where(OrderItem.order_id == order.id,
               OrderItem.ticket_type_id.is_not(None))
        .order_by(OrderItem.id)
    )).scalars().all()

    ts = now_ts()
    out: List[IssuedTicket] = []
    for item in items:
        for seq in range(1, item.quantity + 1):
            token = new_token()
            row = TicketInstance(
                id=new_id(),
                order_id=order.id,
                order_item_id=item.id,
                sequence_no=seq,
                event_id=order.event_id,
                ticket_type_id=item.ticket_type_id,
                owner_user_id=order.user_id,
                status="issued",
                scan_token_hash=hash_token(token),
                scan_token_preview=token_preview(token),
                issued_at=ts,
            )
            session.add(row)
            ticket = _from_row(row)
            ticket.scan_token = token
            out.append(ticket)
    await session.flush()
    logger.info("tickets_issued", order_id=order.id, count=len(out))
    return out


async def lock_order(session: AsyncSession, order_id: str) -> Optional[Order]:
    return (await session.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def issue_tickets(
    db: GatedAsyncSession, order_id: str, org_id: Optional[str] = None
) -> List[IssuedTicket]:
    async with db.gated():
        async with db.session.begin():
            order = await lock_order(db.session, order_id)
            if order is None or (
                org_id is not None and order.org_id != org_id
            ):
                raise NotFound("order not found", code="ORDER_NOT_FOUND")
            return await issue_for_locked_order(db.session, order)


async def void_for_order(
    session: AsyncSession, order_id: str, reason: str
) -> int:
    """Void every non-void ticket of an order. Returns the number voided."""
    result = await session.execute(
        update(TicketInstance)
        .where(TicketInstance.order_id == order_id,
               TicketInstance.status != "void")
        .values(status="void", voided_at=now_ts(), void_reason=reason)
        .execution_options(synchronize_session=False)
    )
    n = result.rowcount or 0
    logger.info("tickets_voided", order_id=order_id, count=n, reason=reason)
    return n


async def check_in(
    db: GatedAsyncSession, scan_token: str, org_id: Optional[str] = None
) -> IssuedTicket:
    """Mark the ticket behind ``scan_token`` as used at the door."""
    token_hash = hash_token(scan_token)
    async with db.gated():
        async with db.session.begin():
            s = db.session
            ticket = (await s.execute(
                select(TicketInstance)
                .where(TicketInstance.scan_token_hash == token_hash)
                .with_for_update()
            )).scalar_one_or_none()
            if ticket is None:
                raise NotFound("ticket not found", code="TICKET_NOT_FOUND")
            if org_id is not None:
                order_org = (await s.execute(
                    select(Order.org_id).where(Order.id == ticket.order_id)
                )).scalar_one()
                if order_org != org_id:
                    raise NotFound("ticket not found", code="TICKET_NOT_FOUND")
            if ticket.status == "void":
                raise Conflict("ticket is void", code="TICKET_VOID",
                               details={"ticket_id": ticket.id})
            if ticket.status == "checked_in":
                raise Conflict(
                    "ticket already checked in", code="ALREADY_CHECKED_IN",
                    details={"ticket_id": ticket.id,
                             "checked_in_at": ticket.checked_in_at},
                )
            ticket.status = "checked_in"
            ticket.checked_in_at = now_ts()
    logger.info("ticket_checked_in", ticket_id=ticket.id,
                token_preview=ticket.scan_token_preview)
    return _from_row(ticket)
