# model/inventory.py
"""
Inventory ledger: capacity configuration plus usage derived from orders and
ticket instances. Nothing here writes.

  ticket types  issued  = ticket instances in issued|checked_in
                pending = quantities on pending orders
  products      issued  = quantities on paid orders
  (+variants)   pending = quantities on pending orders

  available = capacity_total - issued - pending   (None = unlimited)
"""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import GatedAsyncSession
from .orm import (
    Order, OrderItem, Product, ProductVariant, TicketInstance, TicketType,
)

LIVE_TICKET_STATUSES = ("issued", "checked_in")


@dataclass
class Usage:
    issued: int = 0
    pending: int = 0


def available(capacity: Optional[int], usage: Usage) -> Optional[int]:
    if capacity is None:
        return None
    return capacity - usage.issued - usage.pending


async def lock_rows(
    session: AsyncSession,
    model: Type,
    ids: Iterable[str],
    *,
    skip_locked: bool,
) -> Dict[str, object]:
    """Row-lock ``ids`` of ``model`` in sorted id order.

    With ``skip_locked`` rows held by another transaction are left out of
    the result instead of waiting for them.
    """
    ids = sorted(set(ids))
    if not ids:
        return {}
    stmt = (
        select(model)
        .where(model.id.in_(ids))
        .order_by(model.id)
        .with_for_update(skip_locked=skip_locked)
        .execution_options(populate_existing=True)
    )
    rows = (await session.execute(stmt)).scalars().all()
    return {r.id: r for r in rows}


# ------------------------------------------------------------------------------
# usage counts
# ------------------------------------------------------------------------------
async def _pending_by(
    session: AsyncSession, column, ids: List[str],
    exclude_order_id: Optional[str] = None,
) -> Dict[str, int]:
    stmt = (
        select(column, func.coalesce(func.sum(OrderItem.quantity), 0))
        .join(Order, Order.id == OrderItem.order_id)
        .where(column.in_(ids), Order.status == "pending")
        .group_by(column)
    )
    if exclude_order_id is not None:
        stmt = stmt.where(Order.id != exclude_order_id)
    return {k: int(v) for k, v in (await session.execute(stmt)).all()}


async def _paid_by(
    session: AsyncSession, column, ids: List[str],
    exclude_order_id: Optional[str] = None,
) -> Dict[str, int]:
    stmt = (
        select(column, func.coalesce(func.sum(OrderItem.quantity), 0))
        .join(Order, Order.id == OrderItem.order_id)
        .where(column.in_(ids), Order.status == "paid")
        .group_by(column)
    )
    if exclude_order_id is not None:
        stmt = stmt.where(Order.id != exclude_order_id)
    return {k: int(v) for k, v in (await session.execute(stmt)).all()}


async def _issued_tickets(
    session: AsyncSession, ids: List[str],
    exclude_order_id: Optional[str] = None,
) -> Dict[str, int]:
    stmt = (
        select(TicketInstance.ticket_type_id, func.count(TicketInstance.id))
        .where(
            TicketInstance.ticket_type_id.in_(ids),
            TicketInstance.status.in_(LIVE_TICKET_STATUSES),
        )
        .group_by(TicketInstance.ticket_type_id)
    )
    if exclude_order_id is not None:
        stmt = stmt.where(TicketInstance.order_id != exclude_order_id)
    return {k: int(v) for k, v in (await session.execute(stmt)).all()}


async def ticket_usage(
    session: AsyncSession, ids: Iterable[str]
) -> Dict[str, Usage]:
    ids = sorted(set(ids))
    if not ids:
        return {}
    issued = await _issued_tickets(session, ids)
    pending = await _pending_by(session, OrderItem.ticket_type_id, ids)
    return {
        i: Usage(issued=issued.get(i, 0), pending=pending.get(i, 0))
        for i in ids
    }


async def product_usage(
    session: AsyncSession, ids: Iterable[str]
) -> Dict[str, Usage]:
    ids = sorted(set(ids))
    if not ids:
        return {}
    paid = await _paid_by(session, OrderItem.product_id, ids)
    pending = await _pending_by(session, OrderItem.product_id, ids)
    return {
        i: Usage(issued=paid.get(i, 0), pending=pending.get(i, 0))
        for i in ids
    }


async def variant_usage(
    session: AsyncSession, ids: Iterable[str]
) -> Dict[str, Usage]:
    ids = sorted(set(ids))
    if not ids:
        return {}
    paid = await _paid_by(session, OrderItem.variant_id, ids)
    pending = await _pending_by(session, OrderItem.variant_id, ids)
    return {
        i: Usage(issued=paid.get(i, 0), pending=pending.get(i, 0))
        for i in ids
    }


# ------------------------------------------------------------------------------
# confirmation-time re-check
# ------------------------------------------------------------------------------
async def final_shortages(
    session: AsyncSession, order_id: str
) -> List[dict]:
    """Re-check capacity for a pending order that is about to become paid.

    Locks every inventory row the order touches (waiting for other holders,
    sorted id order) and compares the order's quantities against committed
    usage only. Other pending orders are not counted: they have not been
    confirmed and may never be.

    Returns one entry per short line, empty when the order fits.
    """
    items = (await session.execute(
        select(OrderItem).where(OrderItem.order_id == order_id)
    )).scalars().all()

    want_tickets: Dict[str, int] = {}
    want_products: Dict[str, int] = {}
    want_variants: Dict[str, int] = {}
    for it in items:
        if it.ticket_type_id:
            want_tickets[it.ticket_type_id] = (
                want_tickets.get(it.ticket_type_id, 0) + it.quantity
            )
        else:
            want_products[it.product_id] = (
                want_products.get(it.product_id, 0) + it.quantity
            )
            if it.variant_id:
                want_variants[it.variant_id] = (
                    want_variants.get(it.variant_id, 0) + it.quantity
                )

    tickets = await lock_rows(session, TicketType, want_tickets,
                              skip_locked=False)
    products = await lock_rows(session, Product, want_products,
                               skip_locked=False)
    variants = await lock_rows(session, ProductVariant, want_variants,
                               skip_locked=False)

    short: List[dict] = []

    if want_tickets:
        issued = await _issued_tickets(session, list(want_tickets),
                                       exclude_order_id=order_id)
        for tid, qty in sorted(want_tickets.items()):
            row = tickets.get(tid)
            cap = row.capacity_total if row is not None else None
            if cap is None:
                continue
            left = cap - issued.get(tid, 0)
            if left < qty:
                short.append({"inventory_id": tid, "kind": "ticket",
                              "requested": qty, "available": max(left, 0)})

    if want_products:
        paid = await _paid_by(session, OrderItem.product_id,
                              list(want_products), exclude_order_id=order_id)
        for pid, qty in sorted(want_products.items()):
            row = products.get(pid)
            cap = row.capacity_total if row is not None else None
            if cap is None:
                continue
            left = cap - paid.get(pid, 0)
            if left < qty:
                short.append({"inventory_id": pid, "kind": "product",
                              "requested": qty, "available": max(left, 0)})

    if want_variants:
        paid = await _paid_by(session, OrderItem.variant_id,
                              list(want_variants), exclude_order_id=order_id)
        for vid, qty in sorted(want_variants.items()):
            row = variants.get(vid)
            cap = row.capacity_total if row is not None else None
            if cap is None:
                continue
            left = cap - paid.get(vid, 0)
            if left < qty:
                short.append({"inventory_id": vid, "kind": "variant",
                              "requested": qty, "available": max(left, 0)})

    return short


# ------------------------------------------------------------------------------
# read model
# ------------------------------------------------------------------------------
def _row(id_: str, name: str, capacity: Optional[int], usage: Usage,
         on_sale: bool) -> dict:
    left = available(capacity, usage)
    return {
        "id": id_,
        "name": name,
        "capacity": capacity,
        "issued": usage.issued,
        "pending": usage.pending,
        "available": None if left is None else max(left, 0),
        "sold_out": left is not None and left <= 0,
        "on_sale": on_sale,
    }


def _window_open(start: Optional[float], end: Optional[float],
                 now: float) -> bool:
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


async def inventory_snapshot(db: GatedAsyncSession, event_id: str) -> dict:
    now = time.time()
    async with db.gated():
        async with db.session.begin():
            s = db.session
            ticket_types = (await s.execute(
                select(TicketType)
                .where(TicketType.event_id == event_id,
                       TicketType.deleted_at.is_(None))
                .order_by(TicketType.name, TicketType.id)
            )).scalars().all()
            products = (await s.execute(
                select(Product)
                .where(Product.event_id == event_id,
                       Product.deleted_at.is_(None))
                .order_by(Product.name, Product.id)
            )).scalars().all()
            variants: List[ProductVariant] = []
            if products:
                variants = (await s.execute(
                    select(ProductVariant)
                    .where(ProductVariant.product_id.in_(
                        [p.id for p in products]))
                    .order_by(ProductVariant.name, ProductVariant.id)
                )).scalars().all()

            tu = await ticket_usage(s, [t.id for t in ticket_types])
            pu = await product_usage(s, [p.id for p in products])
            vu = await variant_usage(s, [v.id for v in variants])

    by_product: Dict[str, List[dict]] = {}
    for v in variants:
        by_product.setdefault(v.product_id, []).append(
            _row(v.id, v.name, v.capacity_total, vu[v.id], v.is_active)
        )

    out_products = []
    for p in products:
        row = _row(p.id, p.name, p.capacity_total, pu[p.id],
                   p.is_active and _window_open(p.sales_start, p.sales_end,
                                                now))
        row["variants"] = by_product.get(p.id, [])
        out_products.append(row)

    return {
        "event_id": event_id,
        "ticket_types": [
            _row(t.id, t.name, t.capacity_total, tu[t.id],
                 t.status == "published"
                 and _window_open(t.sales_start, t.sales_end, now))
            for t in ticket_types
        ],
        "products": out_products,
        "timestamp": now,
    }

