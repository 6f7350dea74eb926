# model/reservation.py
"""
Capacity reservation lock.

check_cart() runs inside the caller's transaction. It locks the inventory
rows a cart touches (skip-locked, sorted ids, fail fast) and validates the
cart under that lock. The lock is released when the caller's transaction
ends, so an order persisted in the same transaction is counted as pending
by the next checkout that gets the rows.
"""
from __future__ import annotations
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CartValidationError
from . import inventory
from .orm import (
    Product, ProductTicketRestriction, ProductVariant, TicketType,
)

# per-line rejection reasons
NOT_FOUND = "NOT_FOUND"
NOT_ON_SALE = "NOT_ON_SALE"
LOCKED = "LOCKED"
SALES_NOT_STARTED = "SALES_NOT_STARTED"
SALES_ENDED = "SALES_ENDED"
MAX_PER_ORDER_EXCEEDED = "MAX_PER_ORDER_EXCEEDED"
INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
REQUIRES_TICKET = "REQUIRES_TICKET"

# reason -> top-level error code, first match wins
_CODE_FOR_REASON = (
    (INSUFFICIENT_CAPACITY, "CAPACITY_EXCEEDED"),
    (LOCKED, "CAPACITY_EXCEEDED"),
    (NOT_FOUND, "ITEM_UNAVAILABLE"),
    (NOT_ON_SALE, "ITEM_UNAVAILABLE"),
    (SALES_NOT_STARTED, "SALES_CLOSED"),
    (SALES_ENDED, "SALES_CLOSED"),
    (MAX_PER_ORDER_EXCEEDED, "MAX_PER_ORDER_EXCEEDED"),
    (REQUIRES_TICKET, "PRODUCT_RESTRICTED"),
)


@dataclass
class CartLine:
    inventory_id: str
    quantity: int


@dataclass
class LineResult:
    inventory_id: str
    quantity: int
    kind: Optional[str] = None  # ticket | product | variant
    name: Optional[str] = None
    ticket_type_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    unit_price: int = 0
    line_total: int = 0
    vat_percentage: int = 0
    available: Optional[int] = None
    rejection_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rejection_reason is None

    def public(self) -> dict:
        d = asdict(self)
        if d["rejection_reason"] is None:
            d.pop("rejection_reason")
        return d


@dataclass
class Reservation:
    valid: bool
    total_price: int
    items: List[LineResult] = field(default_factory=list)

    @property
    def rejected(self) -> List[LineResult]:
        return [i for i in self.items if not i.ok]

    @property
    def retryable(self) -> bool:
        return bool(self.rejected) and all(
            i.rejection_reason == LOCKED for i in self.rejected
        )

    def error_code(self) -> Optional[str]:
        reasons = {i.rejection_reason for i in self.rejected}
        for reason, code in _CODE_FOR_REASON:
            if reason in reasons:
                return code
        return None

    def public(self) -> dict:
        return {
            "valid": self.valid,
            "total_price": self.total_price,
            "per_item": [i.public() for i in self.items],
        }


def coalesce_cart(lines: Iterable) -> List[CartLine]:
    """Validate quantities and merge duplicate ids. Accepts CartLine objects
    or plain ``{"inventory_id", "quantity"}`` mappings.
    """
    merged: Dict[str, int] = {}
    order: List[str] = []
    for raw in lines:
        if isinstance(raw, CartLine):
            inv, qty = raw.inventory_id, raw.quantity
        else:
            inv, qty = raw.get("inventory_id"), raw.get("quantity")
        if not inv or not isinstance(inv, str):
            raise CartValidationError(
                "every item needs an inventory_id",
                details={"inventory_id": inv},
            )
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise CartValidationError(
                "quantity must be a positive integer",
                details={"inventory_id": inv, "quantity": qty},
            )
        if inv not in merged:
            order.append(inv)
            merged[inv] = 0
        merged[inv] += qty
    if not merged:
        raise CartValidationError("cart is empty")
    return [CartLine(inventory_id=i, quantity=merged[i]) for i in order]


def _window_reason(start: Optional[float], end: Optional[float],
                   now: float) -> Optional[str]:
    if start is not None and now < start:
        return SALES_NOT_STARTED
    if end is not None and now > end:
        return SALES_ENDED
    return None


async def check_cart(
    session: AsyncSession,
    event_id: str,
    lines: List[CartLine],
    now: Optional[float] = None,
) -> Reservation:
    """Validate ``lines`` for ``event_id`` under row locks.

    Must be called inside an open transaction on ``session``. Prices come
    from the stored rows only.
    """
    now = time.time() if now is None else now
    ids = [ln.inventory_id for ln in lines]

    # resolve ids without locking, to tell "missing" from "busy"
    tt_known = {
        t.id: t for t in (await session.execute(
            select(TicketType).where(
                TicketType.id.in_(ids),
                TicketType.event_id == event_id,
                TicketType.deleted_at.is_(None),
            )
        )).scalars().all()
    }
    var_known = {
        v.id: v for v in (await session.execute(
            select(ProductVariant)
            .join(Product, Product.id == ProductVariant.product_id)
            .where(
                ProductVariant.id.in_(ids),
                Product.event_id == event_id,
                Product.deleted_at.is_(None),
            )
        )).scalars().all()
    }
    pr_ids = set(ids) | {v.product_id for v in var_known.values()}
    pr_known = {
        p.id: p for p in (await session.execute(
            select(Product).where(
                Product.id.in_(pr_ids),
                Product.event_id == event_id,
                Product.deleted_at.is_(None),
            )
        )).scalars().all()
    }

    # lock: ticket types, products, variants; sorted within each
    tt_locked = await inventory.lock_rows(
        session, TicketType, tt_known, skip_locked=True)
    pr_locked = await inventory.lock_rows(
        session, Product, pr_known, skip_locked=True)
    var_locked = await inventory.lock_rows(
        session, ProductVariant, var_known, skip_locked=True)

    tu = await inventory.ticket_usage(session, tt_locked)
    pu = await inventory.product_usage(session, pr_locked)
    vu = await inventory.variant_usage(session, var_locked)

    # quantity per product across all of its variant lines
    product_qty: Dict[str, int] = {}
    for ln in lines:
        if ln.inventory_id in var_known:
            pid = var_known[ln.inventory_id].product_id
        elif ln.inventory_id in pr_known:
            pid = ln.inventory_id
        else:
            continue
        product_qty[pid] = product_qty.get(pid, 0) + ln.quantity

    results: List[LineResult] = []
    for ln in lines:
        inv = ln.inventory_id
        res = LineResult(inventory_id=inv, quantity=ln.quantity)
        results.append(res)

        if inv in tt_known:
            t = tt_known[inv]
            res.kind, res.name, res.ticket_type_id = "ticket", t.name, t.id
            res.unit_price = int(t.price)
            if inv not in tt_locked:
                res.rejection_reason = LOCKED
                continue
            t = tt_locked[inv]
            res.available = inventory.available(t.capacity_total, tu[inv])
            if t.status != "published":
                res.rejection_reason = NOT_ON_SALE
            elif _window_reason(t.sales_start, t.sales_end, now):
                res.rejection_reason = _window_reason(
                    t.sales_start, t.sales_end, now)
            elif t.max_per_order is not None and ln.quantity > t.max_per_order:
                res.rejection_reason = MAX_PER_ORDER_EXCEEDED
            elif res.available is not None and res.available < ln.quantity:
                res.rejection_reason = INSUFFICIENT_CAPACITY
            continue

        variant = var_known.get(inv)
        pid = variant.product_id if variant is not None else inv
        p = pr_known.get(pid)
        if p is None:
            res.rejection_reason = NOT_FOUND
            continue

        res.kind = "variant" if variant is not None else "product"
        res.product_id = p.id
        res.name = p.name if variant is None else f"{p.name} ({variant.name})"
        res.unit_price = int(p.price)
        res.vat_percentage = int(p.vat_percentage or 0)
        if variant is not None:
            res.variant_id = variant.id

        if pid not in pr_locked or (
            variant is not None and inv not in var_locked
        ):
            res.rejection_reason = LOCKED
            continue

        p = pr_locked[pid]
        p_left = inventory.available(p.capacity_total, pu[pid])
        v_left = None
        if variant is not None:
            variant = var_locked[inv]
            v_left = inventory.available(variant.capacity_total, vu[inv])
        lefts = [x for x in (p_left, v_left) if x is not None]
        res.available = min(lefts) if lefts else None

        if not p.is_active or (variant is not None and not variant.is_active):
            res.rejection_reason = NOT_ON_SALE
        elif _window_reason(p.sales_start, p.sales_end, now):
            res.rejection_reason = _window_reason(
                p.sales_start, p.sales_end, now)
        elif p.max_per_order is not None and (
            product_qty.get(pid, 0) > p.max_per_order
        ):
            res.rejection_reason = MAX_PER_ORDER_EXCEEDED
        elif p_left is not None and p_left < product_qty.get(pid, 0):
            res.rejection_reason = INSUFFICIENT_CAPACITY
        elif v_left is not None and v_left < ln.quantity:
            res.rejection_reason = INSUFFICIENT_CAPACITY

    # restricted products need one of their ticket types in the same cart
    restricted = [r for r in results if r.ok and r.product_id]
    if restricted:
        rows = (await session.execute(
            select(ProductTicketRestriction).where(
                ProductTicketRestriction.product_id.in_(
                    {r.product_id for r in restricted})
            )
        )).scalars().all()
        allowed: Dict[str, set] = {}
        for row in rows:
            allowed.setdefault(row.product_id, set()).add(row.ticket_type_id)
        in_cart = {r.ticket_type_id for r in results
                   if r.ok and r.ticket_type_id}
        for r in restricted:
            need = allowed.get(r.product_id)
            if need and not (need & in_cart):
                r.rejection_reason = REQUIRES_TICKET

    for r in results:
        r.line_total = r.unit_price * r.quantity

    valid = all(r.ok for r in results)
    total = sum(r.line_total for r in results if r.ok)
    return Reservation(valid=valid, total_price=total, items=results)
