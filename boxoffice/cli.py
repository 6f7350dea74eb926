#!/usr/bin/env python3
"""
BoxOffice operator commands

  python -m boxoffice.cli init-db
  python -m boxoffice.cli seed-demo --capacity 100
  python -m boxoffice.cli expire-pending [--max-age 3600]
  python -m boxoffice.cli token --user ops --org demo-org --role admin
"""
import argparse
import asyncio

from .auth import issue_token
from .config import CURRENCY, DATABASE_URL, PENDING_ORDER_TTL_SECONDS
from .helpers import new_id, now_ts
from .infra.sql import Database, make_database
from .model.orders import expire_stale_orders
from .model.orm import (
    Base, Event, Product, ProductTicketRestriction, ProductVariant, TicketType,
)


async def init_db(database: Database) -> None:
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_demo(
    database: Database, *, org_id: str, capacity: int, price: int,
) -> dict:
    """One published event with a limited ticket type, a shirt that needs
    that ticket, and a size variant.
    """
    await init_db(database)
    ids = {
        "event_id": new_id(),
        "ticket_type_id": new_id(),
        "product_id": new_id(),
        "variant_id": new_id(),
    }
    async with database.open() as db:
        async with db.gated():
            async with db.session.begin():
                db.session.add(Event(
                    id=ids["event_id"], org_id=org_id, name="Demo Night",
                    status="published", currency=CURRENCY,
                    created_at=now_ts(),
                ))
                await db.session.flush()
                db.session.add(TicketType(
                    id=ids["ticket_type_id"], event_id=ids["event_id"],
                    name="General Admission", price=price,
                    capacity_total=capacity, max_per_order=10,
                    status="published",
                ))
                db.session.add(Product(
                    id=ids["product_id"], event_id=ids["event_id"],
                    name="Tour Shirt", category="merchandise", price=2500,
                    vat_percentage=21, capacity_total=capacity // 2 or 1,
                    max_per_order=4,
                ))
                await db.session.flush()
                db.session.add(ProductVariant(
                    id=ids["variant_id"], product_id=ids["product_id"],
                    name="L", capacity_total=capacity // 4 or 1,
                ))
                db.session.add(ProductTicketRestriction(
                    product_id=ids["product_id"],
                    ticket_type_id=ids["ticket_type_id"],
                ))
    return ids


async def expire_pending(database: Database, max_age: int) -> int:
    async with database.open() as db:
        return await expire_stale_orders(db, max_age)


async def _run(args) -> None:
    database = make_database(args.database_url)
    try:
        if args.cmd == "init-db":
            await init_db(database)
            print("✅ tables created")
        elif args.cmd == "seed-demo":
            ids = await seed_demo(
                database, org_id=args.org, capacity=args.capacity,
                price=args.price,
            )
            for k, v in ids.items():
                print(f"{k}={v}")
        elif args.cmd == "expire-pending":
            n = await expire_pending(database, args.max_age)
            print(f"expired {n} pending order(s)")
    finally:
        await database.engine.dispose()


def main():
    ap = argparse.ArgumentParser(description="BoxOffice operator commands")
    ap.add_argument("--database-url", default=DATABASE_URL)
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="Create all tables")

    seed = sub.add_parser("seed-demo", help="Create a demo event")
    seed.add_argument("--org", default="demo-org")
    seed.add_argument("--capacity", type=int, default=100)
    seed.add_argument("--price", type=int, default=4500,
                      help="Ticket price in cents")

    exp = sub.add_parser("expire-pending",
                         help="Cancel pending orders past their TTL")
    exp.add_argument("--max-age", type=int,
                     default=PENDING_ORDER_TTL_SECONDS,
                     help="Seconds a pending order may stay pending")

    tok = sub.add_parser("token", help="Mint a staff bearer token")
    tok.add_argument("--user", required=True)
    tok.add_argument("--org", required=True)
    tok.add_argument("--role", default="admin")
    tok.add_argument("--ttl", type=int, default=3600)

    args = ap.parse_args()

    if args.cmd == "token":
        print(issue_token(args.user, org_id=args.org, role=args.role,
                          ttl_seconds=args.ttl))
        return

    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
