#!/usr/bin/env python3
"""
BoxOffice load client (async)

Simulates the guest checkout flow against a server running MockPay:
  1) POST /orders  (event_id, items, email) -> {order_id, access_token,
     checkout_redirect_url}
  2) Extract the payment id from checkout_redirect_url (/mockpay/{pid})
  3) POST /mockpay/{pid}/emit  (t=paid|failed|canceled)
  4) Poll GET /orders/lookup?token=... until status != pending

After all workers finish it reads the inventory and checks that the units
sold never exceed the ticket type's capacity.

Usage:
  python -m boxoffice.load_client --base http://localhost:8000 \
      --event-id <id> --ticket-type-id <id> --total 200 --concurrency 50

Notes:
- Seed a small capacity (python -m boxoffice.cli seed-demo --capacity 20)
  to make the sold-out race visible.
"""

import asyncio
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

FINAL = ("paid", "failed", "cancelled", "overbooked")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # paid/failed/cancelled/overbooked/SOLD_OUT/TIMEOUT/ERROR
    quantity: int = 1
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until non-pending observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.results if r.outcome in FINAL]
        lat = [r.t_observed for r in done if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "paid": self.count("paid"),
            "units_paid": sum(
                r.quantity for r in self.results if r.outcome == "paid"
            ),
            "failed": self.count("failed"),
            "cancelled": self.count("cancelled"),
            "overbooked": self.count("overbooked"),
            "sold_out": self.count("SOLD_OUT"),
            "timeout": self.count("TIMEOUT"),
            "error": self.count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"PAID: {int(s['paid'])} ({int(s['units_paid'])} units)   "
            f"FAILED: {int(s['failed'])}   "
            f"CANCELLED: {int(s['cancelled'])}   "
            f"OVERBOOKED: {int(s['overbooked'])}"
        )
        print(
            f"SOLD_OUT: {int(s['sold_out'])}   TIMEOUT: {int(s['timeout'])}"
            f"   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (observed order resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    ticket_type_id: str,
    quantity: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR", quantity=quantity)

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/orders",
            json={
                "event_id": event_id,
                "email": _rand_email(),
                "items": [{"inventory_id": ticket_type_id,
                           "quantity": quantity}],
            },
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0
    if resp.status_code == 409:
        r.ok = True
        r.outcome = "SOLD_OUT"
        return r
    if resp.status_code != 201:
        r.err = f"checkout HTTP {resp.status_code}"
        return r
    j = resp.json()
    token = j["access_token"]
    redirect = j.get("checkout_redirect_url") or ""

    # 2) checkout_redirect_url is like "/mockpay/{pid}"
    parts = redirect.strip("/").split("/")
    pid = parts[1] if len(parts) >= 2 else None
    if not pid:
        r.err = f"bad checkout_redirect_url: {redirect}"
        return r

    # 3) emit outcome
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{pid}/emit", data={"t": emit_kind}, timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 4) poll until the order leaves pending
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "pending"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(
                f"{base}/orders/lookup", params={"token": token},
                timeout=10.0,
            )
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in FINAL:
                    break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status in FINAL else "TIMEOUT"
    return r


async def fetch_ticket_row(
    client: httpx.AsyncClient, base: str, event_id: str, ticket_type_id: str,
) -> Optional[dict]:
    resp = await client.get(f"{base}/api/events/{event_id}/inventory")
    resp.raise_for_status()
    for row in resp.json()["ticket_types"]:
        if row["id"] == ticket_type_id:
            return row
    return None


async def run_load(
    base: str,
    event_id: str,
    ticket_type_id: str,
    total: int,
    concurrency: int,
    max_quantity: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> tuple[Stats, Optional[dict]]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "BoxOfficeLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "paid"

                res = await one_order(
                    client, base, event_id, ticket_type_id,
                    random.randint(1, max_quantity), emit_kind,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        row = await fetch_ticket_row(client, base, event_id, ticket_type_id)

    return stats, row


def main():
    ap = argparse.ArgumentParser(description="BoxOffice load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event-id", required=True)
    ap.add_argument("--ticket-type-id", required=True)
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--max-quantity", type=int, default=2,
                    help="Tickets per order are drawn from 1..N")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as canceled")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for a final status")
    args = ap.parse_args()

    if args.fail_rate + args.cancel_rate > 0.95:
        print(
            "Warning: combined fail+cancel rate is very high; "
            "few paid outcomes will occur."
        )

    t_start = time.perf_counter()
    stats, row = asyncio.run(run_load(
        base=args.base,
        event_id=args.event_id,
        ticket_type_id=args.ticket_type_id,
        total=args.total,
        concurrency=args.concurrency,
        max_quantity=max(1, args.max_quantity),
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)

    if row is None:
        print("ticket type not found in inventory")
        raise SystemExit(2)
    cap = row["capacity"]
    print(
        f"Inventory: capacity {cap}   issued {row['issued']}   "
        f"pending {row['pending']}"
    )
    if cap is not None and row["issued"] > cap:
        print("❌ OVERSOLD")
        raise SystemExit(1)
    print("✅ no oversell")


if __name__ == "__main__":
    main()
