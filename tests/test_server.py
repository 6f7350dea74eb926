import pytest

from boxoffice.model.orm import Order

pytestmark = pytest.mark.asyncio


async def _checkout(client, catalog, quantity=1, **extra):
    return await client.post("/api/orders", json={
        "event_id": catalog.event_id,
        "email": "guest@example.com",
        "items": [{"inventory_id": catalog.ticket_type_id,
                   "quantity": quantity, **extra}],
    })


async def _paid_checkout(client, mockpay, catalog, quantity=1) -> dict:
    resp = await _checkout(client, catalog, quantity)
    assert resp.status_code == 201
    body = resp.json()
    pid = body["checkout_redirect_url"].rsplit("/", 1)[-1]
    mockpay.set_payment_status(pid, "paid")
    hook = await client.post("/payments/webhook", data={"id": pid})
    assert hook.status_code == 200
    return body


async def test_healthz_and_request_id(client) -> None:
    resp = await client.get("/healthz", headers={"X-Request-ID": "abc123"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert resp.headers["x-request-id"] == "abc123"


async def test_checkout_ignores_client_prices(client, catalog) -> None:
    resp = await _checkout(client, catalog, quantity=2, unit_price=1)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["total_amount"] == 2 * catalog.price
    assert body["items"][0]["unit_price"] == catalog.price
    assert body["checkout_redirect_url"].startswith("/mockpay/")
    assert body["access_token"]


async def test_checkout_validation_errors(client, catalog) -> None:
    resp = await _checkout(client, catalog, quantity=0)
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_FAILED"

    resp = await client.post("/api/orders", json={"email": "x@example.com"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_FAILED"
    assert body["details"]


async def test_checkout_sold_out(client, catalog) -> None:
    resp = await _checkout(client, catalog, quantity=3)
    assert resp.status_code == 409
    body = resp.json()
    assert body["code"] == "CAPACITY_EXCEEDED"
    assert body["details"]["per_item"][0]["available"] == 2


async def test_capacity_check(client, catalog) -> None:
    resp = await client.post("/api/capacity/check", json={
        "event_id": catalog.event_id,
        "items": [{"inventory_id": catalog.ticket_type_id, "quantity": 2}],
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["valid"] is True
    assert body["total_price"] == 2 * catalog.price

    resp = await client.post("/api/capacity/check", json={
        "event_id": catalog.event_id,
        "items": [{"inventory_id": catalog.ticket_type_id, "quantity": 5}],
    })
    body = resp.json()
    assert body["valid"] is False
    assert body["per_item"][0]["rejection_reason"] == "INSUFFICIENT_CAPACITY"


async def test_webhook_and_lookup(client, mockpay, catalog) -> None:
    body = await _paid_checkout(client, mockpay, catalog, quantity=2)

    resp = await client.get("/api/orders/lookup",
                            params={"token": body["access_token"]})
    assert resp.status_code == 200
    order = resp.json()
    assert order["status"] == "paid"
    assert len(order["tickets"]) == 2
    assert all("scan_token" not in t for t in order["tickets"])

    resp = await client.get("/api/orders/lookup", params={"token": "nope"})
    assert resp.status_code == 404
    assert resp.json()["code"] == "ORDER_NOT_FOUND"


async def test_webhook_without_id(client) -> None:
    resp = await client.post("/payments/webhook", data={})
    assert resp.status_code == 400

    resp = await client.post("/payments/webhook", data={"id": "tr_unknown"})
    assert resp.status_code == 200
    assert resp.text == "OK"


async def test_mockpay_emit(client, mockpay, catalog) -> None:
    body = (await _checkout(client, catalog)).json()
    pid = body["checkout_redirect_url"].rsplit("/", 1)[-1]

    resp = await client.post(f"/mockpay/{pid}/emit", data={"t": "failed"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "failed"
    assert mockpay.payments[pid]["status"] == "failed"

    resp = await client.post(f"/mockpay/{pid}/emit", data={"t": "bogus"})
    assert resp.status_code == 400
    resp = await client.post("/mockpay/tr_nope/emit", data={"t": "paid"})
    assert resp.status_code == 404


async def test_resume_payment_endpoint(client, catalog) -> None:
    body = (await _checkout(client, catalog)).json()
    resp = await client.post(
        f"/api/orders/{body['order_id']}/payment",
        json={"token": body["access_token"]},
    )
    assert resp.status_code == 200
    assert resp.json()["checkout_redirect_url"] == \
        body["checkout_redirect_url"]


async def test_refund_requires_staff(client, mockpay, catalog,
                                     staff_headers) -> None:
    body = await _paid_checkout(client, mockpay, catalog)
    payload = {"order_id": body["order_id"],
               "idempotency_key": "api-refund-1"}

    resp = await client.post("/api/refunds", json=payload)
    assert resp.status_code == 401

    resp = await client.post("/api/refunds", json=payload,
                             headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401

    resp = await client.post("/api/refunds", json=payload,
                             headers=staff_headers(role="staff"))
    assert resp.status_code == 403
    assert resp.json()["code"] == "FORBIDDEN"

    resp = await client.post("/api/refunds", json=payload,
                             headers=staff_headers(org_id="org-2"))
    assert resp.status_code == 404

    resp = await client.post("/api/refunds", json=payload,
                             headers=staff_headers())
    assert resp.status_code == 201
    refund = resp.json()
    assert refund["amount"] == catalog.price
    assert refund["is_full_refund"] is True
    assert refund["idempotent"] is False

    resp = await client.post("/api/refunds", json=payload,
                             headers=staff_headers())
    assert resp.status_code == 201
    assert resp.json()["idempotent"] is True

    resp = await client.get(f"/api/orders/{body['order_id']}/refunds",
                            headers=staff_headers())
    assert resp.status_code == 200
    assert resp.json()["refundable_amount"] == 0


async def test_refund_key_is_validated(client, staff_headers) -> None:
    resp = await client.post(
        "/api/refunds", json={"order_id": "x", "idempotency_key": "short"},
        headers=staff_headers(),
    )
    assert resp.status_code == 400


async def test_free_order_scan(client, make_catalog, staff_headers) -> None:
    c = await make_catalog(price=0)
    resp = await _checkout(client, c)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "paid"
    token = body["tickets"][0]["scan_token"]

    resp = await client.post("/api/tickets/scan", json={"token": token})
    assert resp.status_code == 401

    resp = await client.post("/api/tickets/scan", json={"token": token},
                             headers=staff_headers(role="staff"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "checked_in"

    resp = await client.post("/api/tickets/scan", json={"token": token},
                             headers=staff_headers(role="staff"))
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_CHECKED_IN"

    resp = await client.post("/api/tickets/scan", json={"token": "unknown"},
                             headers=staff_headers(role="staff"))
    assert resp.status_code == 404


async def test_issue_tickets_endpoint(client, mockpay, catalog,
                                      staff_headers) -> None:
    body = await _paid_checkout(client, mockpay, catalog)
    resp = await client.post(f"/api/orders/{body['order_id']}/tickets",
                             headers=staff_headers())
    assert resp.status_code == 200
    tickets = resp.json()["tickets"]
    assert len(tickets) == 1
    assert "scan_token" not in tickets[0]


async def test_inventory_and_timings(client, catalog, staff_headers) -> None:
    await _checkout(client, catalog)
    resp = await client.get(f"/api/events/{catalog.event_id}/inventory")
    assert resp.status_code == 200
    row = resp.json()["ticket_types"][0]
    assert row["capacity"] == 2
    assert row["pending"] == 1
    assert row["available"] == 1

    resp = await client.get("/api/admin/timings")
    assert resp.status_code == 401
    resp = await client.get("/api/admin/timings", headers=staff_headers())
    assert resp.status_code == 200
    assert "api.checkout" in resp.json()


async def test_checkout_with_bearer_sets_buyer(client, catalog, fetch,
                                               staff_headers) -> None:
    resp = await client.post("/orders", headers=staff_headers(), json={
        "event_id": catalog.event_id,
        "email": "staff@example.com",
        "items": [{"inventory_id": catalog.ticket_type_id, "quantity": 1}],
    })
    assert resp.status_code == 201
    body = resp.json()
    assert "checkout_redirect_url" in body
    order = await fetch(Order, body["order_id"])
    assert order.user_id == "staff-1"


async def test_checkout_with_bad_bearer_is_guest(client, catalog,
                                                 fetch) -> None:
    resp = await client.post(
        "/orders", headers={"Authorization": "Bearer garbage"},
        json={
            "event_id": catalog.event_id,
            "email": "guest@example.com",
            "items": [{"inventory_id": catalog.ticket_type_id,
                       "quantity": 1}],
        },
    )
    assert resp.status_code == 201
    order = await fetch(Order, resp.json()["order_id"])
    assert order.user_id is None


async def test_unprefixed_lookup_and_refund_routes(client, mockpay, catalog,
                                                   staff_headers) -> None:
    body = await _paid_checkout(client, mockpay, catalog)
    resp = await client.get("/orders/lookup",
                            params={"token": body["access_token"]})
    assert resp.status_code == 200
    assert resp.json()["status"] == "paid"

    resp = await client.post("/refunds", headers=staff_headers(), json={
        "order_id": body["order_id"], "idempotency_key": "plain-route-1",
    })
    assert resp.status_code == 201
    assert resp.json()["is_full_refund"] is True
