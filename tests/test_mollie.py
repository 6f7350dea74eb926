import json

import httpx
import pytest

from boxoffice.errors import ProviderRejected, ProviderUnavailable
from boxoffice.payments import MolliePay
from boxoffice.payments.base import to_major, to_minor

BASE = "https://api.mollie.test/v2"


def _payment_json(pid: str = "tr_abc", status: str = "open") -> dict:
    return {
        "resource": "payment",
        "id": pid,
        "status": status,
        "amount": {"currency": "EUR", "value": "12.50"},
        "metadata": {"order_id": "o1"},
        "_links": {"checkout": {"href": "https://pay.mollie.test/c/abc"}},
    }


def _adapter(handler) -> MolliePay:
    return MolliePay("test_key", base_url=BASE,
                     transport=httpx.MockTransport(handler))


def test_amount_conversion() -> None:
    assert to_major(1250) == "12.50"
    assert to_major(5) == "0.05"
    assert to_major(0) == "0.00"
    assert to_minor("12.50") == 1250
    assert to_minor("7") == 700


@pytest.mark.asyncio
async def test_create_payment() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json=_payment_json())

    pay = _adapter(handler)
    info = await pay.create_payment(
        amount=1250, currency="EUR", description="Order 1",
        redirect_url="https://shop.test/return",
        webhook_url="https://shop.test/payments/webhook",
        metadata={"order_id": "o1"},
    )
    await pay.aclose()

    assert seen["path"] == "/v2/payments"
    assert seen["auth"] == "Bearer test_key"
    assert seen["body"]["amount"] == {"currency": "EUR", "value": "12.50"}
    assert seen["body"]["webhookUrl"] == "https://shop.test/payments/webhook"
    assert info == {
        "id": "tr_abc",
        "status": "open",
        "amount": 1250,
        "currency": "EUR",
        "checkout_url": "https://pay.mollie.test/c/abc",
        "metadata": {"order_id": "o1"},
    }


@pytest.mark.asyncio
async def test_get_payment_unknown_is_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"status": 404, "detail": "nope"})

    pay = _adapter(handler)
    assert await pay.get_payment("tr_missing") is None
    await pay.aclose()


@pytest.mark.asyncio
async def test_timeout_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    pay = _adapter(handler)
    with pytest.raises(ProviderUnavailable) as exc:
        await pay.get_payment("tr_abc")
    assert exc.value.retryable is True
    await pay.aclose()


@pytest.mark.asyncio
async def test_server_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    pay = _adapter(handler)
    with pytest.raises(ProviderUnavailable) as exc:
        await pay.get_payment("tr_abc")
    assert exc.value.status == 503
    await pay.aclose()


@pytest.mark.asyncio
async def test_client_error_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            422, json={"status": 422, "detail": "amount too high"}
        )

    pay = _adapter(handler)
    with pytest.raises(ProviderRejected) as exc:
        await pay.create_refund(
            payment_id="tr_abc", amount=999999, currency="EUR",
            description="refund", metadata={}, idempotency_key="k1",
        )
    assert exc.value.retryable is False
    assert "amount too high" in str(exc.value)
    await pay.aclose()


@pytest.mark.asyncio
async def test_refund_sends_idempotency_key() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("idempotency-key")
        return httpx.Response(201, json={
            "resource": "refund",
            "id": "re_123",
            "status": "pending",
            "amount": {"currency": "EUR", "value": "5.00"},
        })

    pay = _adapter(handler)
    info = await pay.create_refund(
        payment_id="tr_abc", amount=500, currency="EUR",
        description="refund", metadata={}, idempotency_key="key-123",
    )
    await pay.aclose()

    assert seen == {"path": "/v2/payments/tr_abc/refunds", "key": "key-123"}
    assert info == {"id": "re_123", "payment_id": "tr_abc",
                    "status": "pending", "amount": 500, "currency": "EUR"}


def test_webhook_form_parsing() -> None:
    pay = _adapter(lambda request: httpx.Response(200))
    assert pay.parse_webhook({"id": " tr_abc "}) == "tr_abc"
    assert pay.parse_webhook({"id": ""}) is None
    assert pay.parse_webhook({}) is None
    assert pay.is_refund_id("re_123")
    assert not pay.is_refund_id("tr_123")


def test_missing_api_key() -> None:
    with pytest.raises(ValueError):
        MolliePay("")
