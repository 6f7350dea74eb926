"""Mollie v2 REST adapter."""
from __future__ import annotations
from typing import Any, Optional

import httpx
import structlog

from ..config import MOLLIE_API_URL, PROVIDER_TIMEOUT_SECONDS
from ..errors import ProviderRejected, ProviderUnavailable
from ..infra.timings import timeit
from .base import PaymentAdapter, PaymentInfo, RefundInfo, to_major, to_minor

logger = structlog.get_logger(__name__)


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500]


def _payment(data: dict) -> PaymentInfo:
    checkout = ((data.get("_links") or {}).get("checkout") or {}).get("href")
    return {
        "id": data["id"],
        "status": data["status"],
        "amount": to_minor(data["amount"]["value"]),
        "currency": data["amount"]["currency"],
        "checkout_url": checkout,
        "metadata": data.get("metadata") or {},
    }


def _refund(data: dict) -> RefundInfo:
    return {
        "id": data["id"],
        "payment_id": data.get("paymentId", ""),
        "status": data["status"],
        "amount": to_minor(data["amount"]["value"]),
        "currency": data["amount"]["currency"],
    }


class MolliePay(PaymentAdapter):
    name = "mollie"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = MOLLIE_API_URL,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("MOLLIE_API_KEY is not configured")
        self.http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _request(
        self, method: str, path: str, *, json: Optional[dict] = None,
        headers: Optional[dict] = None, allow_404: bool = False,
    ) -> Optional[dict]:
        try:
            async with timeit(f"mollie.{method.lower()}"):
                resp = await self.http.request(
                    method, path, json=json, headers=headers
                )
        except httpx.TimeoutException as e:
            logger.warning("mollie_timeout", method=method, path=path)
            raise ProviderUnavailable(f"mollie timeout on {method} {path}") \
                from e
        except httpx.TransportError as e:
            logger.warning("mollie_unreachable", method=method, path=path,
                           error=str(e))
            raise ProviderUnavailable(f"mollie unreachable: {e}") from e

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 500:
            raise ProviderUnavailable(
                f"mollie returned {resp.status_code}",
                status=resp.status_code, body=_body(resp),
            )
        if resp.status_code >= 400:
            body = _body(resp)
            detail = body.get("detail") if isinstance(body, dict) else body
            logger.warning("mollie_rejected", method=method, path=path,
                           status=resp.status_code, detail=detail)
            raise ProviderRejected(
                f"mollie rejected request: {detail}",
                status=resp.status_code, body=body,
            )
        return resp.json()

    async def create_payment(
        self, *, amount: int, currency: str, description: str,
        redirect_url: str, webhook_url: str, metadata: dict,
    ) -> PaymentInfo:
        data = await self._request("POST", "/payments", json={
            "amount": {"currency": currency, "value": to_major(amount)},
            "description": description,
            "redirectUrl": redirect_url,
            "webhookUrl": webhook_url,
            "metadata": metadata,
        })
        return _payment(data)

    async def get_payment(self, payment_id: str) -> Optional[PaymentInfo]:
        data = await self._request(
            "GET", f"/payments/{payment_id}", allow_404=True
        )
        return None if data is None else _payment(data)

    async def create_refund(
        self, *, payment_id: str, amount: int, currency: str,
        description: str, metadata: dict, idempotency_key: str,
    ) -> RefundInfo:
        data = await self._request(
            "POST", f"/payments/{payment_id}/refunds",
            json={
                "amount": {"currency": currency, "value": to_major(amount)},
                "description": description,
                "metadata": metadata,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        out = _refund(data)
        if not out["payment_id"]:
            out["payment_id"] = payment_id
        return out

    async def get_refund(
        self, payment_id: str, refund_id: str
    ) -> Optional[RefundInfo]:
        data = await self._request(
            "GET", f"/payments/{payment_id}/refunds/{refund_id}",
            allow_404=True,
        )
        if data is None:
            return None
        out = _refund(data)
        if not out["payment_id"]:
            out["payment_id"] = payment_id
        return out
