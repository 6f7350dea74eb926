from __future__ import annotations
import uuid
from typing import Dict, List, Optional

from .base import PaymentAdapter, PaymentInfo, RefundInfo


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """In-process provider. Payments start ``open`` and only move when
    somebody calls set_payment_status (the /mockpay emit endpoint or a test).
    """
    name = "mock"

    def __init__(self) -> None:
        self.payments: Dict[str, PaymentInfo] = {}
        self.refunds: Dict[str, RefundInfo] = {}
        self._refund_keys: Dict[str, str] = {}
        self.calls: List[str] = []

    async def create_payment(
        self, *, amount: int, currency: str, description: str,
        redirect_url: str, webhook_url: str, metadata: dict,
    ) -> PaymentInfo:
        self.calls.append("create_payment")
        pid = f"tr_mock{uuid.uuid4().hex[:16]}"
        self.payments[pid] = {
            "id": pid,
            "status": "open",
            "amount": amount,
            "currency": currency,
            "checkout_url": f"/mockpay/{pid}",
            "metadata": dict(metadata),
        }
        return dict(self.payments[pid])

    async def get_payment(self, payment_id: str) -> Optional[PaymentInfo]:
        self.calls.append("get_payment")
        p = self.payments.get(payment_id)
        return dict(p) if p else None

    def set_payment_status(self, payment_id: str, status: str) -> None:
        self.payments[payment_id]["status"] = status

    async def create_refund(
        self, *, payment_id: str, amount: int, currency: str,
        description: str, metadata: dict, idempotency_key: str,
    ) -> RefundInfo:
        self.calls.append("create_refund")
        if idempotency_key in self._refund_keys:
            return dict(self.refunds[self._refund_keys[idempotency_key]])
        rid = f"re_mock{uuid.uuid4().hex[:16]}"
        self.refunds[rid] = {
            "id": rid,
            "payment_id": payment_id,
            "status": "pending",
            "amount": amount,
            "currency": currency,
        }
        self._refund_keys[idempotency_key] = rid
        return dict(self.refunds[rid])

    async def get_refund(
        self, payment_id: str, refund_id: str
    ) -> Optional[RefundInfo]:
        self.calls.append("get_refund")
        r = self.refunds.get(refund_id)
        return dict(r) if r else None

    def set_refund_status(self, refund_id: str, status: str) -> None:
        self.refunds[refund_id]["status"] = status
