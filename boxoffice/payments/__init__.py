from ..config import MOLLIE_API_KEY, PAYMENT_PROVIDER
from .base import PaymentAdapter, PaymentInfo, RefundInfo
from ._mock import MockPay
from ._mollie import MolliePay

BACKEND = PAYMENT_PROVIDER  # 'mock' | 'mollie'


# Factory keeps server.py simple and constructor-agnostic:
def new_adapter(backend: str = BACKEND) -> PaymentAdapter:
    if backend == "mollie":
        return MolliePay(MOLLIE_API_KEY)
    if backend == "mock":
        return MockPay()
    raise RuntimeError(f"unknown PAYMENT_PROVIDER {backend!r}")


__all__ = [
    "BACKEND", "MockPay", "MolliePay", "PaymentAdapter", "PaymentInfo",
    "RefundInfo", "new_adapter",
]
