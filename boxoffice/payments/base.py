from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional, TypedDict


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentInfo(TypedDict):
    id: str
    # open | pending | authorized | paid | failed | canceled | expired
    status: str
    amount: int  # cents
    currency: str
    checkout_url: Optional[str]
    metadata: dict


class RefundInfo(TypedDict):
    id: str
    payment_id: str
    # queued | pending | processing | refunded | failed | canceled
    status: str
    amount: int
    currency: str


class PaymentAdapter(ABC):
    name: str = "abstract"

    @abstractmethod
    async def create_payment(
        self, *, amount: int, currency: str, description: str,
        redirect_url: str, webhook_url: str, metadata: dict,
    ) -> PaymentInfo: ...

    # None when the provider does not know the id
    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[PaymentInfo]:
        ...

    @abstractmethod
    async def create_refund(
        self, *, payment_id: str, amount: int, currency: str,
        description: str, metadata: dict, idempotency_key: str,
    ) -> RefundInfo: ...

    @abstractmethod
    async def get_refund(
        self, payment_id: str, refund_id: str
    ) -> Optional[RefundInfo]: ...

    def parse_webhook(self, form: Mapping) -> Optional[str]:
        """Notifications only carry the object id; everything else is
        fetched from the provider.
        """
        value = form.get("id")
        if not value or not isinstance(value, str):
            return None
        value = value.strip()
        return value or None

    def is_refund_id(self, object_id: str) -> bool:
        return object_id.startswith("re_")

    async def aclose(self) -> None:
        return None


def to_major(cents: int) -> str:
    return f"{cents // 100}.{cents % 100:02d}"


def to_minor(value: str) -> int:
    d = Decimal(str(value)) * 100
    return int(d.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
