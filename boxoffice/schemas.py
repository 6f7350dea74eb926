from typing import List, Optional

from pydantic import BaseModel, Field


class CartItemIn(BaseModel):
    inventory_id: str
    # validated by the reservation layer so the error carries our code
    quantity: int


class CapacityCheckIn(BaseModel):
    event_id: str
    items: List[CartItemIn] = Field(default_factory=list)


class CheckoutIn(BaseModel):
    """Anything else the client sends (prices included) is ignored."""
    event_id: str
    email: str
    purchaser_name: Optional[str] = None
    discount_code: Optional[str] = None
    items: List[CartItemIn] = Field(default_factory=list)


class ResumePaymentIn(BaseModel):
    token: str


class RefundItemIn(BaseModel):
    order_item_id: str
    quantity: int
    ticket_instance_id: Optional[str] = None


class RefundIn(BaseModel):
    order_id: str
    idempotency_key: str = Field(min_length=8, max_length=200)
    amount: Optional[int] = None
    items: Optional[List[RefundItemIn]] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class ScanIn(BaseModel):
    token: str
