from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CheckoutRequest(BaseModel):
    product_id: int


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    version_id: Optional[int]
    price_at_purchase_cents: int
    currency: str

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    total_amount_cents: int
    currency: str
    status: str
    refunded_amount_cents: int
    refunded_at: Optional[datetime]
    created_at: datetime
    items: List[OrderItemOut] = []

    class Config:
        from_attributes = True


class RefundOut(BaseModel):
    refund_id: str
    amount_cents: int
    full_refund: bool
    order_status: str
