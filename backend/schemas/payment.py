"""Message pack and payment schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from schemas.chat import CamelModel, Pagination


class MessagePackOut(CamelModel):
    id: int
    name: str
    description: str = ""
    message_count: int
    price: float
    currency: str
    validity_days: int | None = None
    discount_percentage: float = 0.0
    discounted_price: float
    price_per_message: float
    features: list | None = None
    display_order: int = 0


class OrderIn(CamelModel):
    agent_id: int
    quantity: int = Field(1, ge=1, le=100)


class VerifyIn(CamelModel):
    order_id: str
    payment_id: str
    signature: str


class PaymentOut(CamelModel):
    id: int
    order_id: str
    payment_id: str | None = None
    message_pack_id: int
    agent_id: int
    quantity: int
    amount: int
    currency: str
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaymentHistoryOut(CamelModel):
    payments: list[PaymentOut]
    pagination: Pagination
