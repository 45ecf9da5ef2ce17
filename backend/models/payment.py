"""Message pack catalogue and payment records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class MessagePack(Base):
    __tablename__ = "message_packs"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(150), unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    message_count: Mapped[int] = mapped_column(Integer)
    price: Mapped[float] = mapped_column(Float)
    currency: Mapped[str] = mapped_column(String(10), default="INR")
    validity_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    discount_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    features: Mapped[list | None] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def discounted_price(self) -> float:
        if self.discount_percentage and self.discount_percentage > 0:
            return self.price * (1 - self.discount_percentage / 100)
        return self.price

    @property
    def price_per_message(self) -> float:
        return self.discounted_price / self.message_count

    def __repr__(self):
        return f"<MessagePack {self.name} ({self.message_count} msgs)>"


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    message_pack_id: Mapped[int] = mapped_column(ForeignKey("message_packs.id", ondelete="RESTRICT"))
    # Agent the purchased messages are credited to
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    order_id: Mapped[str] = mapped_column(String(100), unique=True)
    payment_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer)  # minor units (paise / cents)
    currency: Mapped[str] = mapped_column(String(10), default="INR")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | completed | failed | cancelled
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    message_pack: Mapped[MessagePack] = relationship("MessagePack")

    def __repr__(self):
        return f"<Payment {self.order_id} ({self.status})>"
