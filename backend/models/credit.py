"""Per-user, per-agent message credit balance."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CreditBalance(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "agent_id", name="uq_credit_balance_user_agent"),
        CheckConstraint(
            "used_messages <= free_messages + purchased_messages",
            name="ck_credit_balance_not_overdrawn",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"))
    free_messages: Mapped[int] = mapped_column(Integer, default=0)
    purchased_messages: Mapped[int] = mapped_column(Integer, default=0)
    used_messages: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship("User", back_populates="credits")  # noqa: F821

    @property
    def total_available(self) -> int:
        return self.free_messages + self.purchased_messages

    @property
    def remaining(self) -> int:
        return max(0, self.total_available - self.used_messages)

    def __repr__(self):
        return (
            f"<CreditBalance user={self.user_id} agent={self.agent_id} "
            f"used={self.used_messages}/{self.total_available}>"
        )
