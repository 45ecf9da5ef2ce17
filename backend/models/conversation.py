"""Conversation model — one dialogue between a user and an agent."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

CONVERSATION_STATUSES = ("active", "closed", "archived")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one active conversation per (user, agent)
        Index(
            "uq_conversation_active_pair",
            "user_id",
            "agent_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"))
    # External assistant thread; assigned once, never changed
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active")
    pinned: Mapped[bool] = mapped_column(Boolean, default=False)

    # Denormalized summary
    last_message_text: Mapped[str] = mapped_column(Text, default="")
    last_message_sent_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    agent: Mapped[Agent] = relationship("Agent")  # noqa: F821

    def __repr__(self):
        return f"<Conversation {self.id} user={self.user_id} agent={self.agent_id} ({self.status})>"
