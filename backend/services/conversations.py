"""ConversationDirectory — (user, agent) → conversation and assistant thread identity.

Invariants kept here:
- At most one ``active`` conversation per (user, agent); enforced by a partial
  unique index, with duplicate-create races absorbed by re-reading.
- A conversation's ``thread_id`` is assigned once (first writer wins).
- ``unread_count`` only grows on agent-authored turns and resets on read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.conversation import Conversation
from models.message import Message
from services.errors import ConversationNotFound, ThreadAlreadyBound

logger = logging.getLogger(__name__)


class ConversationDirectory:
    def __init__(self, db: Session):
        self.db = db

    # ========== LOOKUP ==========

    def _get(self, conversation_id: int) -> Conversation | None:
        stmt = (
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, conversation_id: int) -> Conversation:
        conv = self._get(conversation_id)
        if conv is None:
            raise ConversationNotFound()
        return conv

    def get_for_user(self, conversation_id: int, user_id: int) -> Conversation:
        """Fetch a conversation owned by *user_id*; anything else is 'not found'."""
        conv = self._get(conversation_id)
        if conv is None or conv.user_id != user_id:
            raise ConversationNotFound()
        return conv

    def find_active(self, user_id: int, agent_id: int) -> Conversation | None:
        stmt = (
            select(Conversation)
            .where(
                Conversation.user_id == user_id,
                Conversation.agent_id == agent_id,
                Conversation.status == "active",
            )
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def resolve(self, user_id: int, agent_id: int) -> Conversation:
        """Find the active conversation for the pair, creating it if needed.

        Safe to call repeatedly for the same logical turn.
        """
        conv = self.find_active(user_id, agent_id)
        if conv is not None:
            return conv

        conv = Conversation(user_id=user_id, agent_id=agent_id, status="active", unread_count=0)
        self.db.add(conv)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            conv = self.find_active(user_id, agent_id)
            if conv is None:
                raise
            logger.info("Concurrent create for user=%s agent=%s; reusing %s", user_id, agent_id, conv.id)
            return conv
        logger.info("Created conversation %s for user=%s agent=%s", conv.id, user_id, agent_id)
        return conv

    def list_for_user(self, user_id: int, include_closed: bool = False) -> list[Conversation]:
        """Pinned first, then most recent activity."""
        stmt = select(Conversation).where(Conversation.user_id == user_id)
        if not include_closed:
            stmt = stmt.where(Conversation.status != "closed")
        stmt = stmt.order_by(
            Conversation.pinned.desc(),
            Conversation.last_message_at.desc().nulls_last(),
            Conversation.updated_at.desc(),
            Conversation.id.desc(),
        )
        return list(self.db.execute(stmt).scalars().all())

    def total_unread(self, user_id: int) -> int:
        stmt = select(func.coalesce(func.sum(Conversation.unread_count), 0)).where(
            Conversation.user_id == user_id
        )
        return int(self.db.execute(stmt).scalar_one())

    # ========== THREAD IDENTITY ==========

    def bind_thread(self, conversation_id: int, thread_id: str) -> Conversation:
        """Assign the assistant thread once. Rebinding the same id is a no-op."""
        result = self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.thread_id.is_(None))
            .values(thread_id=thread_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        conv = self.get(conversation_id)
        if result.rowcount == 0 and conv.thread_id != thread_id:
            raise ThreadAlreadyBound(
                f"Conversation {conversation_id} is already bound to thread {conv.thread_id}"
            )
        return conv

    # ========== SUMMARY ==========

    def record_turn(
        self,
        conversation_id: int,
        text: str,
        sent_by: str,
        increment_unread: bool | None = None,
    ) -> Conversation:
        """Update the denormalized last-message summary in one statement."""
        if increment_unread is None:
            increment_unread = sent_by == "agent"
        elif increment_unread and sent_by != "agent":
            raise ValueError("Only agent messages count as unread")

        values = {
            "last_message_text": text,
            "last_message_sent_by": sent_by,
            "last_message_at": datetime.now(timezone.utc),
        }
        if increment_unread:
            values["unread_count"] = Conversation.unread_count + 1

        self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return self.get(conversation_id)

    def mark_read(self, conversation_id: int) -> Conversation:
        self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(unread_count=0)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return self.get(conversation_id)

    def mark_all_read(self, conversation_id: int) -> int:
        """Move every sent/delivered message to read and zero the unread counter.

        Returns the number of messages that changed.
        """
        result = self.db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.status.in_(("sent", "delivered")),
            )
            .values(status="read")
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(unread_count=0)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount

    # ========== LIFECYCLE ==========

    def _finish(self, conversation_id: int, user_id: int, status: str) -> Conversation:
        conv = self.get_for_user(conversation_id, user_id)
        if conv.status != "active":
            # closed/archived are terminal
            return conv
        conv.status = status
        self.db.commit()
        logger.info("Conversation %s is now %s", conversation_id, status)
        return conv

    def close(self, conversation_id: int, user_id: int) -> Conversation:
        return self._finish(conversation_id, user_id, "closed")

    def archive(self, conversation_id: int, user_id: int) -> Conversation:
        return self._finish(conversation_id, user_id, "archived")

    def toggle_pin(self, conversation_id: int, user_id: int) -> Conversation:
        conv = self.get_for_user(conversation_id, user_id)
        conv.pinned = not conv.pinned
        self.db.commit()
        return conv


@dataclass
class EphemeralConversation:
    """Guest conversation held only by the owning connection, never persisted."""

    agent_id: int
    thread_id: str | None = None
    turns: list[dict] = field(default_factory=list)

    def bind_thread(self, thread_id: str) -> None:
        if self.thread_id is not None and self.thread_id != thread_id:
            raise ThreadAlreadyBound(f"Guest conversation is already bound to thread {self.thread_id}")
        self.thread_id = thread_id
