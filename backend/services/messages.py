"""MessageLog — append-only message records with forward-only delivery status."""

from __future__ import annotations

import logging
import math

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from models.conversation import Conversation
from models.message import MESSAGE_STATUS_ORDER, SENDERS, Message
from services.errors import MessageNotFound

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class MessageLog:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        conversation_id: int,
        sender: str,
        content: str,
        sender_id: int | None = None,
        status: str = "sent",
        tokens_used: int = 0,
        attachments: list[dict] | None = None,
    ) -> Message:
        if sender not in SENDERS:
            raise ValueError(f"Unknown sender: {sender}")
        if status not in MESSAGE_STATUS_ORDER:
            raise ValueError(f"Unknown message status: {status}")
        content = (content or "").strip()
        if not content:
            raise ValueError("Message content is required")

        msg = Message(
            conversation_id=conversation_id,
            sender=sender,
            sender_id=sender_id,
            content=content,
            status=status,
            tokens_used=tokens_used,
            attachments=attachments or [],
        )
        self.db.add(msg)
        self.db.commit()
        self.db.refresh(msg)
        return msg

    def get_for_user(self, message_id: int, user_id: int) -> Message:
        stmt = (
            select(Message)
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(Message.id == message_id, Conversation.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        msg = self.db.execute(stmt).scalar_one_or_none()
        if msg is None:
            raise MessageNotFound()
        return msg

    def advance_status(self, message_id: int, status: str) -> bool:
        """Move a message forward to *status*. Returns False when it was already there or past it."""
        if status not in MESSAGE_STATUS_ORDER:
            raise ValueError(f"Unknown message status: {status}")
        behind = [s for s, rank in MESSAGE_STATUS_ORDER.items() if rank < MESSAGE_STATUS_ORDER[status]]
        if not behind:
            return False
        result = self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.status.in_(behind))
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0

    def mark_read(self, message_id: int, user_id: int, conversation_id: int | None = None) -> tuple[Message, bool]:
        """Mark one message read if it belongs to the user. Idempotent.

        An agent message leaving the unread state also takes one off the
        conversation's unread counter.
        """
        msg = self.get_for_user(message_id, user_id)
        if conversation_id is not None and msg.conversation_id != conversation_id:
            raise MessageNotFound()

        changed = self.advance_status(message_id, "read")
        if changed and msg.sender == "agent":
            self.db.execute(
                update(Conversation)
                .where(Conversation.id == msg.conversation_id, Conversation.unread_count > 0)
                .values(unread_count=Conversation.unread_count - 1)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        return self.get_for_user(message_id, user_id), changed

    def history(self, conversation_id: int, page: int = 1, limit: int = 50) -> tuple[list[Message], dict]:
        """Newest-first paging, each page returned in chronological order."""
        page = max(1, int(page))
        limit = min(MAX_PAGE_SIZE, max(1, int(limit)))

        total = self.db.execute(
            select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
        ).scalar_one()
        rows = self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }
        return list(reversed(rows)), pagination

    def all_for_conversation(self, conversation_id: int) -> list[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at, Message.id)
        )
        return list(self.db.execute(stmt).scalars().all())
