"""Chat schemas — conversations, messages, agents and credits.

Wire names are camelCase (the realtime protocol's convention); Python
attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def dump(model: BaseModel) -> dict:
    """JSON-safe dict with wire (camelCase) names."""
    return model.model_dump(mode="json", by_alias=True)


# ── Agents ────────────────────────────────────────────────────────────────────


class AgentOut(CamelModel):
    id: int
    title: str
    description: str = ""
    category: str = ""
    tags: list[str] | None = None
    is_paid: bool = False
    status: str
    icon: str = ""
    color: str = ""
    featured: bool = False


class AgentIn(CamelModel):
    title: str = Field(min_length=1)
    description: str = ""
    category: str = ""
    tags: list[str] = []
    is_paid: bool = False
    status: str = Field("active", pattern="^(active|inactive)$")
    assistant_id: str | None = None
    icon: str = ""
    color: str = ""
    featured: bool = False


# ── Messages ──────────────────────────────────────────────────────────────────


class AttachmentOut(CamelModel):
    url: str | None = None
    mime_type: str | None = None


class MessageOut(CamelModel):
    id: int | None = None
    conversation_id: int | None = None
    sender: str
    sender_id: int | None = None
    content: str
    attachments: list[AttachmentOut] | None = None
    tokens_used: int = 0
    status: str
    created_at: datetime | None = None


class MessageIn(CamelModel):
    content: str = Field(min_length=1)


# ── Conversations ─────────────────────────────────────────────────────────────


class ConversationOut(CamelModel):
    id: int
    user_id: int
    agent_id: int
    thread_id: str | None = None
    status: str
    pinned: bool
    last_message_text: str = ""
    last_message_sent_by: str | None = None
    last_message_at: datetime | None = None
    unread_count: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
    agent: AgentOut | None = None


class ConversationIn(CamelModel):
    agent_id: int


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


# ── Credits ───────────────────────────────────────────────────────────────────


class CreditsOut(CamelModel):
    remaining: int
    has_credits: bool


class CreditBalanceOut(CamelModel):
    agent_id: int
    free_messages: int
    purchased_messages: int
    used_messages: int
    total_available: int
    remaining: int


class SendMessageOut(CamelModel):
    data: MessageOut
    reply: MessageOut | None = None
    credits: CreditsOut
