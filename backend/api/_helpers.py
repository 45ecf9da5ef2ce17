"""Shared helpers for API routers."""

from __future__ import annotations

from fastapi import Request

from models.conversation import Conversation
from schemas.chat import ConversationOut, dump
from services.relay import MessageRelay


def get_relay(request: Request) -> MessageRelay:
    """FastAPI dependency: the relay owned by the application lifespan."""
    return request.app.state.relay


def serialize_conversation(conv: Conversation) -> dict:
    """Conversation with its agent embedded; call while the session is open."""
    return dump(ConversationOut.model_validate(conv))
