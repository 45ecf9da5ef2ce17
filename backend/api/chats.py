"""Conversation endpoints — listing, lifecycle, read state and REST turns."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from api._helpers import get_relay, serialize_conversation
from auth import get_current_user
from database import get_db
from models.user import User
from schemas.chat import ConversationIn, MessageIn, MessageOut, Pagination, SendMessageOut, dump
from services.agents import AgentDirectory
from services.conversations import ConversationDirectory
from services.messages import MessageLog
from services.relay import MessageRelay

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
def list_chats(
    include_closed: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conversations = ConversationDirectory(db).list_for_user(user.id, include_closed=include_closed)
    return {"items": [serialize_conversation(c) for c in conversations], "total": len(conversations)}


@router.post("/")
def create_chat(
    payload: ConversationIn,
    response: Response,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    AgentDirectory(db).get_active(payload.agent_id)
    conversations = ConversationDirectory(db)
    existing = conversations.find_active(user.id, payload.agent_id)
    conv = existing or conversations.resolve(user.id, payload.agent_id)
    response.status_code = 200 if existing else 201
    return serialize_conversation(conv)


@router.get("/unread-count/")
def unread_count(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"count": ConversationDirectory(db).total_unread(user.id)}


@router.get("/{conversation_id}/")
def get_chat(
    conversation_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conv = ConversationDirectory(db).get_for_user(conversation_id, user.id)
    messages = MessageLog(db).all_for_conversation(conversation_id)
    return {
        "conversation": serialize_conversation(conv),
        "messages": [dump(MessageOut.model_validate(m)) for m in messages],
    }


@router.get("/{conversation_id}/history")
def chat_history(
    conversation_id: int,
    page: int = Query(1),
    limit: int = Query(50),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ConversationDirectory(db).get_for_user(conversation_id, user.id)
    messages, pagination = MessageLog(db).history(conversation_id, page, limit)
    return {
        "messages": [dump(MessageOut.model_validate(m)) for m in messages],
        "pagination": dump(Pagination(**pagination)),
    }


@router.post("/{conversation_id}/message")
async def send_message(
    conversation_id: int,
    payload: MessageIn,
    user: User = Depends(get_current_user),
    relay: MessageRelay = Depends(get_relay),
):
    result = await relay.run_turn(user.id, None, payload.content, conversation_id=conversation_id)
    await relay.publish_turn(result)
    return dump(SendMessageOut(
        data=MessageOut.model_validate(result.user_message),
        reply=MessageOut.model_validate(result.agent_message),
        credits=result.credits.to_dict(),
    ))


@router.post("/{conversation_id}/pin/")
def toggle_pin(
    conversation_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conv = ConversationDirectory(db).toggle_pin(conversation_id, user.id)
    return serialize_conversation(conv)


@router.post("/{conversation_id}/read/")
def mark_read(
    conversation_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conversations = ConversationDirectory(db)
    conversations.get_for_user(conversation_id, user.id)
    updated = conversations.mark_all_read(conversation_id)
    return {"conversationId": conversation_id, "updatedCount": updated}


@router.post("/{conversation_id}/archive/")
def archive_chat(
    conversation_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conv = ConversationDirectory(db).archive(conversation_id, user.id)
    return serialize_conversation(conv)


@router.delete("/{conversation_id}/", status_code=204)
def close_chat(
    conversation_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ConversationDirectory(db).close(conversation_id, user.id)
