"""MessageRelay — drives one user turn from admission to the assistant's reply.

Turn order (never reordered):

    validate + check credits → resolve conversation → persist user message
    → summary (user) → deduct credit → thread + submit → poll / stream
    → persist agent message → summary (agent)

A failure after the deduction leaves the user's message and the charge in
place; the client resends to retry.  Socket events are dispatched through
``handle_event``, which owns the log context and the ``error`` reply.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass

from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from logging_config import connection_id_var, conversation_id_var
from models.conversation import Conversation
from models.message import Message
from schemas.chat import ConversationOut, MessageOut, Pagination, dump
from services.agents import AgentDirectory
from services.assistant import AssistantClient
from services.connections import Connection, ConnectionRegistry, room_name
from services.conversations import ConversationDirectory, EphemeralConversation
from services.credits import CreditLedger, CreditStatus
from services.errors import (
    AssistantUnavailable,
    ChatError,
    ConversationNotFound,
    InsufficientCredits,
    InvalidRequest,
    PollTimeout,
    ThreadAlreadyBound,
)
from services.messages import MessageLog
from services.run_poller import RunPoller

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[dict], Awaitable[None]]
Publisher = Callable[[str, str, dict, str], None]


@dataclass
class TurnResult:
    conversation: Conversation
    user_message: Message
    agent_message: Message
    credits: CreditStatus

    @property
    def thread_id(self) -> str | None:
        return self.conversation.thread_id


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{key} is required") from None


def _optional_int(data: dict, key: str) -> int | None:
    if data.get(key) in (None, ""):
        return None
    return _require_int(data, key)


def _clean_content(content) -> str:
    text = content.strip() if isinstance(content, str) else ""
    if not text:
        raise InvalidRequest("Message content is required")
    return text


class MessageRelay:
    def __init__(
        self,
        registry: ConnectionRegistry,
        assistant: AssistantClient | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        publish: Publisher | None = None,
        poller: RunPoller | None = None,
        streaming: bool | None = None,
        guest_message_limit: int | None = None,
    ):
        self.registry = registry
        self.assistant = assistant or AssistantClient()
        self.session_factory = session_factory
        self.publish = publish
        self.poller = poller or RunPoller(self.assistant)
        self.streaming = settings.ASSISTANT_STREAMING if streaming is None else streaming
        self.guest_message_limit = (
            settings.GUEST_MESSAGE_LIMIT if guest_message_limit is None else guest_message_limit
        )
        # Room events published by this process carry it; the socket listener drops them
        self.worker_id = uuid.uuid4().hex
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._handlers = {
            "message:send": self.send_message,
            "message": self.send_message,
            "markMessageAsRead": self.mark_message_read,
            "markAllMessagesAsRead": self.mark_all_read,
            "getConversationHistory": self.conversation_history,
            "getUserConversations": self.user_conversations,
            "getUnreadCount": self.unread_count,
            "getConversationDetails": self.conversation_details,
            "joinConversation": self.join_conversation,
            "leaveConversation": self.leave_conversation,
            "typing": self.typing,
        }

    # ── Turn pipeline ──────────────────────────────────────────────────────

    def _lock_for(self, owner, agent_id: int) -> asyncio.Lock:
        key = (owner, agent_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def run_turn(
        self,
        user_id: int,
        agent_id: int | None,
        content: str,
        conversation_id: int | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> TurnResult:
        """Run one complete user turn for an authenticated user.

        When *conversation_id* is given it must belong to the user; a
        conversation that is no longer active is replaced by the pair's
        active one.
        """
        content = _clean_content(content)

        if conversation_id is not None:
            with self.session_factory() as db:
                existing = ConversationDirectory(db).get_for_user(conversation_id, user_id)
            if agent_id is None:
                agent_id = existing.agent_id
            elif existing.agent_id != agent_id:
                raise ConversationNotFound()
        if agent_id is None:
            raise InvalidRequest("agentId is required")

        async with self._lock_for(user_id, agent_id):
            with self.session_factory() as db:
                agent = AgentDirectory(db).get_active(agent_id)
                ledger = CreditLedger(db)
                status = ledger.check_credits(user_id, agent_id)
                if not status.has_credits:
                    raise InsufficientCredits(remaining=status.remaining)

                conversations = ConversationDirectory(db)
                conv = conversations.resolve(user_id, agent_id)
                user_message = MessageLog(db).append(
                    conv.id, "user", content, sender_id=user_id, status="delivered",
                )
                conversations.record_turn(conv.id, content, "user")
                credits = ledger.deduct_credit(user_id, agent_id)
                assistant_id = agent.assistant_id

            conversation_id_var.set(str(conv.id))
            thread_id = await self._ensure_thread(conv)
            await self.assistant.add_message(thread_id, content)
            reply, tokens_used = await self._complete_run(
                thread_id, assistant_id, conv.id, on_chunk,
            )

            with self.session_factory() as db:
                agent_message = MessageLog(db).append(
                    conv.id, "agent", reply, sender_id=agent_id, status="sent", tokens_used=tokens_used,
                )
                conv = ConversationDirectory(db).record_turn(conv.id, reply, "agent")

        logger.info("Turn complete for conversation %s (%d tokens)", conv.id, tokens_used)
        return TurnResult(
            conversation=conv, user_message=user_message, agent_message=agent_message, credits=credits,
        )

    async def _ensure_thread(self, conv: Conversation) -> str:
        if conv.thread_id:
            return conv.thread_id

        thread_id = await self.assistant.create_thread(
            {"conversation_id": str(conv.id), "user_id": str(conv.user_id), "agent_id": str(conv.agent_id)}
        )
        with self.session_factory() as db:
            conversations = ConversationDirectory(db)
            try:
                conv = conversations.bind_thread(conv.id, thread_id)
            except ThreadAlreadyBound:
                bound = conversations.get(conv.id).thread_id
                logger.warning(
                    "Conversation %s was bound to %s concurrently; discarding %s",
                    conv.id, bound, thread_id,
                )
                await self._discard_thread(thread_id)
                return bound
        return thread_id

    async def _discard_thread(self, thread_id: str) -> None:
        try:
            await self.assistant.delete_thread(thread_id)
        except AssistantUnavailable:
            logger.warning("Could not delete orphaned thread %s", thread_id)

    async def _complete_run(
        self,
        thread_id: str,
        assistant_id: str,
        conversation_id: int | None,
        on_chunk: ChunkCallback | None,
    ) -> tuple[str, int]:
        """Return (reply text, tokens used) for one run on *thread_id*."""
        if self.streaming:
            timeout_ms = self.poller.timeout_ms
            try:
                reply, tokens_used = await asyncio.wait_for(
                    self._stream_reply(thread_id, assistant_id, conversation_id, on_chunk),
                    timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                logger.warning("Streamed run on thread %s stalled past %dms", thread_id, timeout_ms)
                raise PollTimeout("in_progress", timeout_ms) from None
        else:
            run_id = await self.assistant.create_run(thread_id, assistant_id)
            result = await self.poller.poll_until_terminal(thread_id, run_id)
            if result.status != "completed":
                raise AssistantUnavailable(
                    f"Assistant run ended with status {result.status}", run_status=result.status,
                )
            tokens_used = result.tokens_used
            reply = await self.assistant.latest_reply(thread_id)

        reply = reply.strip()
        if not reply:
            raise AssistantUnavailable("Assistant returned an empty reply")
        return reply, tokens_used

    async def _stream_reply(
        self,
        thread_id: str,
        assistant_id: str,
        conversation_id: int | None,
        on_chunk: ChunkCallback | None,
    ) -> tuple[str, int]:
        full_text = ""
        tokens_used = 0
        async with aclosing(self.assistant.stream_run(thread_id, assistant_id)) as deltas:
            async for delta in deltas:
                if delta.done:
                    tokens_used = delta.tokens_used
                    break
                full_text += delta.text
                if on_chunk is not None:
                    await on_chunk({
                        "conversationId": conversation_id,
                        "chunk": delta.text,
                        "fullText": full_text,
                        "isComplete": False,
                    })
        if on_chunk is not None:
            await on_chunk({
                "conversationId": conversation_id,
                "chunk": "",
                "fullText": full_text,
                "isComplete": True,
            })
        return full_text, tokens_used

    # ── Fan-out ────────────────────────────────────────────────────────────

    async def emit_room(self, conversation_id: int, event: str, payload: dict, exclude: str | None = None) -> None:
        """Deliver *event* to local room members and publish it for other workers."""
        room = room_name(conversation_id)
        for peer in self.registry.room_members(room, exclude=exclude):
            try:
                await peer.send(event, payload)
            except Exception:
                logger.warning("Failed to deliver %s to connection %s", event, peer.id, exc_info=True)
        if self.publish is not None:
            try:
                await asyncio.to_thread(self.publish, room, event, payload, self.worker_id)
            except Exception:
                logger.warning("Failed to publish %s to %s", event, room, exc_info=True)

    async def publish_turn(self, result: TurnResult, exclude: str | None = None) -> None:
        conversation_id = result.conversation.id
        for message in (result.user_message, result.agent_message):
            await self.emit_room(
                conversation_id, "message", dump(MessageOut.model_validate(message)), exclude=exclude,
            )

    # ── Socket events ──────────────────────────────────────────────────────

    async def handle_event(self, connection: Connection, event: str, data: dict | None) -> None:
        """Dispatch one client event; failures become an ``error`` event."""
        data = data if isinstance(data, dict) else {}
        handler = self._handlers.get(event)
        if handler is None:
            await connection.send("error", {"message": f"Unknown event: {event}", "code": "unknown_event"})
            return

        conn_token = connection_id_var.set(connection.id)
        conv_token = conversation_id_var.set(str(data.get("conversationId") or ""))
        try:
            await handler(connection, data)
        except ChatError as exc:
            logger.info("%s failed: %s (%s)", event, exc.message, exc.code)
            await connection.send("error", exc.to_payload())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error in %s", event)
            await connection.send("error", {"message": "Internal server error", "code": "internal_error"})
        finally:
            conversation_id_var.reset(conv_token)
            connection_id_var.reset(conn_token)

    async def send_message(self, connection: Connection, data: dict) -> None:
        if connection.is_guest:
            await self._send_guest_message(connection, data)
            return

        agent_id = _optional_int(data, "agentId")
        conversation_id = _optional_int(data, "conversationId")
        if data.get("threadId"):
            logger.debug("Ignoring client-supplied threadId; threads are owned by the conversation")

        async def on_chunk(payload: dict) -> None:
            await connection.send("assistant_chunk", payload)

        result = await self.run_turn(
            connection.user_id, agent_id, data.get("content"),
            conversation_id=conversation_id, on_chunk=on_chunk,
        )
        self.registry.join(connection.id, room_name(result.conversation.id))
        await connection.send("messageResponse", {
            "status": "success",
            "conversationId": result.conversation.id,
            "threadId": result.thread_id,
            "userMessage": dump(MessageOut.model_validate(result.user_message)),
            "message": dump(MessageOut.model_validate(result.agent_message)),
            "credits": result.credits.to_dict(),
        })
        await self.publish_turn(result, exclude=connection.id)

    async def _send_guest_message(self, connection: Connection, data: dict) -> None:
        agent_id = _require_int(data, "agentId")
        content = _clean_content(data.get("content"))

        async with self._lock_for(connection.id, agent_id):
            with self.session_factory() as db:
                assistant_id = AgentDirectory(db).get_active(agent_id).assistant_id
            if connection.guest_messages_sent >= self.guest_message_limit:
                raise InsufficientCredits(remaining=0)

            conv = connection.guest_conversations.get(agent_id)
            if conv is None:
                conv = connection.guest_conversations[agent_id] = EphemeralConversation(agent_id=agent_id)
            user_message = MessageOut(sender="user", content=content, status="delivered")
            conv.turns.append(dump(user_message))
            connection.guest_messages_sent += 1
            remaining = max(0, self.guest_message_limit - connection.guest_messages_sent)

            if conv.thread_id is None:
                conv.bind_thread(await self.assistant.create_thread({"guest_connection": connection.id}))
            await self.assistant.add_message(conv.thread_id, content)

            async def on_chunk(payload: dict) -> None:
                await connection.send("assistant_chunk", payload)

            reply, tokens_used = await self._complete_run(conv.thread_id, assistant_id, None, on_chunk)
            agent_message = MessageOut(sender="agent", content=reply, status="sent", tokens_used=tokens_used)
            conv.turns.append(dump(agent_message))

        await connection.send("messageResponse", {
            "status": "success",
            "conversationId": None,
            "threadId": conv.thread_id,
            "userMessage": dump(user_message),
            "message": dump(agent_message),
            "credits": {"remaining": remaining, "hasCredits": remaining > 0},
        })

    def _owner(self, connection: Connection) -> int:
        if connection.is_guest:
            raise ConversationNotFound()
        return connection.user_id

    async def mark_message_read(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        message_id = _require_int(data, "messageId")
        conversation_id = _optional_int(data, "conversationId")
        with self.session_factory() as db:
            message, changed = MessageLog(db).mark_read(message_id, user_id, conversation_id)
        payload = {
            "messageId": message.id,
            "conversationId": message.conversation_id,
            "status": message.status,
        }
        await connection.send("messageMarkedAsRead", payload)
        if changed:
            await self.emit_room(message.conversation_id, "messageStatusUpdate", payload, exclude=connection.id)

    async def mark_all_read(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        conversation_id = _require_int(data, "conversationId")
        with self.session_factory() as db:
            conversations = ConversationDirectory(db)
            conversations.get_for_user(conversation_id, user_id)
            updated = conversations.mark_all_read(conversation_id)
        await connection.send("allMessagesMarkedAsRead", {
            "conversationId": conversation_id,
            "updatedCount": updated,
        })
        await self.emit_room(
            conversation_id, "conversationMarkedAsRead",
            {"conversationId": conversation_id, "userId": user_id}, exclude=connection.id,
        )

    async def conversation_history(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        conversation_id = _require_int(data, "conversationId")
        page = _optional_int(data, "page") or 1
        limit = _optional_int(data, "limit") or 50
        with self.session_factory() as db:
            ConversationDirectory(db).get_for_user(conversation_id, user_id)
            messages, pagination = MessageLog(db).history(conversation_id, page, limit)
        await connection.send("conversationHistory", {
            "conversationId": conversation_id,
            "messages": [dump(MessageOut.model_validate(m)) for m in messages],
            "pagination": dump(Pagination(**pagination)),
        })

    async def user_conversations(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        with self.session_factory() as db:
            conversations = [
                dump(ConversationOut.model_validate(c))
                for c in ConversationDirectory(db).list_for_user(user_id)
            ]
        await connection.send("userConversations", {"conversations": conversations})

    async def unread_count(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        with self.session_factory() as db:
            count = ConversationDirectory(db).total_unread(user_id)
        await connection.send("unreadCount", {"count": count})

    async def conversation_details(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        conversation_id = _require_int(data, "conversationId")
        with self.session_factory() as db:
            conv = ConversationDirectory(db).get_for_user(conversation_id, user_id)
            payload = {
                "conversation": dump(ConversationOut.model_validate(conv)),
                "messages": [
                    dump(MessageOut.model_validate(m))
                    for m in MessageLog(db).all_for_conversation(conversation_id)
                ],
            }
        await connection.send("conversationDetails", payload)

    async def join_conversation(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        conversation_id = _require_int(data, "conversationId")
        with self.session_factory() as db:
            ConversationDirectory(db).get_for_user(conversation_id, user_id)
        self.registry.join(connection.id, room_name(conversation_id))
        await connection.send("joinedConversation", {"conversationId": conversation_id})

    async def leave_conversation(self, connection: Connection, data: dict) -> None:
        conversation_id = _require_int(data, "conversationId")
        self.registry.leave(connection.id, room_name(conversation_id))
        await connection.send("leftConversation", {"conversationId": conversation_id})

    async def typing(self, connection: Connection, data: dict) -> None:
        user_id = self._owner(connection)
        conversation_id = _require_int(data, "conversationId")
        if room_name(conversation_id) not in connection.rooms:
            raise ConversationNotFound()
        await self.emit_room(
            conversation_id, "userTyping",
            {"conversationId": conversation_id, "userId": user_id, "isTyping": bool(data.get("isTyping", True))},
            exclude=connection.id,
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def release(self, connection: Connection) -> None:
        """Forget a closed connection and discard its guest threads."""
        self.registry.remove(connection.id)
        for conv in connection.guest_conversations.values():
            if conv.thread_id:
                await self._discard_thread(conv.thread_id)
        connection.guest_conversations.clear()
