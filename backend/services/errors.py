"""Domain errors shared by the REST and socket surfaces."""

from __future__ import annotations


class ChatError(Exception):
    """Base class: carries a stable ``code`` and the HTTP status it maps to."""

    code = "chat_error"
    status_code = 400

    def __init__(self, message: str = "", **extra) -> None:
        self.message = message or (self.__doc__ or self.code).strip()
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"message": self.message, "code": self.code, **self.extra}


class InsufficientCredits(ChatError):
    """Insufficient message credits. Please purchase more messages."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, remaining: int = 0, message: str = "") -> None:
        super().__init__(message, remaining=remaining)
        self.remaining = remaining


class ConversationNotFound(ChatError):
    """Conversation not found."""

    code = "conversation_not_found"
    status_code = 404


class MessageNotFound(ChatError):
    """Message not found."""

    code = "message_not_found"
    status_code = 404


class AgentUnavailable(ChatError):
    """Agent not found or not available."""

    code = "agent_unavailable"
    status_code = 404


class ThreadAlreadyBound(ChatError):
    """Conversation is already bound to a different assistant thread."""

    code = "thread_already_bound"
    status_code = 409


class AssistantUnavailable(ChatError):
    """The assistant is unavailable. Please resend your message."""

    code = "assistant_unavailable"
    status_code = 502


class PollTimeout(AssistantUnavailable):
    """The assistant took too long to reply."""

    code = "poll_timeout"
    status_code = 504

    def __init__(self, last_status: str, timeout_ms: int, message: str = "") -> None:
        super().__init__(
            message or f"Polling timed out after {timeout_ms}ms; last status: {last_status}",
            last_status=last_status,
        )
        self.last_status = last_status
        self.timeout_ms = timeout_ms


class PaymentNotFound(ChatError):
    """Payment record not found."""

    code = "payment_not_found"
    status_code = 404


class InvalidPaymentSignature(ChatError):
    """Invalid payment signature."""

    code = "invalid_payment_signature"
    status_code = 400


class InvalidPaymentState(ChatError):
    """Payment is not in a state that allows this operation."""

    code = "invalid_payment_state"
    status_code = 400


class InvalidRequest(ChatError):
    """Invalid request."""

    code = "invalid_request"
    status_code = 400
