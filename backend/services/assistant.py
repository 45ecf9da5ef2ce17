"""AssistantClient — thin async wrapper over the OpenAI Assistants (threads/runs) API.

Only the minimal surface the relay needs is exposed; every SDK error is
translated into ``AssistantUnavailable`` so callers deal with one failure type.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import contextmanager
from dataclasses import dataclass

import openai

from config import settings
from services.errors import AssistantUnavailable

logger = logging.getLogger(__name__)

FAILED_RUN_EVENTS = {
    "thread.run.failed": "failed",
    "thread.run.cancelled": "cancelled",
    "thread.run.expired": "expired",
    "thread.run.requires_action": "requires_action",
    "thread.run.incomplete": "incomplete",
}


@dataclass
class RunState:
    status: str
    tokens_used: int = 0


@dataclass
class StreamDelta:
    text: str = ""
    done: bool = False
    tokens_used: int = 0


def _total_tokens(usage) -> int:
    if usage is None:
        return 0
    return getattr(usage, "total_tokens", 0) or 0


@contextmanager
def _sdk_errors(action: str):
    try:
        yield
    except openai.OpenAIError as exc:
        logger.warning("Assistant call failed during %s: %s", action, exc)
        raise AssistantUnavailable(f"Assistant request failed while trying to {action}") from exc


class AssistantClient:
    def __init__(self, api_key: str | None = None, model: str | None = None, client=None):
        self._api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self._model = (settings.OPENAI_MODEL or None) if model is None else model
        self._client = client

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise AssistantUnavailable("OPENAI_API_KEY is not configured")
            self._client = openai.AsyncOpenAI(api_key=self._api_key)
        return self._client

    def _run_kwargs(self, assistant_id: str) -> dict:
        kwargs: dict = {"assistant_id": assistant_id}
        if self._model:
            kwargs["model"] = self._model
        return kwargs

    async def create_thread(self, metadata: dict | None = None) -> str:
        with _sdk_errors("create a thread"):
            if metadata:
                thread = await self.client.beta.threads.create(metadata=metadata)
            else:
                thread = await self.client.beta.threads.create()
        logger.debug("Created assistant thread %s", thread.id)
        return thread.id

    async def delete_thread(self, thread_id: str) -> None:
        with _sdk_errors("delete a thread"):
            await self.client.beta.threads.delete(thread_id)

    async def add_message(self, thread_id: str, content: str, role: str = "user") -> str:
        if not thread_id:
            raise ValueError("thread_id is required")
        if not content:
            raise ValueError("content is required")
        with _sdk_errors("add a message"):
            message = await self.client.beta.threads.messages.create(
                thread_id=thread_id, role=role, content=content,
            )
        return message.id

    async def create_run(self, thread_id: str, assistant_id: str) -> str:
        if not assistant_id:
            raise AssistantUnavailable("assistant_id is required")
        with _sdk_errors("start a run"):
            run = await self.client.beta.threads.runs.create(
                thread_id=thread_id, **self._run_kwargs(assistant_id),
            )
        if not run.id:
            raise AssistantUnavailable("Assistant returned a run without an id")
        logger.debug("Created run %s on thread %s", run.id, thread_id)
        return run.id

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunState:
        with _sdk_errors("check run status"):
            run = await self.client.beta.threads.runs.retrieve(run_id=run_id, thread_id=thread_id)
        return RunState(status=run.status, tokens_used=_total_tokens(getattr(run, "usage", None)))

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        with _sdk_errors("cancel a run"):
            await self.client.beta.threads.runs.cancel(run_id=run_id, thread_id=thread_id)

    async def latest_reply(self, thread_id: str) -> str:
        """Text of the newest assistant message on the thread ('' when none)."""
        with _sdk_errors("read the reply"):
            page = await self.client.beta.threads.messages.list(
                thread_id=thread_id, limit=1, order="desc",
            )
        if not page.data:
            return ""
        latest = page.data[0]
        if getattr(latest, "role", "assistant") != "assistant":
            return ""
        parts = [
            part.text.value
            for part in latest.content or []
            if part.type == "text" and part.text is not None
        ]
        return "".join(parts)

    async def stream_run(self, thread_id: str, assistant_id: str) -> AsyncIterator[StreamDelta]:
        """Start a run with incremental delivery.

        Yields text deltas in order, then one ``done`` delta carrying usage.
        A run that ends in any state other than completed raises
        AssistantUnavailable.
        """
        with _sdk_errors("stream a run"):
            stream = await self.client.beta.threads.runs.create(
                thread_id=thread_id, stream=True, **self._run_kwargs(assistant_id),
            )
            async for event in stream:
                if event.event == "thread.message.delta":
                    for part in event.data.delta.content or []:
                        text = getattr(getattr(part, "text", None), "value", None)
                        if part.type == "text" and text:
                            yield StreamDelta(text=text)
                elif event.event == "thread.run.completed":
                    yield StreamDelta(done=True, tokens_used=_total_tokens(event.data.usage))
                    return
                elif event.event in FAILED_RUN_EVENTS:
                    status = FAILED_RUN_EVENTS[event.event]
                    raise AssistantUnavailable(
                        f"Assistant run ended with status {status}", run_status=status,
                    )
                elif event.event == "error":
                    raise AssistantUnavailable("Assistant stream reported an error")
        raise AssistantUnavailable("Assistant stream ended before the run completed")
