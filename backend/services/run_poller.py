"""Bounded polling of an external assistant run until it reaches a terminal status."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from config import settings
from services.errors import PollTimeout

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "expired", "requires_action"})


@dataclass
class TerminalResult:
    status: str
    attempts: int
    elapsed_ms: int
    tokens_used: int = 0


class RunPoller:
    """Fixed-interval retry policy bounded by elapsed time (and optionally attempts).

    ``sleep`` and ``clock`` are injectable so the policy can be exercised
    without real delays.
    """

    def __init__(
        self,
        client,
        interval_ms: int | None = None,
        timeout_ms: int | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.interval_ms = settings.RUN_POLL_INTERVAL_MS if interval_ms is None else interval_ms
        self.timeout_ms = settings.RUN_POLL_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._clock = clock

    async def poll_until_terminal(self, thread_id: str, run_id: str) -> TerminalResult:
        start = self._clock()
        attempts = 0
        try:
            while True:
                state = await self.client.retrieve_run(thread_id, run_id)
                attempts += 1
                elapsed_ms = int((self._clock() - start) * 1000)

                if state.status in TERMINAL_STATUSES:
                    logger.info(
                        "Run %s reached %s after %d polls (%dms)",
                        run_id, state.status, attempts, elapsed_ms,
                    )
                    return TerminalResult(
                        status=state.status,
                        attempts=attempts,
                        elapsed_ms=elapsed_ms,
                        tokens_used=state.tokens_used,
                    )

                out_of_attempts = self.max_attempts is not None and attempts >= self.max_attempts
                if elapsed_ms > self.timeout_ms or out_of_attempts:
                    logger.warning("Run %s timed out; last status %s", run_id, state.status)
                    await self._cancel_run_quietly(thread_id, run_id)
                    raise PollTimeout(state.status, self.timeout_ms)

                await self._sleep(self.interval_ms / 1000)
        except asyncio.CancelledError:
            logger.info("Polling of run %s cancelled; cancelling the run", run_id)
            await self._cancel_run_quietly(thread_id, run_id)
            raise

    async def _cancel_run_quietly(self, thread_id: str, run_id: str) -> None:
        try:
            await self.client.cancel_run(thread_id, run_id)
        except Exception:
            logger.warning("Failed to cancel run %s", run_id, exc_info=True)
