"""CreditLedger — per-user, per-agent message credit accounting.

Balances are created lazily on first contact with an agent, seeded with
``settings.FREE_MESSAGES_PER_AGENT`` free messages. Deduction is a single
conditional UPDATE (``used < free + purchased``), so two concurrent sends for
the same pair can never push ``used_messages`` past the ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models.credit import CreditBalance
from services.errors import InsufficientCredits

logger = logging.getLogger(__name__)


@dataclass
class CreditStatus:
    has_credits: bool
    remaining: int

    def to_dict(self) -> dict:
        return {"remaining": self.remaining, "hasCredits": self.has_credits}


class CreditLedger:
    def __init__(self, db: Session, free_messages: int | None = None):
        self.db = db
        self.free_messages = (
            settings.FREE_MESSAGES_PER_AGENT if free_messages is None else free_messages
        )

    def _find(self, user_id: int, agent_id: int) -> CreditBalance | None:
        stmt = (
            select(CreditBalance)
            .where(CreditBalance.user_id == user_id, CreditBalance.agent_id == agent_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def balance(self, user_id: int, agent_id: int) -> CreditBalance:
        """Return the balance for (user, agent), creating it with free-tier defaults."""
        existing = self._find(user_id, agent_id)
        if existing is not None:
            return existing

        balance = CreditBalance(
            user_id=user_id,
            agent_id=agent_id,
            free_messages=self.free_messages,
            purchased_messages=0,
            used_messages=0,
        )
        self.db.add(balance)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request initialised the same pair first
            self.db.rollback()
            existing = self._find(user_id, agent_id)
            if existing is None:
                raise
            return existing
        logger.info(
            "Initialised credits for user=%s agent=%s with %d free messages",
            user_id, agent_id, self.free_messages,
        )
        return balance

    def check_credits(self, user_id: int, agent_id: int) -> CreditStatus:
        """Admission check; never changes usage."""
        balance = self.balance(user_id, agent_id)
        remaining = balance.total_available - balance.used_messages
        return CreditStatus(has_credits=remaining > 0, remaining=max(0, remaining))

    def deduct_credit(self, user_id: int, agent_id: int) -> CreditStatus:
        """Consume exactly one credit, or raise InsufficientCredits without mutating."""
        self.balance(user_id, agent_id)
        result = self.db.execute(
            update(CreditBalance)
            .where(
                CreditBalance.user_id == user_id,
                CreditBalance.agent_id == agent_id,
                CreditBalance.used_messages
                < CreditBalance.free_messages + CreditBalance.purchased_messages,
            )
            .values(used_messages=CreditBalance.used_messages + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        balance = self._find(user_id, agent_id)
        if result.rowcount == 0:
            logger.info("Credit deduction refused for user=%s agent=%s", user_id, agent_id)
            raise InsufficientCredits(remaining=balance.remaining if balance else 0)
        return CreditStatus(has_credits=balance.remaining > 0, remaining=balance.remaining)

    def top_up(self, user_id: int, agent_id: int, amount: int, commit: bool = True) -> CreditBalance:
        """Add purchased messages for (user, agent).

        With ``commit=False`` the increment joins the caller's transaction.
        """
        if amount <= 0:
            raise ValueError("Top-up amount must be positive")
        self.balance(user_id, agent_id)
        self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id, CreditBalance.agent_id == agent_id)
            .values(purchased_messages=CreditBalance.purchased_messages + amount)
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        logger.info("Topped up user=%s agent=%s by %d messages", user_id, agent_id, amount)
        return self._find(user_id, agent_id)

    def stats(self, user_id: int) -> dict:
        """Totals across all agents plus a per-agent breakdown."""
        balances = self.db.execute(
            select(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .order_by(CreditBalance.agent_id)
        ).scalars().all()

        stats = {
            "totalAgents": len(balances),
            "totalFreeMessages": 0,
            "totalPurchasedMessages": 0,
            "totalUsedMessages": 0,
            "agentBreakdown": {},
        }
        for b in balances:
            stats["totalFreeMessages"] += b.free_messages
            stats["totalPurchasedMessages"] += b.purchased_messages
            stats["totalUsedMessages"] += b.used_messages
            stats["agentBreakdown"][str(b.agent_id)] = {
                "freeMessages": b.free_messages,
                "purchasedMessages": b.purchased_messages,
                "usedMessages": b.used_messages,
                "totalAvailable": b.total_available,
                "remaining": b.remaining,
            }
        return stats
