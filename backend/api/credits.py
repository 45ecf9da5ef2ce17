"""Credit balance endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.user import User
from schemas.chat import CreditBalanceOut, dump
from services.agents import AgentDirectory
from services.credits import CreditLedger

router = APIRouter()


@router.get("/")
def credit_stats(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return CreditLedger(db).stats(user.id)


@router.get("/{agent_id}/")
def agent_credits(
    agent_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    AgentDirectory(db).get(agent_id)
    balance = CreditLedger(db).balance(user.id, agent_id)
    return {
        **dump(CreditBalanceOut.model_validate(balance)),
        "hasCredits": balance.remaining > 0,
    }
