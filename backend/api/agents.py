"""Agent catalogue endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import get_current_user, require_admin
from database import get_db
from models.user import User
from schemas.chat import AgentIn, AgentOut, dump
from services.agents import AgentDirectory

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
def list_agents(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    agents = AgentDirectory(db).list_active()
    return {"items": [dump(AgentOut.model_validate(a)) for a in agents], "total": len(agents)}


@router.get("/{agent_id}/")
def get_agent(
    agent_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return dump(AgentOut.model_validate(AgentDirectory(db).details(agent_id)))


@router.post("/", status_code=201)
def create_agent(
    payload: AgentIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    agent = AgentDirectory(db).create(**payload.model_dump())
    return dump(AgentOut.model_validate(agent))
