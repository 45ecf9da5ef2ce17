"""Agent lookups and agent-to-assistant mapping."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.agent import Agent
from services.errors import AgentUnavailable

logger = logging.getLogger(__name__)


class AgentDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, agent_id: int) -> Agent:
        agent = self.db.get(Agent, agent_id)
        if agent is None:
            raise AgentUnavailable(f"Agent not found with ID: {agent_id}")
        return agent

    def get_active(self, agent_id: int) -> Agent:
        """Return an agent that can take a turn: active and mapped to an assistant."""
        agent = self.get(agent_id)
        if agent.status != "active":
            raise AgentUnavailable(f"Agent {agent.title} is not active")
        if not agent.assistant_id:
            logger.warning("Agent %s has no assistant id configured", agent.id)
            raise AgentUnavailable(f"Agent {agent.title} does not have an assistant configured")
        return agent

    def list_active(self) -> list[Agent]:
        stmt = (
            select(Agent)
            .where(Agent.status == "active", Agent.assistant_id.is_not(None))
            .order_by(Agent.featured.desc(), Agent.title)
        )
        return list(self.db.execute(stmt).scalars().all())

    def details(self, agent_id: int) -> Agent:
        """Public view of one agent; inactive agents are hidden."""
        agent = self.get(agent_id)
        if agent.status != "active":
            raise AgentUnavailable(f"Agent not found with ID: {agent_id}")
        return agent

    def create(self, **fields) -> Agent:
        agent = Agent(**fields)
        self.db.add(agent)
        self.db.commit()
        self.db.refresh(agent)
        logger.info("Created agent %s (%s)", agent.id, agent.title)
        return agent
