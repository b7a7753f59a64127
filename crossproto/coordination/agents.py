"""Agent contract and registry."""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .decisions import AgentDecision, AgentStatus, AgentType, DecisionContext


class Agent(ABC):
    """Autonomous decision agent taking part in a coordination."""

    def __init__(self, agent_id: str, agent_type: AgentType, status: AgentStatus = AgentStatus.IDLE):
        self.agent_id = agent_id
        self.agent_type = agent_type
        self.status = status

    @property
    def available(self) -> bool:
        return self.status != AgentStatus.UNAVAILABLE

    @abstractmethod
    async def make_decision(self, context: DecisionContext, timeout_ms: int) -> AgentDecision:
        """Produce one decision for the scenario in ``context``."""
        pass


class AgentRegistry:
    """Known agents by id."""

    def __init__(self, agents: Optional[Iterable[Agent]] = None):
        self._agents: Dict[str, Agent] = {}
        for agent in agents or ():
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if agent.agent_id in self._agents:
            logger.warning(f"Replacing registered agent {agent.agent_id}")
        self._agents[agent.agent_id] = agent

    def unregister(self, agent_id: str) -> Optional[Agent]:
        return self._agents.pop(agent_id, None)

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def set_status(self, agent_id: str, status: AgentStatus) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise KeyError(f"Unknown agent: {agent_id}")
        if agent.status != status:
            logger.debug(f"Agent {agent_id}: {agent.status.value} -> {status.value}")
        agent.status = status

    def available_ids(self) -> List[str]:
        return [a.agent_id for a in self._agents.values() if a.available]

    def all(self) -> List[Agent]:
        return list(self._agents.values())

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)
