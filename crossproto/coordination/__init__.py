"""Multi-agent coordination."""

from .decisions import (
    AgentType, AgentStatus, Stance, CoordinationMode, ResolutionMethod, CoordinationScenario,
    AgentDecision, LendingDecision, LiquidityDecision, MarketDecision, DecisionContext,
    CoordinationStrategy, CoordinationResult,
)
from .agents import Agent, AgentRegistry
from .coordinator import AgentCoordinator

__all__ = [
    'AgentType',
    'AgentStatus',
    'Stance',
    'CoordinationMode',
    'ResolutionMethod',
    'CoordinationScenario',
    'AgentDecision',
    'LendingDecision',
    'LiquidityDecision',
    'MarketDecision',
    'DecisionContext',
    'CoordinationStrategy',
    'CoordinationResult',
    'Agent',
    'AgentRegistry',
    'AgentCoordinator',
]
