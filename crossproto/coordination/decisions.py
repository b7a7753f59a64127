"""Scenario, agent decision and strategy types for multi-agent coordination."""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class AgentType(Enum):
    LENDING = "lending"
    LIQUIDITY = "liquidity"
    MARKET = "market"


class AgentStatus(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


class Stance(Enum):
    """Direction a decision pushes the portfolio in."""
    RISK_ON = "risk_on"
    RISK_OFF = "risk_off"
    NEUTRAL = "neutral"


class CoordinationMode(Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONSENSUS = "consensus"
    ADAPTIVE = "adaptive"
    FAULT_TOLERANT = "fault_tolerant"

    @property
    def degrades(self) -> bool:
        """Whether the mode proceeds with the available subset of required agents."""
        return self in (CoordinationMode.ADAPTIVE, CoordinationMode.FAULT_TOLERANT)


class ResolutionMethod(Enum):
    CONSENSUS = "consensus"
    RISK_WEIGHTED = "risk_weighted"


@dataclass(frozen=True)
class CoordinationScenario:
    """Caller-supplied scenario; immutable for the duration of a coordination."""
    scenario_id: str
    user_intent: str = ""
    portfolio: Dict[str, Any] = field(default_factory=dict)
    market: Dict[str, Any] = field(default_factory=dict)
    risk_tolerance: str = "medium"

    @property
    def volatility(self) -> float:
        return float(self.market.get("volatility", 0.0))


@dataclass(frozen=True)
class AgentDecision:
    """Common envelope of every agent decision. Produced once per agent per round."""
    agent_id: str
    action: str
    confidence: float
    agent_type: Optional[AgentType] = None
    reasoning: str = ""
    stance: Stance = Stance.NEUTRAL
    risk: float = 0.5
    round: int = 1

    def __post_init__(self):
        if self.agent_type is None:
            raise ValueError("agent_type is required")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        if not 0.0 <= self.risk <= 1.0:
            raise ValueError(f"risk must be in [0, 1], got {self.risk}")

    @property
    def parameters(self) -> Dict[str, Any]:
        """Variant-specific fields."""
        base = {f.name for f in fields(AgentDecision)}
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in base}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "agentType": self.agent_type.value,
            "action": self.action,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "stance": self.stance.value,
            "risk": self.risk,
            "round": self.round,
            "parameters": self.parameters,
        }


@dataclass(frozen=True)
class LendingDecision(AgentDecision):
    agent_type: AgentType = AgentType.LENDING
    asset: str = ""
    amount: float = 0.0
    protocol: str = ""
    target_health_factor: Optional[float] = None


@dataclass(frozen=True)
class LiquidityDecision(AgentDecision):
    agent_type: AgentType = AgentType.LIQUIDITY
    pool: str = ""
    token_a: str = ""
    token_b: str = ""
    amount: float = 0.0
    range_width: Optional[float] = None


@dataclass(frozen=True)
class MarketDecision(AgentDecision):
    agent_type: AgentType = AgentType.MARKET
    signal: str = ""
    volatility: float = 0.0
    trend: str = "sideways"


@dataclass(frozen=True)
class DecisionContext:
    """What an agent sees when asked for a decision."""
    scenario: CoordinationScenario
    round: int = 1
    prior_decisions: Tuple[AgentDecision, ...] = ()


@dataclass
class ExecutionStep:
    """One step of the coordinated execution plan."""
    order: int
    agent_id: str
    agent_type: AgentType
    action: str
    depends_on: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "agentId": self.agent_id,
            "agentType": self.agent_type.value,
            "action": self.action,
            "dependsOn": list(self.depends_on),
        }


@dataclass
class CoordinationStrategy:
    """Single executable strategy combined from the agent decisions."""
    primary_action: str
    supporting_actions: List[str] = field(default_factory=list)
    risk_mitigation: List[str] = field(default_factory=list)
    execution_plan: List[ExecutionStep] = field(default_factory=list)
    risk_level: str = "medium"
    preservation_focus: bool = False
    adapted_for_missing_agents: bool = False
    adapted_for_failures: bool = False
    coherence_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primaryAction": self.primary_action,
            "supportingActions": list(self.supporting_actions),
            "riskMitigation": list(self.risk_mitigation),
            "executionPlan": [s.to_dict() for s in self.execution_plan],
            "riskLevel": self.risk_level,
            "preservationFocus": self.preservation_focus,
            "adaptedForMissingAgents": self.adapted_for_missing_agents,
            "adaptedForFailures": self.adapted_for_failures,
            "coherenceScore": self.coherence_score,
        }


def conservative_strategy(reason: str) -> CoordinationStrategy:
    """Fallback strategy used when agents cannot produce a decision in time."""
    return CoordinationStrategy(
        primary_action="hold",
        risk_mitigation=[reason, "keep existing positions unchanged"],
        risk_level="low",
        preservation_focus=True,
    )


@dataclass
class CoordinationResult:
    scenario_id: str
    mode: CoordinationMode
    participating_agents: List[str]
    unavailable_agents: List[str]
    failed_agents: List[str]
    decisions: List[AgentDecision]
    rounds: int
    consensus_reached: bool
    consensus_strength: float
    strategy: CoordinationStrategy
    conflicts_resolved: int
    conflict_resolution_details: Dict[str, Any]
    consensus_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenarioId": self.scenario_id,
            "mode": self.mode.value,
            "participatingAgents": list(self.participating_agents),
            "unavailableAgents": list(self.unavailable_agents),
            "failedAgents": list(self.failed_agents),
            "decisions": [d.to_dict() for d in self.decisions],
            "rounds": self.rounds,
            "consensusReached": self.consensus_reached,
            "consensusStrength": self.consensus_strength,
            "coordinationStrategy": self.strategy.to_dict(),
            "conflictsResolved": self.conflicts_resolved,
            "conflictResolutionDetails": dict(self.conflict_resolution_details),
            "consensusTime": self.consensus_time_ms,
        }
