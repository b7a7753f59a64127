"""Conflict detection and resolution of agent decisions into one strategy."""

from itertools import combinations
from typing import Dict, List, Tuple

from loguru import logger

from ..core.utils import clamp, variance
from .decisions import (
    AgentDecision, AgentType, CoordinationScenario, CoordinationStrategy, ExecutionStep,
    ResolutionMethod, Stance,
)

# lending commits capital that liquidity provision depends on; monitoring goes last
AGENT_ORDER = {AgentType.LENDING: 0, AgentType.LIQUIDITY: 1, AgentType.MARKET: 2}
HIGH_VOLATILITY = 0.5


def confidence_variance(decisions: List[AgentDecision]) -> float:
    return variance(d.confidence for d in decisions)


def consensus_strength(decisions: List[AgentDecision], threshold: float) -> float:
    """1 when confidences agree exactly, 0 at or beyond the consensus threshold."""
    if not decisions or threshold <= 0:
        return 0.0
    return clamp(1 - confidence_variance(decisions) / threshold, 0.0, 1.0)


def detect_conflicts(decisions: List[AgentDecision]) -> List[Tuple[str, str]]:
    """Pairs of agents pushing the portfolio in opposite directions."""
    opposed = {Stance.RISK_ON: Stance.RISK_OFF, Stance.RISK_OFF: Stance.RISK_ON}
    return [
        (a.agent_id, b.agent_id)
        for a, b in combinations(decisions, 2)
        if opposed.get(a.stance) == b.stance
    ]


def _weights(decisions: List[AgentDecision], method: ResolutionMethod,
             scenario: CoordinationScenario) -> Dict[str, float]:
    weights = {}
    for d in decisions:
        if method == ResolutionMethod.RISK_WEIGHTED:
            weight = d.confidence * (1 - d.risk)
            if d.stance == Stance.RISK_OFF and scenario.volatility > HIGH_VOLATILITY:
                weight *= 1 + scenario.volatility
        else:
            weight = d.confidence
        weights[d.agent_id] = weight
    return weights


def build_execution_plan(decisions: List[AgentDecision]) -> List[ExecutionStep]:
    """Order steps lending -> liquidity -> market; each depends on all earlier-stage steps."""
    ordered = sorted(decisions, key=lambda d: (AGENT_ORDER[d.agent_type], -d.confidence))
    plan: List[ExecutionStep] = []
    for index, decision in enumerate(ordered, start=1):
        depends_on = [
            step.order for step in plan
            if AGENT_ORDER[step.agent_type] < AGENT_ORDER[decision.agent_type]
        ]
        plan.append(ExecutionStep(order=index, agent_id=decision.agent_id, agent_type=decision.agent_type,
                                  action=decision.action, depends_on=depends_on))
    return plan


def resolve(decisions: List[AgentDecision], scenario: CoordinationScenario,
            method: ResolutionMethod) -> Tuple[CoordinationStrategy, Dict]:
    """
    Combine decisions into a single strategy.

    The winning stance is the one with the largest total weight (confidence
    for ``consensus``, confidence discounted by decision risk for
    ``risk_weighted``). Decisions opposing it become risk mitigation notes.
    """
    conflicts = detect_conflicts(decisions)
    weights = _weights(decisions, method, scenario)

    by_stance: Dict[Stance, float] = {}
    for d in decisions:
        by_stance[d.stance] = by_stance.get(d.stance, 0.0) + weights[d.agent_id]
    # ties favour the more conservative stance
    preference = {Stance.RISK_OFF: 0, Stance.NEUTRAL: 1, Stance.RISK_ON: 2}
    winner = max(by_stance, key=lambda s: (by_stance[s], -preference[s]))

    aligned = [d for d in decisions if d.stance in (winner, Stance.NEUTRAL)]
    opposing = [d for d in decisions if d not in aligned]
    aligned.sort(key=lambda d: weights[d.agent_id], reverse=True)

    primary = aligned[0]
    high_volatility = scenario.volatility > HIGH_VOLATILITY
    mitigation = [f"hedge against '{d.action}' proposed by {d.agent_id}" for d in opposing]
    if high_volatility:
        mitigation.append("reduce position sizes while volatility is elevated")

    if winner == Stance.RISK_OFF:
        risk_level = "low"
    elif winner == Stance.RISK_ON and high_volatility:
        risk_level = "high"
    else:
        risk_level = "medium"

    total_weight = sum(weights.values())
    strategy = CoordinationStrategy(
        primary_action=primary.action,
        supporting_actions=[d.action for d in aligned[1:]],
        risk_mitigation=mitigation,
        execution_plan=build_execution_plan(aligned),
        risk_level=risk_level,
        preservation_focus=winner == Stance.RISK_OFF or high_volatility,
        coherence_score=by_stance[winner] / total_weight if total_weight else 0.0,
    )
    details = {
        "method": method.value,
        "conflicts_identified": len(conflicts),
        "conflicting_pairs": [list(pair) for pair in conflicts],
        "winning_stance": winner.value,
    }
    if conflicts:
        logger.info(f"Resolved {len(conflicts)} conflicts by {method.value}: {winner.value} wins "
                    f"({strategy.coherence_score:.2f})")
    return strategy, details
