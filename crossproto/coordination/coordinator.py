"""
Multi-agent coordinator.

Collects decisions from the agents for a shared scenario, runs consensus
rounds when asked to, and resolves the decisions into one coordination
strategy. Agents that are unavailable or fail mid-round are dropped while at
least one required agent still contributes.
"""

import asyncio
import time
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from ..config import CoordinationConfig
from ..core.errors import AgentUnavailable, ClassifiedError, CoordinationTimeout, ValidationFailed
from ..core.recovery import RecoveryEngine
from ..core.utils import format_duration
from .agents import Agent, AgentRegistry
from .decisions import (
    AgentDecision, AgentStatus, CoordinationMode, CoordinationResult, CoordinationScenario,
    DecisionContext, ResolutionMethod, conservative_strategy,
)
from .resolution import confidence_variance, consensus_strength, resolve


class AgentCoordinator:
    """Coordinates decisions from registered agents."""

    def __init__(self, registry: AgentRegistry, config: Optional[CoordinationConfig] = None,
                 engine: Optional[RecoveryEngine] = None):
        self.registry = registry
        self.config = config or CoordinationConfig()
        self.engine = engine or RecoveryEngine()

    def _fail(self, error, scenario: CoordinationScenario) -> ClassifiedError:
        context = self.engine.context("coordinate_agents", scenario_id=scenario.scenario_id)
        return ClassifiedError(self.engine.enhance(error, context))

    def _parse_options(self, scenario: CoordinationScenario, mode: Optional[str],
                       conflict_resolution: Optional[str]) -> Tuple[CoordinationMode, ResolutionMethod]:
        try:
            return (CoordinationMode(mode or self.config.mode),
                    ResolutionMethod(conflict_resolution or self.config.conflict_resolution))
        except ValueError as exc:
            raise self._fail(ValidationFailed([str(exc)]), scenario)

    async def _ask(self, agent: Agent, context: DecisionContext, deadline: float,
                   failed: List[str], timed_out: List[str]) -> Optional[AgentDecision]:
        """One decision from one agent; failures drop the decision and mark the agent failed."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            timed_out.append(agent.agent_id)
            return None
        self.registry.set_status(agent.agent_id, AgentStatus.PROCESSING)
        try:
            decision = await asyncio.wait_for(agent.make_decision(context, int(remaining * 1000)), remaining)
        except asyncio.TimeoutError:
            logger.warning(f"Agent {agent.agent_id} did not decide before the deadline")
            self.registry.set_status(agent.agent_id, AgentStatus.FAILED)
            timed_out.append(agent.agent_id)
            failed.append(agent.agent_id)
            return None
        except Exception as exc:
            logger.warning(f"Agent {agent.agent_id} failed in round {context.round}: {exc}")
            self.registry.set_status(agent.agent_id, AgentStatus.FAILED)
            failed.append(agent.agent_id)
            return None
        self.registry.set_status(agent.agent_id, AgentStatus.COMPLETED)
        return decision

    async def _round(self, agents: List[Agent], mode: CoordinationMode, context: DecisionContext,
                     deadline: float, failed: List[str], timed_out: List[str]) -> List[AgentDecision]:
        if mode == CoordinationMode.SEQUENTIAL:
            decisions: List[AgentDecision] = []
            for agent in agents:
                seen = DecisionContext(context.scenario, context.round,
                                       context.prior_decisions + tuple(decisions))
                decision = await self._ask(agent, seen, deadline, failed, timed_out)
                if decision is not None:
                    decisions.append(decision)
            return decisions

        results = await asyncio.gather(*(self._ask(a, context, deadline, failed, timed_out) for a in agents))
        return [d for d in results if d is not None]

    async def coordinate(self, scenario: CoordinationScenario, required: Iterable[str],
                         optional: Iterable[str] = (), mode: Optional[str] = None,
                         conflict_resolution: Optional[str] = None,
                         timeout_ms: Optional[int] = None) -> CoordinationResult:
        """
        Coordinate the required (and optional) agents on a scenario.

        Raises:
            ClassifiedError: agent_unavailable when required agents cannot take
            part, coordination_timeout (with partial decisions and a
            conservative fallback strategy) when no required agent decided in
            time, validation_failed for unknown modes
        """
        started = time.monotonic()
        required = list(dict.fromkeys(required))
        optional = [a for a in dict.fromkeys(optional) if a not in required]
        mode_, method = self._parse_options(scenario, mode, conflict_resolution)
        if not required:
            raise self._fail(ValidationFailed(["at least one required agent is needed"]), scenario)

        def usable(agent_id: str) -> bool:
            agent = self.registry.get(agent_id)
            return agent is not None and agent.available

        unavailable = [a for a in required + optional if not usable(a)]
        missing_required = [a for a in required if a in unavailable]
        if missing_required and (not mode_.degrades or len(missing_required) == len(required)):
            raise self._fail(AgentUnavailable(missing_required), scenario)

        participants = [self.registry.get(a) for a in required + optional if a not in unavailable]
        timeout_ms = timeout_ms or self.config.timeout_ms
        deadline = started + timeout_ms / 1000
        failed: List[str] = []
        timed_out: List[str] = []

        logger.info(f"Coordinating {scenario.scenario_id} in {mode_.value} mode with "
                    f"{[a.agent_id for a in participants]}" + (f", unavailable {unavailable}" if unavailable else ""))

        rounds = 0
        decisions: List[AgentDecision] = []
        consensus_reached = False
        max_rounds = self.config.max_rounds if mode_ == CoordinationMode.CONSENSUS else 1
        active = participants
        while rounds < max_rounds:
            rounds += 1
            context = DecisionContext(scenario, rounds, tuple(decisions) if rounds > 1 else ())
            round_decisions = await self._round(active, mode_, context, deadline, failed, timed_out)
            active = [a for a in active if a.agent_id not in failed]
            if round_decisions:
                decisions = round_decisions
            consensus_reached = bool(decisions) and (
                confidence_variance(decisions) < self.config.consensus_variance_threshold
            )
            if consensus_reached or not active or time.monotonic() >= deadline:
                break

        if not any(d.agent_id in required for d in decisions):
            if timed_out:
                fallback = conservative_strategy(f"no required agent decided within {timeout_ms}ms")
                raise self._fail(CoordinationTimeout(timeout_ms, decisions, fallback.to_dict()), scenario)
            raise self._fail(AgentUnavailable(required, "failed before deciding"), scenario)

        strategy, details = resolve(decisions, scenario, method)
        strategy.adapted_for_missing_agents = bool(missing_required)
        strategy.adapted_for_failures = bool(failed)
        if failed:
            strategy.risk_mitigation.append(f"proceeding without failed agents {sorted(set(failed))}")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = CoordinationResult(
            scenario_id=scenario.scenario_id,
            mode=mode_,
            participating_agents=[d.agent_id for d in decisions],
            unavailable_agents=unavailable,
            failed_agents=sorted(set(failed)),
            decisions=decisions,
            rounds=rounds,
            consensus_reached=consensus_reached,
            consensus_strength=consensus_strength(decisions, self.config.consensus_variance_threshold),
            strategy=strategy,
            conflicts_resolved=details["conflicts_identified"],
            conflict_resolution_details=details,
            consensus_time_ms=elapsed_ms,
        )
        logger.info(f"Coordination {scenario.scenario_id}: {strategy.primary_action} "
                    f"(rounds={rounds}, consensus={consensus_reached}, {format_duration(elapsed_ms / 1000)})")
        return result
