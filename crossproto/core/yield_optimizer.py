"""Yield allocation across the lending and router protocols."""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from loguru import logger

from ..config import RiskToleranceProfile, YieldConfig
from ..protocols.base import LendingRequest
from .errors import ClassifiedError, ValidationFailed
from .lending import LendingGateway
from .quotes import QuotePipeline
from .recovery import Deadline, RecoveryEngine, call_with_timeout
from .steps import StepLedger
from .types import Allocation, Holding, RebalanceMove, SwapRequest, YieldOptimizationResult, YieldSource

WALLET = "wallet"


@dataclass
class _Slot:
    protocol: str
    asset: str
    apy: float
    risk_score: float
    value: float = 0.0


def _blended_apy(slots: List[_Slot], total_value: float) -> float:
    return sum(s.value * s.apy for s in slots) / total_value if total_value else 0.0


def _to_allocations(slots: List[_Slot], total_value: float) -> List[Allocation]:
    merged: Dict[Tuple[str, str], _Slot] = {}
    for slot in slots:
        if slot.value <= 0:
            continue
        key = (slot.protocol, slot.asset)
        if key in merged:
            merged[key].value += slot.value
        else:
            merged[key] = _Slot(slot.protocol, slot.asset, slot.apy, slot.risk_score, slot.value)

    allocations = [
        Allocation(protocol=s.protocol, asset=s.asset, percentage=round(s.value / total_value * 100, 6),
                   value=s.value, apy=s.apy)
        for s in sorted(merged.values(), key=lambda s: -s.value)
    ]
    if allocations:
        # absorb rounding so the percentages add up to exactly 100
        drift = 100.0 - sum(a.percentage for a in allocations)
        allocations[-1].percentage += drift
    return allocations


def _risk(slots: List[_Slot], total_value: float) -> float:
    return sum(s.value * s.risk_score for s in slots) / total_value if total_value else 0.0


def plan_allocation(holdings: List[Holding], sources: List[YieldSource], profile: RiskToleranceProfile,
                    swap_cost_fraction: float, horizon_days: int) -> YieldOptimizationResult:
    """
    Target allocation for a set of holdings.

    The baseline holds each asset in its single best eligible source. The
    candidate moves up to ``profile.max_reallocation`` of each holding into the
    best eligible source overall when its APY beats the holding's baseline
    net of the annualized swap cost. The candidate is returned only when its
    blended APY is above the baseline; otherwise the baseline is returned.
    """
    total_value = sum(h.value for h in holdings)
    eligible = [s for s in sources if s.risk_score <= profile.max_source_risk]

    def best_for(asset: str) -> _Slot:
        candidates = [s for s in eligible if s.asset == asset]
        if not candidates:
            return _Slot(WALLET, asset, 0.0, 0.0)
        best = max(candidates, key=lambda s: (s.apy, -s.risk_score))
        return _Slot(best.protocol, best.asset, best.apy, best.risk_score)

    baseline: List[_Slot] = []
    for holding in holdings:
        slot = best_for(holding.asset)
        slot.value = holding.value
        baseline.append(slot)
    baseline_apy = _blended_apy(baseline, total_value)

    result_baseline = YieldOptimizationResult(
        strategy="baseline",
        allocations=_to_allocations(baseline, total_value),
        expected_apy=baseline_apy,
        baseline_apy=baseline_apy,
        risk_score=_risk(baseline, total_value),
        improved=False,
    )
    if not eligible or total_value <= 0:
        return result_baseline

    top = max(eligible, key=lambda s: (s.apy, -s.risk_score))
    # annualized percentage cost of swapping once over the horizon
    swap_penalty = swap_cost_fraction * 100 * 365 / max(horizon_days, 1)

    candidate: List[_Slot] = []
    moves: List[RebalanceMove] = []
    penalty_value = 0.0
    for holding, base in zip(holdings, baseline):
        penalty = swap_penalty if holding.asset != top.asset else 0.0
        moved = holding.value * profile.max_reallocation
        if moved <= 0 or top.apy - penalty <= base.apy or (base.protocol, base.asset) == (top.protocol, top.asset):
            candidate.append(_Slot(base.protocol, base.asset, base.apy, base.risk_score, base.value))
            continue
        candidate.append(_Slot(base.protocol, base.asset, base.apy, base.risk_score, base.value - moved))
        candidate.append(_Slot(top.protocol, top.asset, top.apy, top.risk_score, moved))
        penalty_value += moved * penalty
        moves.append(RebalanceMove(
            from_protocol=base.protocol,
            from_asset=holding.asset,
            to_protocol=top.protocol,
            to_asset=top.asset,
            amount=moved / holding.price if holding.price else 0.0,
            value=moved,
        ))

    expected_apy = (sum(s.value * s.apy for s in candidate) - penalty_value) / total_value
    if not moves or expected_apy <= baseline_apy:
        logger.debug(f"No allocation beats baseline APY {baseline_apy:.3f}%")
        return result_baseline

    return YieldOptimizationResult(
        strategy="reallocate",
        allocations=_to_allocations(candidate, total_value),
        expected_apy=expected_apy,
        baseline_apy=baseline_apy,
        risk_score=_risk(candidate, total_value),
        improved=True,
        moves=moves,
    )


class YieldOptimizer:
    """Computes and executes yield allocations."""

    def __init__(self, config: YieldConfig, lending: LendingGateway, pipeline: QuotePipeline,
                 engine: RecoveryEngine):
        self.config = config
        self.lending = lending
        self.pipeline = pipeline
        self.engine = engine

    @property
    def executable_protocols(self) -> Set[str]:
        """Protocols funds can be moved through by ``execute_rebalance``."""
        return {WALLET, self.lending.name}

    def profile(self, risk_tolerance: str) -> RiskToleranceProfile:
        return self.config.tolerances.get(risk_tolerance, self.config.tolerances["medium"])

    async def sources(self) -> List[YieldSource]:
        """Yield sources from the lending markets and the router's liquidity pools."""
        client = self.pipeline.client
        context = self.engine.context("liquidity_yields")
        assets, pools = await asyncio.gather(
            self.lending.supported_assets(),
            self.engine.run(
                lambda: call_with_timeout(client.liquidity_yields(), self.pipeline.config.timeout_ms,
                                          "liquidity_yields"),
                context,
            ),
        )
        lending_sources = [
            YieldSource(protocol=self.lending.name, asset=a.symbol, apy=a.supply_apy, risk_score=a.risk_score)
            for a in assets
        ]
        return lending_sources + list(pools)

    async def optimize(self, holdings: List[Holding], risk_tolerance: str = "medium",
                       sources: Optional[List[YieldSource]] = None,
                       horizon_days: Optional[int] = None,
                       executable_only: bool = False) -> YieldOptimizationResult:
        """
        Target allocation for ``holdings`` under a risk tolerance level.

        With ``executable_only`` the plan is restricted to sources that
        ``execute_rebalance`` can move funds into.
        """
        errors = [f"holding {h.asset} must have positive amount and value"
                  for h in holdings if h.amount <= 0 or h.value <= 0]
        if not holdings:
            errors.append("at least one holding is required")
        if errors:
            context = self.engine.context("optimize_yield")
            raise ClassifiedError(self.engine.enhance(ValidationFailed(errors), context))

        if sources is None:
            sources = await self.sources()
        if executable_only:
            sources = [s for s in sources if s.protocol in self.executable_protocols]
        result = plan_allocation(
            holdings, sources, self.profile(risk_tolerance),
            self.config.swap_cost_fraction, horizon_days or self.config.default_horizon_days,
        )
        logger.info(f"Yield plan ({risk_tolerance}): {result.strategy}, APY {result.baseline_apy:.3f}% -> "
                    f"{result.expected_apy:.3f}%, {len(result.moves)} moves")
        return result

    async def execute_rebalance(self, user_address: str, result: YieldOptimizationResult,
                                deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        """Carry out the planned moves, each as withdraw -> swap -> supply."""
        supported = self.executable_protocols
        unsupported = [m.to_protocol for m in result.moves if m.to_protocol not in supported]
        unsupported += [m.from_protocol for m in result.moves if m.from_protocol not in supported]
        if unsupported:
            context = self.engine.context("execute_yield_rebalance", user_address)
            raise ClassifiedError(self.engine.enhance(
                ValidationFailed([f"cannot move funds through {p}" for p in sorted(set(unsupported))]), context,
            ))

        ledger = StepLedger(self.engine, "execute_yield_rebalance", user_address, deadline)
        for i, move in enumerate(result.moves):
            amount = move.amount
            if move.from_protocol == self.lending.name:
                await ledger.run(f"withdraw_{i}", lambda: self.lending.withdraw(
                    LendingRequest(move.from_asset, amount, user_address)))
            if move.from_asset != move.to_asset:
                swap = await ledger.run(
                    f"swap_{i}",
                    lambda: self.pipeline.execute_swap(SwapRequest(
                        token_in=move.from_asset, token_out=move.to_asset, amount_in=amount,
                        amount_out_minimum=0.0, recipient=user_address,
                        slippage_percent=self.pipeline.config.default_slippage_percent,
                    )),
                    exposure=(f"{amount} {move.from_asset} withdrawn and idle",),
                )
                amount = swap.actual_amount_out
            if move.to_protocol == self.lending.name:
                await ledger.run(
                    f"supply_{i}",
                    lambda: self.lending.supply(LendingRequest(move.to_asset, amount, user_address)),
                    exposure=(f"{amount} {move.to_asset} idle in wallet",),
                )

        logger.info(f"Executed {len(result.moves)} yield moves for {user_address}")
        return {"moves": len(result.moves), "transactions": ledger.transactions()}
