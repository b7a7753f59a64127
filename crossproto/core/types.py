#!/usr/bin/env python3
"""
Shared types and data structures for the orchestration engine.
This file breaks circular imports between modules.
"""

import time
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum

from .utils import within_tolerance

FEE_TOLERANCE = 0.001  # 0.1%


@dataclass(frozen=True)
class TokenInfo:
    """Token as seen by the router protocol."""
    address: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class RouteStep:
    """Single hop of a route."""
    protocol: str
    token_in: str
    token_out: str
    amount_in: float
    amount_out: float
    pool: str = ""
    fee: float = 0.0


@dataclass(frozen=True)
class RouteFees:
    """Fee decomposition of a route, denominated in the output token."""
    protocol: float
    gas: float
    liquidity_provider: float
    total: float

    def is_consistent(self, tolerance: float = FEE_TOLERANCE) -> bool:
        """Check total ≈ protocol + gas + liquidity_provider."""
        return within_tolerance(self.protocol + self.gas + self.liquidity_provider, self.total, tolerance)


@dataclass(frozen=True)
class Route:
    """A priced path from one asset to another."""
    id: str
    input_token: TokenInfo
    output_token: TokenInfo
    input_amount: float
    output_amount: float
    price_impact: float  # fraction in [0, 1]
    execution_price: float
    minimum_amount_out: float
    steps: tuple = ()
    gas_estimate: int = 0
    fees: RouteFees = RouteFees(0.0, 0.0, 0.0, 0.0)

    @property
    def hop_count(self) -> int:
        return len(self.steps)

    @property
    def net_output(self) -> float:
        """Output amount net of total fees, used for ranking."""
        return self.output_amount - self.fees.total

    def steps_consistent(self, tolerance: float = FEE_TOLERANCE) -> bool:
        """Check that the amounts entering the route add up to the input amount."""
        if not self.steps:
            return True
        entering = sum(step.amount_in for step in self.steps if step.token_in == self.input_token.address)
        if entering == 0:
            entering = self.steps[0].amount_in
        return within_tolerance(entering, self.input_amount, tolerance)


@dataclass(frozen=True)
class Quote:
    """Immutable quote; expiry is a read-time check against ``valid_until``."""
    route: Route
    issued_at: int
    valid_until: int
    slippage_adjusted_amount_out: float

    def is_expired(self, now: int) -> bool:
        return self.valid_until <= now


@dataclass(frozen=True)
class RouteSet:
    """Candidate routes with the selected best route."""
    routes: tuple
    best_route: Route
    fetched_at: int


@dataclass(frozen=True)
class QuoteRequest:
    """Request for a quote or a set of routes."""
    token_in: str
    token_out: str
    amount_in: float
    slippage_percent: float = 1.0
    user_address: Optional[str] = None

    def fingerprint_fields(self) -> Dict[str, Any]:
        return {
            "token_in": self.token_in,
            "token_out": self.token_out,
            "amount_in": self.amount_in,
            "slippage_percent": self.slippage_percent,
        }


@dataclass(frozen=True)
class SwapRequest:
    """Request to execute a swap through the router protocol."""
    token_in: str
    token_out: str
    amount_in: float
    amount_out_minimum: float
    recipient: str
    slippage_percent: float = 1.0
    route_id: str = ""
    deadline: int = 0
    gas_limit: int = 0


@dataclass(frozen=True)
class GasEstimate:
    """Gas estimate returned by the router protocol."""
    gas_limit: int
    gas_price: float
    estimated_cost: float
    confidence: float = 1.0


@dataclass(frozen=True)
class TxResult:
    """Result of one committed state-changing call."""
    tx_hash: str
    amount_in: float = 0.0
    amount_out: float = 0.0
    gas_used: float = 0.0  # denominated in the quote token
    timestamp: int = 0


@dataclass(frozen=True)
class SwapResult:
    """Result of an executed swap."""
    tx_hash: str
    route_id: str
    token_in: str
    token_out: str
    actual_amount_in: float
    actual_amount_out: float
    gas_used: float
    timestamp: int


class ArbitrageDirection(Enum):
    """Direction of arbitrage trade."""
    A_TO_B = "a_to_b"  # Buy on A, sell on B
    B_TO_A = "b_to_a"  # Buy on B, sell on A


@dataclass
class ArbitrageOpportunity:
    """Detected arbitrage opportunity. Derived value, recomputed per request."""
    asset: str
    amount: float
    protocol_a: str
    protocol_b: str
    price_a: float
    price_b: float
    price_discrepancy: float
    estimated_profit: float
    risk_score: float
    profitable: bool
    direction: ArbitrageDirection = ArbitrageDirection.A_TO_B
    gas_cost_fraction: float = 0.0
    timestamp: int = 0
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        """Set default values after initialization."""
        if self.metadata is None:
            self.metadata = {}
        if self.timestamp == 0:
            self.timestamp = int(time.time() * 1000)

    @property
    def buy_protocol(self) -> str:
        return self.protocol_a if self.direction == ArbitrageDirection.A_TO_B else self.protocol_b

    @property
    def sell_protocol(self) -> str:
        return self.protocol_b if self.direction == ArbitrageDirection.A_TO_B else self.protocol_a


@dataclass
class ArbitrageResult:
    """Result of an executed arbitrage."""
    opportunity: ArbitrageOpportunity
    tx_hashes: List[str]
    cost: float
    proceeds: float
    gas_used: float
    actual_profit: float
    execution_time_ms: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LeveragePosition:
    """Leveraged position created by the sequencer."""
    id: str
    user_address: str
    collateral_asset: str
    collateral_amount: float
    target_asset: str
    leverage_ratio: float
    borrow_asset: str
    borrowed_amount: float
    target_amount: float
    health_factor: float

    @property
    def total_exposure(self) -> float:
        return self.collateral_amount + self.borrowed_amount


@dataclass
class LeverageResult:
    """Result of opening a leveraged position."""
    position: LeveragePosition
    transactions: Dict[str, str]


@dataclass
class RebalanceResult:
    """Result of a leverage rebalance."""
    previous_health_factor: float
    new_health_factor: float
    action: str
    delta_amount: float
    transactions: Dict[str, str]


@dataclass
class UnwindResult:
    """Result of a leverage unwind."""
    unwind_ratio: float
    repaid_amount: float
    withdrawn_amount: float
    remaining_collateral: float
    remaining_debt: float
    final_health_factor: float
    transactions: Dict[str, str]


@dataclass(frozen=True)
class Holding:
    """Asset held by the user, valued in the quote token."""
    asset: str
    amount: float
    value: float

    @property
    def price(self) -> float:
        return self.value / self.amount if self.amount else 0.0


@dataclass(frozen=True)
class YieldSource:
    """Yield available for an asset on one protocol (APY in percent)."""
    protocol: str
    asset: str
    apy: float
    risk_score: float = 0.0


@dataclass
class Allocation:
    """Share of the portfolio placed in one (protocol, asset) slot."""
    protocol: str
    asset: str
    percentage: float
    value: float
    apy: float


@dataclass
class RebalanceMove:
    """Planned movement of value between two yield slots."""
    from_protocol: str
    from_asset: str
    to_protocol: str
    to_asset: str
    amount: float  # units of from_asset
    value: float


@dataclass
class YieldOptimizationResult:
    """Target allocation produced by the yield optimizer."""
    strategy: str
    allocations: List[Allocation]
    expected_apy: float
    baseline_apy: float
    risk_score: float
    improved: bool
    moves: List[RebalanceMove] = field(default_factory=list)
