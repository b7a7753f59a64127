"""Contracts for the external protocols the orchestrator talks to."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.types import (
    GasEstimate, QuoteRequest, Route, RouteFees, RouteStep, SwapRequest, TokenInfo, TxResult,
    YieldSource,
)


@dataclass(frozen=True)
class QuoteResponse:
    """Quote as returned by the router protocol."""
    quote_id: str
    route: Route
    valid_until: int


@dataclass(frozen=True)
class LendingAsset:
    """Market listed on the lending protocol (rates in percent APY)."""
    symbol: str
    address: str = ""
    supply_apy: float = 0.0
    borrow_apy: float = 0.0
    ltv: float = 0.75
    liquidation_threshold: float = 0.8
    risk_score: float = 0.2


@dataclass(frozen=True)
class LendingRequest:
    """Supply / withdraw / borrow / repay request."""
    asset: str
    amount: float
    user_address: str


@dataclass
class LendingPosition:
    """Authoritative account state on the lending protocol, amounts per asset."""
    user_address: str
    supplies: Dict[str, float] = field(default_factory=dict)
    borrows: Dict[str, float] = field(default_factory=dict)
    collateral_value: float = 0.0
    debt_value: float = 0.0
    health_factor: float = float("inf")

    def supplied(self, asset: str) -> float:
        return self.supplies.get(asset, 0.0)

    def borrowed(self, asset: str) -> float:
        return self.borrows.get(asset, 0.0)


class RouterProtocolClient(ABC):
    """Swap routing aggregator."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def quote(self, request: QuoteRequest) -> QuoteResponse:
        """Price the best route for a request."""
        pass

    @abstractmethod
    async def routes(self, request: QuoteRequest) -> List[Route]:
        """Candidate routes for a request."""
        pass

    @abstractmethod
    async def estimate_gas(self, request: SwapRequest) -> GasEstimate:
        """Estimate gas for a swap."""
        pass

    @abstractmethod
    async def execute(self, request: SwapRequest) -> TxResult:
        """Execute a swap."""
        pass

    async def liquidity_yields(self) -> List[YieldSource]:
        """Yield available from providing liquidity. Routers without pools report none."""
        return []


class LendingProtocolClient(ABC):
    """Collateralized lending market."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def supported_assets(self) -> List[LendingAsset]:
        pass

    @abstractmethod
    async def supply(self, request: LendingRequest) -> TxResult:
        pass

    @abstractmethod
    async def withdraw(self, request: LendingRequest) -> TxResult:
        pass

    @abstractmethod
    async def borrow(self, request: LendingRequest) -> TxResult:
        pass

    @abstractmethod
    async def repay(self, request: LendingRequest) -> TxResult:
        pass

    @abstractmethod
    async def user_position(self, address: str) -> LendingPosition:
        pass

    @abstractmethod
    async def health_factor(self, address: str) -> float:
        pass


# --- wire format ------------------------------------------------------------

def token_from_dict(data: Dict[str, Any]) -> TokenInfo:
    return TokenInfo(
        address=data.get("address", data.get("symbol", "")),
        symbol=data.get("symbol", data.get("address", "")),
        decimals=int(data.get("decimals", 18)),
    )


def route_from_dict(data: Dict[str, Any]) -> Route:
    """Build a ``Route`` from the router's JSON payload (camelCase keys)."""
    fees = data.get("fees", {})
    steps = tuple(
        RouteStep(
            protocol=s.get("protocol", ""),
            token_in=s["tokenIn"],
            token_out=s["tokenOut"],
            amount_in=float(s["amountIn"]),
            amount_out=float(s["amountOut"]),
            pool=s.get("pool", ""),
            fee=float(s.get("fee", 0.0)),
        )
        for s in data.get("steps", [])
    )
    return Route(
        id=data["id"],
        input_token=token_from_dict(data["inputToken"]),
        output_token=token_from_dict(data["outputToken"]),
        input_amount=float(data["inputAmount"]),
        output_amount=float(data["outputAmount"]),
        price_impact=float(data.get("priceImpact", 0.0)),
        execution_price=float(data.get("executionPrice", 0.0)),
        minimum_amount_out=float(data.get("minimumAmountOut", 0.0)),
        steps=steps,
        gas_estimate=int(data.get("gasEstimate", 0)),
        fees=RouteFees(
            protocol=float(fees.get("protocol", 0.0)),
            gas=float(fees.get("gas", 0.0)),
            liquidity_provider=float(fees.get("liquidityProvider", 0.0)),
            total=float(fees.get("total", 0.0)),
        ),
    )


def tx_from_dict(data: Dict[str, Any]) -> TxResult:
    return TxResult(
        tx_hash=data["txHash"],
        amount_in=float(data.get("amountIn", 0.0)),
        amount_out=float(data.get("amountOut", 0.0)),
        gas_used=float(data.get("gasUsed", 0.0)),
        timestamp=int(data.get("timestamp", 0)),
    )
