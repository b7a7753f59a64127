"""
Request/response surface of the orchestrator.

``OrchestrationService.handle`` takes an operation name and a JSON-shaped
request and always answers with a JSON-shaped dict: either the result data or
the classified error.
"""

import dataclasses
import math
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .config import Config
from .coordination import AgentCoordinator, AgentRegistry, CoordinationScenario
from .core.cache import QuoteRouteCache
from .core.detector import ArbitrageDetector
from .core.errors import ClassifiedError, ProtocolError, ValidationFailed
from .core.executor import ArbitrageExecutor
from .core.lending import LendingGateway
from .core.leverage import LeverageManager
from .core.quotes import QuotePipeline
from .core.recovery import Deadline, RecoveryEngine
from .core.types import Holding, QuoteRequest, SwapRequest
from .core.utils import Clock, Sleep, now_ms, sleep_ms
from .core.yield_optimizer import YieldOptimizer
from .protocols.base import LendingProtocolClient, LendingRequest, RouterProtocolClient
from .protocols.lending import HttpLendingClient
from .protocols.router import HttpRouterClient
from .protocols.venues import RouterVenue


# --- request models ---------------------------------------------------------

class QuoteRequestModel(BaseModel):
    token_in: str
    token_out: str
    amount_in: float = Field(gt=0)
    slippage_percent: float = Field(default=1.0, ge=0, le=50)
    user_address: Optional[str] = None


class SwapRequestModel(BaseModel):
    token_in: str
    token_out: str
    amount_in: float = Field(gt=0)
    recipient: str
    amount_out_minimum: float = Field(default=0.0, ge=0)
    slippage_percent: float = Field(default=1.0, ge=0, le=50)


class LendingRequestModel(BaseModel):
    asset: str
    amount: float = Field(gt=0)
    user_address: str


class DetectArbitrageModel(BaseModel):
    asset: str
    amount: float = Field(gt=0)
    protocol_a: Optional[str] = None
    protocol_b: Optional[str] = None


class ExecuteArbitrageModel(DetectArbitrageModel):
    user_address: str


class OpenLeverageModel(BaseModel):
    user_address: str
    collateral_asset: str
    collateral_amount: float = Field(gt=0)
    target_asset: str
    leverage_ratio: float
    borrow_asset: Optional[str] = None
    slippage_percent: Optional[float] = None


class RebalanceLeverageModel(BaseModel):
    user_address: str
    collateral_asset: str
    target_asset: str
    borrow_asset: Optional[str] = None
    target_health_factor: Optional[float] = None


class UnwindLeverageModel(BaseModel):
    user_address: str
    collateral_asset: str
    target_asset: str
    borrow_asset: Optional[str] = None
    unwind_ratio: float = 1.0


class HoldingModel(BaseModel):
    asset: str
    amount: float
    value: float


class OptimizeYieldModel(BaseModel):
    holdings: List[HoldingModel]
    risk_tolerance: str = "medium"
    horizon_days: Optional[int] = None
    execute: bool = False
    user_address: Optional[str] = None


class ScenarioModel(BaseModel):
    scenario_id: str
    user_intent: str = ""
    portfolio: Dict[str, Any] = Field(default_factory=dict)
    market: Dict[str, Any] = Field(default_factory=dict)
    risk_tolerance: str = "medium"


class CoordinateAgentsModel(BaseModel):
    scenario: ScenarioModel
    required_agents: List[str]
    optional_agents: List[str] = Field(default_factory=list)
    mode: Optional[str] = None
    conflict_resolution: Optional[str] = None


def to_jsonable(value: Any) -> Any:
    """Convert results (dataclasses, enums, tuples) into JSON-shaped data."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, float) and math.isinf(value):
        return None
    return value


Handler = Callable[..., Awaitable[Any]]

# operations made of several state-changing steps; they share the request deadline step by step
COMPOSITE_OPERATIONS = frozenset({
    "executeArbitrage", "openLeverage", "rebalanceLeverage", "unwindLeverage", "optimizeYield",
})


class OrchestrationService:
    """Wires the components together and dispatches operations by name."""

    def __init__(self, config: Config, routers: Dict[str, RouterProtocolClient],
                 lending_client: LendingProtocolClient, registry: Optional[AgentRegistry] = None,
                 clock: Clock = now_ms, sleep: Sleep = sleep_ms):
        if not routers:
            raise ValueError("at least one router client is required")
        self.config = config
        self.engine = RecoveryEngine(config.recovery, clock=clock, sleep=sleep)
        self.cache = QuoteRouteCache(config.cache, clock=clock)
        self.pipelines = {
            name: QuotePipeline(client, self.cache, self.engine, config.router)
            for name, client in routers.items()
        }
        primary = config.router.name if config.router.name in routers else next(iter(routers))
        self.pipeline = self.pipelines[primary]
        self.lending = LendingGateway(lending_client, self.engine, config.lending)

        venues = {
            name: RouterVenue(name, pipeline, config.router.quote_token, config.router.default_slippage_percent)
            for name, pipeline in self.pipelines.items()
        }
        self.detector = ArbitrageDetector(config.arbitrage, venues, self.engine)
        self.executor = ArbitrageExecutor(config.arbitrage, venues, self.engine)
        self.leverage = LeverageManager(config.leverage, self.lending, self.pipeline, self.engine)
        self.yield_optimizer = YieldOptimizer(config.yield_opt, self.lending, self.pipeline, self.engine)
        self.registry = registry or AgentRegistry()
        self.coordinator = AgentCoordinator(self.registry, config.coordination, self.engine)

        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            "getQuote": (QuoteRequestModel, self._get_quote),
            "getRoutes": (QuoteRequestModel, self._get_routes),
            "analyzeSwapImpact": (QuoteRequestModel, self._analyze_swap_impact),
            "estimateGas": (SwapRequestModel, self._estimate_gas),
            "executeSwap": (SwapRequestModel, self._execute_swap),
            "supply": (LendingRequestModel, lambda r: self.lending.supply(self._lending_request(r))),
            "withdraw": (LendingRequestModel, lambda r: self.lending.withdraw(self._lending_request(r))),
            "borrow": (LendingRequestModel, lambda r: self.lending.borrow(self._lending_request(r))),
            "repay": (LendingRequestModel, lambda r: self.lending.repay(self._lending_request(r))),
            "detectArbitrage": (DetectArbitrageModel, self._detect_arbitrage),
            "executeArbitrage": (ExecuteArbitrageModel, self._execute_arbitrage),
            "openLeverage": (OpenLeverageModel, self._open_leverage),
            "rebalanceLeverage": (RebalanceLeverageModel, self._rebalance_leverage),
            "unwindLeverage": (UnwindLeverageModel, self._unwind_leverage),
            "optimizeYield": (OptimizeYieldModel, self._optimize_yield),
            "coordinateAgents": (CoordinateAgentsModel, self._coordinate_agents),
        }

    @classmethod
    def from_config(cls, config: Config, registry: Optional[AgentRegistry] = None) -> "OrchestrationService":
        """Service talking to the REST gateways named in the config."""
        routers: Dict[str, RouterProtocolClient] = {
            config.router.name: HttpRouterClient(config.router, name=config.router.name),
        }
        for name, url in config.router.venues.items():
            routers[name] = HttpRouterClient(config.router.model_copy(update={"api_url": url}), name=name)
        return cls(config, routers, HttpLendingClient(config.lending), registry)

    def operations(self) -> List[str]:
        return list(self._handlers)

    # --- handlers -------------------------------------------------------------

    @staticmethod
    def _quote_request(r: QuoteRequestModel) -> QuoteRequest:
        return QuoteRequest(r.token_in, r.token_out, r.amount_in, r.slippage_percent, r.user_address)

    @staticmethod
    def _swap_request(r: SwapRequestModel) -> SwapRequest:
        return SwapRequest(token_in=r.token_in, token_out=r.token_out, amount_in=r.amount_in,
                           amount_out_minimum=r.amount_out_minimum, recipient=r.recipient,
                           slippage_percent=r.slippage_percent)

    @staticmethod
    def _lending_request(r: LendingRequestModel) -> LendingRequest:
        return LendingRequest(r.asset, r.amount, r.user_address)

    async def _get_quote(self, r: QuoteRequestModel):
        return await self.pipeline.get_quote(self._quote_request(r))

    async def _get_routes(self, r: QuoteRequestModel):
        return await self.pipeline.get_routes(self._quote_request(r))

    async def _analyze_swap_impact(self, r: QuoteRequestModel):
        return await self.pipeline.analyze_swap_impact(self._quote_request(r))

    async def _estimate_gas(self, r: SwapRequestModel):
        return await self.pipeline.estimate_gas(self._swap_request(r))

    async def _execute_swap(self, r: SwapRequestModel):
        return await self.pipeline.execute_swap(self._swap_request(r))

    async def _detect_arbitrage(self, r: DetectArbitrageModel):
        return await self.detector.detect(r.asset, r.amount, r.protocol_a, r.protocol_b)

    async def _execute_arbitrage(self, r: ExecuteArbitrageModel, deadline: Deadline):
        opportunity = await deadline.run(
            lambda: self.detector.detect(r.asset, r.amount, r.protocol_a, r.protocol_b))
        return await self.executor.execute(opportunity, r.user_address, deadline=deadline)

    async def _open_leverage(self, r: OpenLeverageModel, deadline: Deadline):
        return await self.leverage.open_position(
            r.user_address, r.collateral_asset, r.collateral_amount, r.target_asset, r.leverage_ratio,
            borrow_asset=r.borrow_asset, slippage_percent=r.slippage_percent, deadline=deadline,
        )

    async def _rebalance_leverage(self, r: RebalanceLeverageModel, deadline: Deadline):
        return await self.leverage.rebalance(r.user_address, r.collateral_asset, r.target_asset,
                                             r.borrow_asset, r.target_health_factor, deadline=deadline)

    async def _unwind_leverage(self, r: UnwindLeverageModel, deadline: Deadline):
        return await self.leverage.unwind(r.user_address, r.collateral_asset, r.target_asset,
                                          r.borrow_asset, r.unwind_ratio, deadline=deadline)

    async def _optimize_yield(self, r: OptimizeYieldModel, deadline: Deadline):
        if r.execute and not r.user_address:
            raise ValidationFailed(["user_address is required to execute a rebalance"])
        holdings = [Holding(h.asset, h.amount, h.value) for h in r.holdings]
        # when executing, plan only over sources the rebalance can move funds into
        result = await deadline.run(lambda: self.yield_optimizer.optimize(
            holdings, r.risk_tolerance, horizon_days=r.horizon_days, executable_only=r.execute,
        ))
        data = {"optimization": to_jsonable(result)}
        if r.execute:
            data["execution"] = await self.yield_optimizer.execute_rebalance(r.user_address, result, deadline)
        return data

    async def _coordinate_agents(self, r: CoordinateAgentsModel, timeout_ms: Optional[int] = None):
        scenario = CoordinationScenario(**r.scenario.model_dump())
        return await self.coordinator.coordinate(
            scenario, r.required_agents, r.optional_agents, mode=r.mode,
            conflict_resolution=r.conflict_resolution, timeout_ms=timeout_ms,
        )

    # --- dispatch -------------------------------------------------------------

    def _error_response(self, operation: str, error: BaseException) -> Dict[str, Any]:
        enhanced = self.engine.enhance(error, self.engine.context(operation))
        return {"success": False, "operation": operation, "error": enhanced.to_dict()}

    async def handle(self, operation: str, request: Optional[Dict[str, Any]] = None,
                     timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        """Run one operation and return its JSON-shaped result or classified error."""
        entry = self._handlers.get(operation)
        if entry is None:
            return self._error_response(operation, ValidationFailed(
                [f"unknown operation '{operation}', expected one of {', '.join(self._handlers)}"]
            ))
        model_cls, handler = entry

        try:
            payload = model_cls.model_validate(request or {})
        except ValidationError as exc:
            errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
            return self._error_response(operation, ValidationFailed(errors))

        logger.debug(f"Handling {operation}")
        deadline = Deadline(timeout_ms or self.config.service.operation_timeout_ms, operation)
        try:
            if operation == "coordinateAgents":
                # the coordinator enforces its own deadline and reports coordination_timeout
                data = await self._coordinate_agents(payload, timeout_ms)
            elif operation in COMPOSITE_OPERATIONS:
                data = await handler(payload, deadline)
            else:
                data = await deadline.run(lambda: handler(payload))
        except (ClassifiedError, ProtocolError) as exc:
            return self._error_response(operation, exc)
        return {"success": True, "operation": operation, "data": to_jsonable(data)}
