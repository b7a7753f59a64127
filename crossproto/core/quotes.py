"""
Quote and route pipeline in front of the router protocol.

Quotes are fetched or reused from the cache and validated on every read, so
an expired quote is rejected even when it comes from a cache hit.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from ..config import CacheConfig, RecoveryConfig, RouterConfig
from ..protocols.base import QuoteResponse, RouterProtocolClient
from .cache import CacheKind, QuoteRouteCache, fingerprint
from .errors import (
    ClassifiedError, ErrorContext, ErrorKind, GasEstimationFailed, InsufficientLiquidity,
    ProtocolError, QuoteExpired, RouteNotFound, SlippageExceeded, ValidationFailed,
)
from .recovery import RecoveryEngine, RetryState, call_with_timeout
from .types import (
    GasEstimate, Quote, QuoteRequest, Route, RouteSet, SwapRequest, SwapResult,
)
from .utils import minimum_amount_out

MAX_SLIPPAGE_PERCENT = 50.0


def rank_routes(routes: List[Route]) -> List[Route]:
    """Order routes best first: highest net output, then lower price impact, then fewer hops."""
    return sorted(routes, key=lambda r: (-r.net_output, r.price_impact, r.hop_count))


def validate_swap_request(request: SwapRequest, max_slippage_percent: Optional[float] = None) -> None:
    """Reject malformed swap requests before anything is sent to the router."""
    errors = []
    if not request.token_in:
        errors.append("token_in is required")
    if not request.token_out:
        errors.append("token_out is required")
    if request.amount_in <= 0:
        errors.append("amount_in must be positive")
    if not request.recipient:
        errors.append("recipient is required")
    if request.slippage_percent < 0 or request.slippage_percent > MAX_SLIPPAGE_PERCENT:
        errors.append(f"slippage_percent must be between 0 and {MAX_SLIPPAGE_PERCENT:.0f}")
    if errors:
        raise ValidationFailed(errors)
    if max_slippage_percent is not None and request.slippage_percent > max_slippage_percent:
        raise SlippageExceeded(expected=max_slippage_percent, actual=request.slippage_percent,
                               limit=max_slippage_percent)


class QuotePipeline:
    """Fetch-or-reuse quotes and routes, validate them, and execute swaps."""

    def __init__(self, client: RouterProtocolClient, cache: QuoteRouteCache, engine: RecoveryEngine,
                 router_config: Optional[RouterConfig] = None):
        self.client = client
        self.cache = cache
        self.engine = engine
        self.config = router_config or RouterConfig()

    @property
    def cache_config(self) -> CacheConfig:
        return self.cache.config

    @property
    def recovery_config(self) -> RecoveryConfig:
        return self.engine.config

    def _fail(self, error: ProtocolError, context: ErrorContext) -> ClassifiedError:
        return ClassifiedError(self.engine.enhance(error, context))

    @staticmethod
    def _check_route(route: Route) -> bool:
        """Warn about routes whose fee or step amounts do not add up."""
        consistent = True
        if not route.fees.is_consistent():
            logger.warning(f"Route {route.id} fee breakdown does not add up to total {route.fees.total}")
            consistent = False
        if not route.steps_consistent():
            entering = sum(step.amount_in for step in route.steps)
            logger.warning(f"Route {route.id} step inputs {entering} do not add up to input {route.input_amount}")
            consistent = False
        return consistent

    def _validate_quote(self, response: QuoteResponse, context: ErrorContext) -> None:
        now = self.engine.clock()
        if response.valid_until <= now:
            raise self._fail(QuoteExpired(response.quote_id, response.valid_until), context)
        route = response.route
        if route.output_amount <= 0:
            pair = f"{route.input_token.symbol}/{route.output_token.symbol}"
            raise self._fail(InsufficientLiquidity(pair, route.input_amount, route.output_amount), context)
        self._check_route(route)

    async def get_quote(self, request: QuoteRequest, use_cache: bool = True) -> Quote:
        """
        Get a validated quote for a request.

        Raises:
            ClassifiedError: quote_expired when the quote is past ``valid_until``
            (also on a cache hit), insufficient_liquidity for a zero output, or
            the classified client failure
        """
        context = self.engine.context("get_quote", request.user_address,
                                      token_in=request.token_in, token_out=request.token_out)
        key = fingerprint(CacheKind.QUOTE, {**request.fingerprint_fields(), "protocol": self.client.name})
        response = self.cache.get(CacheKind.QUOTE, key) if use_cache else None
        from_cache = response is not None

        if response is None:
            response = await self.engine.run(
                lambda: call_with_timeout(self.client.quote(request), self.config.timeout_ms, "get_quote"),
                context,
            )

        self._validate_quote(response, context)

        if not from_cache and self.cache_config.enable_quote_cache:
            self.cache.put(CacheKind.QUOTE, key, response)

        route = response.route
        logger.debug(f"Quote {response.quote_id} {request.token_in}->{request.token_out}: "
                     f"{route.output_amount} (cache={'hit' if from_cache else 'miss'})")
        return Quote(
            route=route,
            issued_at=self.engine.clock(),
            valid_until=response.valid_until,
            slippage_adjusted_amount_out=minimum_amount_out(route.output_amount, request.slippage_percent),
        )

    async def get_routes(self, request: QuoteRequest) -> RouteSet:
        """Candidate routes ranked best first, with the best one selected."""
        context = self.engine.context("get_routes", request.user_address,
                                      token_in=request.token_in, token_out=request.token_out)
        key = fingerprint(CacheKind.ROUTES, {**request.fingerprint_fields(), "protocol": self.client.name})
        cached = self.cache.get(CacheKind.ROUTES, key)
        if cached is not None:
            return cached

        routes = await self.engine.run(
            lambda: call_with_timeout(self.client.routes(request), self.config.timeout_ms, "get_routes"),
            context,
        )
        if not routes:
            raise self._fail(RouteNotFound(request.token_in, request.token_out, request.amount_in), context)

        usable = [r for r in routes if r.output_amount > 0]
        for route in usable:
            self._check_route(route)
        if not usable:
            pair = f"{request.token_in}/{request.token_out}"
            raise self._fail(InsufficientLiquidity(pair, request.amount_in, 0.0), context)

        ranked = rank_routes(usable)
        route_set = RouteSet(routes=tuple(ranked), best_route=ranked[0], fetched_at=self.engine.clock())
        if self.cache_config.enable_route_cache:
            self.cache.put(CacheKind.ROUTES, key, route_set)

        logger.info(f"Found {len(ranked)} routes {request.token_in}->{request.token_out}, "
                    f"best {ranked[0].id} net {ranked[0].net_output}")
        return route_set

    async def estimate_gas(self, request: SwapRequest, user_address: Optional[str] = None) -> GasEstimate:
        """Gas estimate for a swap; low-confidence estimates fail and are retried."""
        context = self.engine.context("estimate_gas", user_address or request.recipient)
        key = fingerprint(CacheKind.GAS, {
            "token_in": request.token_in, "token_out": request.token_out, "amount_in": request.amount_in,
            "protocol": self.client.name,
        })
        cached = self.cache.get(CacheKind.GAS, key)
        if cached is not None:
            return cached

        async def _estimate() -> GasEstimate:
            estimate = await call_with_timeout(self.client.estimate_gas(request), self.config.timeout_ms,
                                               "estimate_gas")
            if estimate.confidence < self.config.min_gas_confidence:
                raise GasEstimationFailed(
                    f"confidence {estimate.confidence:.2f} below {self.config.min_gas_confidence:.2f}"
                )
            return estimate

        estimate = await self.engine.run(_estimate, context)
        self.cache.put(CacheKind.GAS, key, estimate)
        return estimate

    async def _quote_with_refresh(self, request: QuoteRequest) -> Quote:
        """Get a quote, re-fetching past the cache when it turns out to be expired."""
        try:
            return await self.get_quote(request)
        except ClassifiedError as exc:
            if exc.kind != ErrorKind.QUOTE_EXPIRED:
                raise
            state = RetryState.for_context(exc.error.context)
            return await self.engine.attempt_recovery(
                exc.error, lambda: self.get_quote(request, use_cache=False), state,
            )

    async def execute_swap(self, request: SwapRequest) -> SwapResult:
        """Validate, quote, estimate gas and execute a swap."""
        context = self.engine.context("execute_swap", request.recipient,
                                      token_in=request.token_in, token_out=request.token_out)
        try:
            validate_swap_request(request, self.config.max_slippage_percent)
        except ProtocolError as exc:
            raise self._fail(exc, context)

        quote_request = QuoteRequest(request.token_in, request.token_out, request.amount_in,
                                     request.slippage_percent, request.recipient)
        quote = await self._quote_with_refresh(quote_request)
        if request.amount_out_minimum > quote.route.output_amount:
            raise self._fail(SlippageExceeded(expected=request.amount_out_minimum,
                                              actual=quote.route.output_amount,
                                              limit=request.slippage_percent), context)

        gas = await self.estimate_gas(request)
        swap = SwapRequest(
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount_in,
            amount_out_minimum=max(request.amount_out_minimum, quote.slippage_adjusted_amount_out),
            recipient=request.recipient,
            slippage_percent=request.slippage_percent,
            route_id=quote.route.id,
            deadline=quote.valid_until,
            gas_limit=int(gas.gas_limit * self.config.gas_limit_multiplier),
        )
        tx = await self.engine.run(
            lambda: call_with_timeout(self.client.execute(swap), self.config.timeout_ms, "execute_swap"),
            context, retry=self.recovery_config.retry_writes,
        )
        logger.info(f"Swapped {tx.amount_in} {request.token_in} -> {tx.amount_out} {request.token_out} "
                    f"(tx {tx.tx_hash})")
        return SwapResult(
            tx_hash=tx.tx_hash,
            route_id=quote.route.id,
            token_in=request.token_in,
            token_out=request.token_out,
            actual_amount_in=tx.amount_in or request.amount_in,
            actual_amount_out=tx.amount_out,
            gas_used=tx.gas_used,
            timestamp=tx.timestamp or self.engine.clock(),
        )

    async def analyze_swap_impact(self, request: QuoteRequest) -> Dict[str, Any]:
        """Price impact assessment of a quote with a sizing recommendation."""
        quote = await self.get_quote(request)
        route = quote.route
        impact_percent = route.price_impact * 100

        if impact_percent < 1:
            risk, recommendation = "low", "proceed"
        elif impact_percent < 3:
            risk, recommendation = "medium", "caution"
        else:
            risk, recommendation = "high", "split_order"

        return {
            "price_impact": route.price_impact,
            "price_impact_percent": impact_percent,
            "slippage_risk": risk,
            "recommendation": recommendation,
            "execution_price": route.execution_price,
            "minimum_amount_out": quote.slippage_adjusted_amount_out,
            "total_fees": route.fees.total,
            "hops": route.hop_count,
        }
