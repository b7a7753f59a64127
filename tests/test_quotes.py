"""Test the quote/route pipeline and swap execution."""

import dataclasses

import pytest

from crossproto.config import CacheConfig, RecoveryConfig, RouterConfig
from crossproto.core.cache import QuoteRouteCache
from crossproto.core.errors import ClassifiedError, ErrorKind, ExecutionFailed, NetworkError
from crossproto.core.quotes import QuotePipeline, rank_routes
from crossproto.core.recovery import RecoveryEngine
from crossproto.core.types import QuoteRequest, SwapRequest

from fakes import FakeClock, FakeRouterClient, RecordingSleep, captured_warnings, make_route, run


class PipelineTestBase:
    cache_config = CacheConfig()
    recovery_config = RecoveryConfig()

    def setup_method(self):
        self.clock = FakeClock()
        self.sleep = RecordingSleep()
        self.client = FakeRouterClient(clock=self.clock)
        self.engine = RecoveryEngine(self.recovery_config, clock=self.clock, sleep=self.sleep)
        self.cache = QuoteRouteCache(self.cache_config, clock=self.clock)
        self.pipeline = QuotePipeline(self.client, self.cache, self.engine, RouterConfig())


class TestGetQuote(PipelineTestBase):
    """Test fetching and validating quotes."""

    def test_minimum_out_at_one_percent_slippage(self):
        self.client.quote_route = make_route("SEI", "USDC", 1e18, 1.5e9, fees_total=6.5e6)

        quote = run(self.pipeline.get_quote(QuoteRequest("SEI", "USDC", 1e18, 1.0)))

        assert quote.route.output_amount == 1.5e9
        assert quote.route.fees.is_consistent()
        assert quote.slippage_adjusted_amount_out == pytest.approx(1.485e9, rel=1e-3)
        assert not quote.is_expired(self.clock())

    def test_expired_quote_rejected(self):
        self.client.valid_for_ms = -1000

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.get_quote(QuoteRequest("SEI", "USDC", 100.0)))

        assert exc_info.value.kind == ErrorKind.QUOTE_EXPIRED
        assert self.client.calls["quote"] == 1

    def test_cache_hit_skips_client(self):
        request = QuoteRequest("SEI", "USDC", 100.0)
        first = run(self.pipeline.get_quote(request))
        second = run(self.pipeline.get_quote(request))

        assert self.client.calls["quote"] == 1
        assert second.route == first.route

    def test_expired_quote_rejected_on_cache_hit(self):
        self.client.valid_for_ms = 5000
        request = QuoteRequest("SEI", "USDC", 100.0)
        run(self.pipeline.get_quote(request))

        self.clock.advance(6000)  # still inside the quote TTL

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.get_quote(request))
        assert exc_info.value.kind == ErrorKind.QUOTE_EXPIRED
        assert self.client.calls["quote"] == 1

    def test_quote_refetched_after_ttl(self):
        request = QuoteRequest("SEI", "USDC", 100.0)
        run(self.pipeline.get_quote(request))
        self.clock.advance(self.cache.config.quote_ttl_ms)
        run(self.pipeline.get_quote(request))
        assert self.client.calls["quote"] == 2

    def test_zero_output_is_insufficient_liquidity(self):
        self.client.quote_route = make_route(amount_out=0.0, fees_total=0.0)

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.get_quote(QuoteRequest("SEI", "USDC", 1e18)))

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_LIQUIDITY

    def test_network_errors_are_retried(self):
        self.client.failures["quote"] = [NetworkError("reset")]

        quote = run(self.pipeline.get_quote(QuoteRequest("SEI", "USDC", 100.0)))

        assert quote.route.output_amount == pytest.approx(50.0)
        assert self.client.calls["quote"] == 2

    def test_analyze_swap_impact(self):
        self.client.price_impact = 0.02

        analysis = run(self.pipeline.analyze_swap_impact(QuoteRequest("SEI", "USDC", 100.0)))

        assert analysis["slippage_risk"] == "medium"
        assert analysis["recommendation"] == "caution"
        assert analysis["price_impact_percent"] == pytest.approx(2.0)

    def test_step_amounts_not_matching_input_are_flagged(self):
        route = make_route("SEI", "USDC", 1e18, 1.5e9)
        self.client.quote_route = dataclasses.replace(route, input_amount=2e18)

        with captured_warnings() as messages:
            quote = run(self.pipeline.get_quote(QuoteRequest("SEI", "USDC", 2e18)))

        assert quote.route.input_amount == 2e18
        assert any("step inputs" in m and route.id in m for m in messages)

    def test_consistent_route_not_flagged(self):
        with captured_warnings() as messages:
            run(self.pipeline.get_quote(QuoteRequest("SEI", "USDC", 100.0)))
        assert messages == []


class TestQuoteCacheDisabled(PipelineTestBase):
    cache_config = CacheConfig(enable_quote_cache=False)

    def test_every_quote_hits_client(self):
        request = QuoteRequest("SEI", "USDC", 100.0)
        run(self.pipeline.get_quote(request))
        run(self.pipeline.get_quote(request))
        assert self.client.calls["quote"] == 2


class TestGetRoutes(PipelineTestBase):
    """Test route ranking."""

    def test_best_route_dominates(self):
        self.client.route_list = [
            make_route(amount_out=100.0, fees_total=1.0, route_id="a", hops=2),
            make_route(amount_out=101.0, fees_total=0.5, route_id="b", hops=3),
            make_route(amount_out=102.0, fees_total=3.0, route_id="c", hops=1),
        ]

        route_set = run(self.pipeline.get_routes(QuoteRequest("SEI", "USDC", 1e18)))

        assert route_set.best_route.id == "b"
        assert all(route_set.best_route.net_output >= r.net_output for r in route_set.routes)
        assert [r.id for r in route_set.routes] == ["b", "c", "a"]

    def test_ties_prefer_lower_impact_then_fewer_hops(self):
        routes = [
            make_route(amount_out=100.0, fees_total=1.0, route_id="long", hops=3),
            make_route(amount_out=100.0, fees_total=1.0, route_id="short", hops=1),
            make_route(amount_out=100.0, fees_total=1.0, route_id="impact", price_impact=0.05, hops=1),
        ]
        assert [r.id for r in rank_routes(routes)] == ["short", "long", "impact"]

    def test_no_routes(self):
        self.client.route_list = []

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.get_routes(QuoteRequest("SEI", "USDC", 1e18)))

        assert exc_info.value.kind == ErrorKind.ROUTE_NOT_FOUND

    def test_routes_cached(self):
        request = QuoteRequest("SEI", "USDC", 100.0)
        run(self.pipeline.get_routes(request))
        run(self.pipeline.get_routes(request))
        assert self.client.calls["routes"] == 1

    def test_inconsistent_route_flagged(self):
        broken = dataclasses.replace(make_route(amount_out=100.0, fees_total=1.0, route_id="broken"),
                                     input_amount=3e18)
        self.client.route_list = [make_route(amount_out=100.0, fees_total=1.0, route_id="ok"), broken]

        with captured_warnings() as messages:
            route_set = run(self.pipeline.get_routes(QuoteRequest("SEI", "USDC", 1e18)))

        assert len(route_set.routes) == 2
        assert [m for m in messages if "step inputs" in m] == [
            f"Route broken step inputs {1e18} do not add up to input {3e18}",
        ]


class TestExecuteSwap(PipelineTestBase):
    """Test swap execution."""

    def swap(self, **overrides):
        fields = dict(token_in="SEI", token_out="USDC", amount_in=100.0, amount_out_minimum=0.0,
                      recipient="0xuser", slippage_percent=1.0)
        fields.update(overrides)
        return SwapRequest(**fields)

    def test_successful_swap(self):
        result = run(self.pipeline.execute_swap(self.swap()))

        executed = self.client.executed[0]
        assert result.tx_hash == "0xrouter_a0001"
        assert result.actual_amount_out == pytest.approx(50.0)
        assert executed.gas_limit == 180_000
        assert executed.amount_out_minimum == pytest.approx(49.5)
        assert executed.route_id == "router_a-route"

    def test_invalid_slippage_rejected_before_any_call(self):
        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.execute_swap(self.swap(slippage_percent=60.0)))

        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED
        assert self.client.calls["quote"] == 0

    def test_slippage_above_configured_maximum(self):
        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.execute_swap(self.swap(slippage_percent=10.0)))

        assert exc_info.value.kind == ErrorKind.SLIPPAGE_EXCEEDED
        assert self.client.calls["execute"] == 0

    def test_minimum_out_above_quote(self):
        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.execute_swap(self.swap(amount_out_minimum=60.0)))

        assert exc_info.value.kind == ErrorKind.SLIPPAGE_EXCEEDED
        assert self.client.calls["execute"] == 0

    def test_expired_quote_is_refreshed(self):
        self.client.expire_next = 1

        result = run(self.pipeline.execute_swap(self.swap()))

        assert result.tx_hash
        assert self.client.calls["quote"] == 2
        assert self.sleep.delays == [1000]

    def test_failed_write_not_replayed(self):
        self.client.failures["execute"] = [NetworkError("reset")]

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.execute_swap(self.swap()))

        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR
        assert self.client.calls["execute"] == 1

    def test_reverted_swap(self):
        self.client.failures["execute"] = [ExecutionFailed("reverted", tx_hash="0xdead")]

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.execute_swap(self.swap()))

        assert exc_info.value.kind == ErrorKind.EXECUTION_FAILED
        assert "0xdead" in exc_info.value.error.technical_message

    def test_low_confidence_gas_estimate(self):
        self.client.gas_confidence = 0.1

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.pipeline.execute_swap(self.swap()))

        assert exc_info.value.error.root_cause.kind == ErrorKind.GAS_ESTIMATION_FAILED
        assert self.client.calls["estimate_gas"] == 3
        assert self.client.calls["execute"] == 0


class TestRetriedWrites(PipelineTestBase):
    recovery_config = RecoveryConfig(retry_writes=True)

    def test_write_replayed_when_enabled(self):
        self.client.failures["execute"] = [NetworkError("reset")]

        run(self.pipeline.execute_swap(SwapRequest("SEI", "USDC", 100.0, 0.0, "0xuser")))

        assert self.client.calls["execute"] == 2
