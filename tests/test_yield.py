"""Test yield allocation planning and execution."""

import pytest

from crossproto.config import LendingConfig, RiskToleranceProfile, RouterConfig, YieldConfig
from crossproto.core.cache import QuoteRouteCache
from crossproto.core.errors import ClassifiedError, ErrorKind
from crossproto.core.lending import LendingGateway
from crossproto.core.quotes import QuotePipeline
from crossproto.core.recovery import RecoveryEngine
from crossproto.core.types import Holding, YieldSource
from crossproto.core.yield_optimizer import WALLET, YieldOptimizer, plan_allocation

from fakes import FakeClock, FakeLendingClient, FakeRouterClient, RecordingSleep, run

MEDIUM = RiskToleranceProfile(max_source_risk=0.6, max_reallocation=0.5)

HOLDINGS = [Holding("USDC", 1000.0, 1000.0), Holding("SEI", 2000.0, 1000.0)]
SOURCES = [
    YieldSource("lending", "USDC", 5.0, 0.2),
    YieldSource("lending", "SEI", 2.0, 0.2),
    YieldSource("router_a", "SEI-USDC LP", 20.0, 0.8),
]


class TestPlanAllocation:
    """Test the allocation planner."""

    def test_short_horizon_keeps_baseline(self):
        result = plan_allocation(HOLDINGS, SOURCES, MEDIUM, swap_cost_fraction=0.003, horizon_days=30)

        assert result.strategy == "baseline"
        assert not result.improved
        assert result.expected_apy == pytest.approx(3.5)
        assert result.expected_apy == result.baseline_apy
        assert result.moves == []

    def test_long_horizon_reallocates(self):
        result = plan_allocation(HOLDINGS, SOURCES, MEDIUM, swap_cost_fraction=0.003, horizon_days=365)

        assert result.improved
        assert result.expected_apy >= result.baseline_apy
        assert result.expected_apy == pytest.approx((5000 + 1000 + 2500 - 150) / 2000)
        assert sum(a.percentage for a in result.allocations) == pytest.approx(100.0, abs=1e-9)
        by_slot = {(a.protocol, a.asset): a.percentage for a in result.allocations}
        assert by_slot == {("lending", "USDC"): pytest.approx(75.0), ("lending", "SEI"): pytest.approx(25.0)}
        move = result.moves[0]
        assert (move.from_asset, move.to_asset) == ("SEI", "USDC")
        assert move.amount == pytest.approx(1000.0)

    def test_risky_sources_excluded(self):
        result = plan_allocation(HOLDINGS, SOURCES, MEDIUM, 0.003, 365)
        assert all(a.protocol != "router_a" for a in result.allocations)

    def test_high_tolerance_uses_risky_source(self):
        high = RiskToleranceProfile(max_source_risk=1.0, max_reallocation=1.0)
        result = plan_allocation(HOLDINGS, SOURCES, high, 0.003, 365)

        assert result.improved
        assert result.allocations[0].protocol == "router_a"
        assert sum(a.percentage for a in result.allocations) == pytest.approx(100.0, abs=1e-9)

    def test_no_eligible_source_holds_in_wallet(self):
        result = plan_allocation([Holding("DOGE", 10.0, 10.0)], [], MEDIUM, 0.003, 365)

        assert result.allocations[0].protocol == WALLET
        assert result.allocations[0].percentage == pytest.approx(100.0)
        assert result.baseline_apy == 0.0


class TestYieldOptimizer:
    """Test the optimizer against the protocol clients."""

    def setup_method(self):
        clock = FakeClock()
        self.engine = RecoveryEngine(clock=clock, sleep=RecordingSleep())
        self.router = FakeRouterClient(clock=clock)
        self.router.pools = [YieldSource("router_a", "SEI-USDC LP", 20.0, 0.8)]
        self.lending_client = FakeLendingClient()
        self.optimizer = YieldOptimizer(
            YieldConfig(default_horizon_days=365),
            LendingGateway(self.lending_client, self.engine, LendingConfig()),
            QuotePipeline(self.router, QuoteRouteCache(clock=clock), self.engine, RouterConfig()),
            self.engine,
        )

    def test_sources_from_both_protocols(self):
        sources = run(self.optimizer.sources())
        assert {(s.protocol, s.asset) for s in sources} == {
            ("lending", "SEI"), ("lending", "USDC"), ("router_a", "SEI-USDC LP"),
        }

    def test_optimize_fetches_sources(self):
        result = run(self.optimizer.optimize(HOLDINGS, "medium"))
        assert result.improved
        assert result.expected_apy > result.baseline_apy

    def test_empty_holdings_rejected(self):
        with pytest.raises(ClassifiedError) as exc_info:
            run(self.optimizer.optimize([], "medium"))
        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED

    def test_execute_rebalance(self):
        result = run(self.optimizer.optimize(HOLDINGS, "medium"))

        summary = run(self.optimizer.execute_rebalance("0xuser", result))

        assert summary["moves"] == 1
        assert list(summary["transactions"]) == ["withdraw_0", "swap_0", "supply_0"]
        assert self.router.executed[0].amount_in == pytest.approx(1000.0)
        assert self.lending_client.supplies["0xuser"]["USDC"] == pytest.approx(500.0)

    def test_execute_rejects_pool_moves(self):
        high = run(self.optimizer.optimize(HOLDINGS, "high"))

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.optimizer.execute_rebalance("0xuser", high))

        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED
        assert self.router.executed == []

    def test_executable_plan_skips_pools(self):
        result = run(self.optimizer.optimize(HOLDINGS, "high", executable_only=True))

        assert result.improved
        assert all(a.protocol != "router_a" for a in result.allocations)

        summary = run(self.optimizer.execute_rebalance("0xuser", result))

        assert list(summary["transactions"]) == ["withdraw_0", "swap_0", "supply_0"]
        assert self.lending_client.supplies["0xuser"]["USDC"] == pytest.approx(1000.0)
