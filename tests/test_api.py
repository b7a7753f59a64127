"""Test the operation dispatch surface."""

import pytest

from crossproto.api import OrchestrationService, to_jsonable
from crossproto.config import Config, ServiceConfig
from crossproto.coordination import AgentRegistry, AgentStatus, AgentType
from crossproto.core.types import YieldSource

from fakes import FakeClock, FakeLendingClient, FakeRouterClient, RecordingSleep, ScriptedAgent, run


class TestOrchestrationService:
    """Test request validation, dispatch and response shapes."""

    def setup_method(self):
        self.clock = FakeClock()
        self.router_a = FakeRouterClient("router_a", self.clock, rates={("SEI", "USDC"): 0.5, ("ETH", "USDC"): 1.00})
        self.router_b = FakeRouterClient("router_b", self.clock, rates={("SEI", "USDC"): 0.5, ("ETH", "USDC"): 1.02})
        self.lending = FakeLendingClient()
        self.registry = AgentRegistry([
            ScriptedAgent("lender", AgentType.LENDING, "supply_usdc"),
            ScriptedAgent("lp", AgentType.LIQUIDITY, status=AgentStatus.UNAVAILABLE),
        ])
        self.service = OrchestrationService(
            Config(), {"router_a": self.router_a, "router_b": self.router_b}, self.lending, self.registry,
            clock=self.clock, sleep=RecordingSleep(),
        )

    def test_operations(self):
        operations = self.service.operations()
        assert "getQuote" in operations
        assert "coordinateAgents" in operations
        assert len(operations) == 16

    def test_unknown_operation(self):
        response = run(self.service.handle("teleport", {}))

        assert response["success"] is False
        assert response["error"]["kind"] == "validation_failed"
        assert "unknown operation 'teleport'" in response["error"]["technicalMessage"]

    def test_malformed_request(self):
        response = run(self.service.handle("getQuote", {"token_in": "SEI", "token_out": "USDC", "amount_in": -1}))

        assert response["success"] is False
        assert response["error"]["kind"] == "validation_failed"
        assert "amount_in" in response["error"]["technicalMessage"]
        assert self.router_a.calls["quote"] == 0

    def test_get_quote(self):
        response = run(self.service.handle("getQuote", {"token_in": "SEI", "token_out": "USDC", "amount_in": 100}))

        assert response["success"] is True
        assert response["operation"] == "getQuote"
        assert response["data"]["route"]["output_amount"] == pytest.approx(50.0)
        assert response["data"]["slippage_adjusted_amount_out"] == pytest.approx(49.5)
        assert self.router_b.calls["quote"] == 0

    def test_classified_error_response(self):
        self.router_a.valid_for_ms = -1000

        response = run(self.service.handle("getQuote", {"token_in": "SEI", "token_out": "USDC", "amount_in": 100}))

        error = response["error"]
        assert response["success"] is False
        assert error["kind"] == "quote_expired"
        assert error["severity"] == "low"
        assert error["errorCode"].startswith("XP_QUOTE_EXPIRED_")
        assert error["recoveryStrategy"]["action"] == "retry"

    def test_detect_arbitrage_across_routers(self):
        response = run(self.service.handle("detectArbitrage", {"asset": "ETH", "amount": 1000}))

        data = response["data"]
        assert data["profitable"] is True
        assert data["direction"] == "a_to_b"
        assert data["price_discrepancy"] == pytest.approx(0.02)

    def test_execute_arbitrage(self):
        response = run(self.service.handle(
            "executeArbitrage", {"asset": "ETH", "amount": 1000, "user_address": "0xuser"},
        ))

        assert response["success"] is True
        assert response["data"]["actual_profit"] == pytest.approx(20.0)
        assert len(response["data"]["tx_hashes"]) == 2

    def test_open_leverage_partial_failure_shape(self):
        response = run(self.service.handle("openLeverage", {
            "user_address": "0xuser", "collateral_asset": "SEI", "collateral_amount": 1000,
            "target_asset": "USDC", "leverage_ratio": 2.0,
        }))

        partial = response["error"]["partialResults"]
        assert response["error"]["kind"] == "health_factor_too_low"
        assert partial["stepsCommitted"] == 3
        assert partial["failedStep"] == "health_check"

    def test_supply_result_serialized(self):
        response = run(self.service.handle("supply", {"asset": "USDC", "amount": 10, "user_address": "0xuser"}))
        assert response["data"]["tx_hash"] == "0xlending0001"

    def test_optimize_yield(self):
        response = run(self.service.handle("optimizeYield", {
            "holdings": [{"asset": "USDC", "amount": 1000, "value": 1000}],
            "risk_tolerance": "low",
        }))

        allocations = response["data"]["optimization"]["allocations"]
        assert response["success"] is True
        assert sum(a["percentage"] for a in allocations) == pytest.approx(100.0)

    def test_optimize_yield_execution_plans_around_pools(self):
        self.router_a.pools = [YieldSource("router_a", "SEI-USDC LP", 40.0, 0.3)]
        request = {
            "holdings": [{"asset": "SEI", "amount": 1000, "value": 500}],
            "risk_tolerance": "high", "horizon_days": 365, "user_address": "0xuser",
        }

        planned = run(self.service.handle("optimizeYield", request))
        executed = run(self.service.handle("optimizeYield", {**request, "execute": True}))

        assert any(a["protocol"] == "router_a" for a in planned["data"]["optimization"]["allocations"])
        assert executed["success"] is True
        assert all(a["protocol"] != "router_a" for a in executed["data"]["optimization"]["allocations"])
        assert list(executed["data"]["execution"]["transactions"]) == ["withdraw_0", "swap_0", "supply_0"]
        assert self.lending.supplies["0xuser"]["USDC"] == pytest.approx(500.0)

    def test_coordinate_agents(self):
        response = run(self.service.handle("coordinateAgents", {
            "scenario": {"scenario_id": "scn-1", "user_intent": "earn yield"},
            "required_agents": ["lender", "lp"],
            "mode": "adaptive",
        }))

        data = response["data"]
        assert data["participatingAgents"] == ["lender"]
        assert data["unavailableAgents"] == ["lp"]
        assert data["coordinationStrategy"]["adaptedForMissingAgents"] is True

    def test_infinite_values_serialized_as_null(self):
        assert to_jsonable({"hf": float("inf")}) == {"hf": None}


class TestOperationDeadline:
    """Test request deadlines for single and composite operations."""

    def setup_method(self):
        self.clock = FakeClock()
        self.router = FakeRouterClient("router_a", self.clock)
        self.lending = FakeLendingClient()
        config = Config(service=ServiceConfig(operation_timeout_ms=200))
        self.service = OrchestrationService(config, {"router_a": self.router}, self.lending,
                                            clock=self.clock, sleep=RecordingSleep())

    def test_deadline_mid_operation_keeps_committed_steps(self):
        self.router.delay_s = 1.0

        response = run(self.service.handle("openLeverage", {
            "user_address": "0xuser", "collateral_asset": "SEI", "collateral_amount": 100,
            "target_asset": "USDC", "leverage_ratio": 2.0,
        }, timeout_ms=200))

        error = response["error"]
        partial = error["partialResults"]
        assert error["kind"] == "timeout"
        assert partial["stepsCommitted"] == 2
        assert [s["name"] for s in partial["committedSteps"]] == ["supply", "borrow"]
        assert partial["failedStep"] == "swap"
        assert self.lending.borrows["0xuser"] == {"SEI": 100.0}
        assert self.router.calls["execute"] == 0

    def test_configured_deadline_without_request_timeout(self):
        self.router.delay_s = 1.0

        response = run(self.service.handle("getQuote", {"token_in": "SEI", "token_out": "USDC", "amount_in": 100}))

        assert response["error"]["kind"] == "timeout"
        assert "200ms" in response["error"]["technicalMessage"]

    def test_request_timeout_overrides_configured(self):
        self.router.delay_s = 0.3

        response = run(self.service.handle(
            "getQuote", {"token_in": "SEI", "token_out": "USDC", "amount_in": 100}, timeout_ms=5000,
        ))

        assert response["success"] is True
