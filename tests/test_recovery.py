"""Test error classification and recovery."""

import asyncio

import pytest

from crossproto.config import RecoveryConfig, RetryPolicyConfig
from crossproto.core.errors import (
    DEFAULT_POLICIES, ERROR_CLASSES, SEVERITY, ClassifiedError, ErrorKind, ExecutionFailed,
    InsufficientLiquidity, NetworkError, RateLimitExceeded, RecoveryAction, RequestTimeout, Severity,
    ValidationFailed,
)
from crossproto.core.recovery import (
    Deadline, RecoveryEngine, RetryState, call_with_timeout, format_error_for_logging,
    format_error_for_user, to_protocol_error,
)

from fakes import FakeClock, RecordingSleep, run


class Flaky:
    """Operation failing with the given errors before returning ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestTaxonomy:
    """Test the closed error taxonomy."""

    def test_every_kind_has_severity_policy_and_class(self):
        for kind in ErrorKind:
            assert kind in SEVERITY
            assert kind in DEFAULT_POLICIES
            assert ERROR_CLASSES[kind].kind == kind

    def test_reference_policies(self):
        assert DEFAULT_POLICIES[ErrorKind.NETWORK_ERROR].max_retries == 3
        assert DEFAULT_POLICIES[ErrorKind.NETWORK_ERROR].delay_ms == 2000
        assert DEFAULT_POLICIES[ErrorKind.QUOTE_EXPIRED].max_retries == 2
        assert DEFAULT_POLICIES[ErrorKind.VALIDATION_FAILED].action == RecoveryAction.ABORT
        assert DEFAULT_POLICIES[ErrorKind.HEALTH_FACTOR_TOO_LOW].action == RecoveryAction.MANUAL
        assert SEVERITY[ErrorKind.PROTOCOL_UNAVAILABLE] == Severity.CRITICAL

    def test_foreign_exceptions_are_mapped(self):
        assert to_protocol_error(asyncio.TimeoutError()).kind == ErrorKind.TIMEOUT
        assert to_protocol_error(ConnectionError("reset")).kind == ErrorKind.NETWORK_ERROR
        assert to_protocol_error(ValueError("bad")).kind == ErrorKind.VALIDATION_FAILED
        assert to_protocol_error(RuntimeError("boom")).kind == ErrorKind.EXECUTION_FAILED


class TestRecoveryEngine:
    """Test retry, fallback and classification."""

    def setup_method(self):
        self.clock = FakeClock()
        self.sleep = RecordingSleep()
        self.engine = RecoveryEngine(RecoveryConfig(), clock=self.clock, sleep=self.sleep)
        self.context = self.engine.context("get_quote", "0xuser")

    def test_enhance_builds_full_error(self):
        error = self.engine.enhance(NetworkError("connection reset", status_code=502), self.context)

        assert error.kind == ErrorKind.NETWORK_ERROR
        assert error.severity == Severity.MEDIUM
        assert error.recovery_strategy.action == RecoveryAction.RETRY
        assert error.recovery_strategy.suggested_delay_ms == 2000
        assert error.error_code.startswith("XP_NETWORK_ERROR_")
        assert error.help_url.endswith("/network-error")
        assert "HTTP 502" in error.technical_message
        assert "Network connection issue" in error.user_message

    def test_classified_error_is_not_enhanced_again(self):
        first = self.engine.enhance(ValidationFailed(["amount must be positive"]), self.context)
        again = self.engine.enhance(ClassifiedError(first), self.engine.context("other"))

        assert again is first
        assert len(self.engine.history("0xuser")) == 1

    def test_recovers_within_retry_bound(self):
        op = Flaky([NetworkError("reset"), NetworkError("reset")])

        result = run(self.engine.run(op, self.context))

        assert result == "ok"
        assert op.calls == 3
        assert self.sleep.delays == [2000, 2000]

    def test_retry_bound_exhausted(self):
        op = Flaky([NetworkError("reset")] * 10)

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.engine.run(op, self.context))

        error = exc_info.value.error
        assert op.calls == 4  # first call plus three retries
        assert error.kind == ErrorKind.EXECUTION_FAILED
        assert "Max retries (3) exceeded for operation get_quote_0xuser" in error.technical_message
        assert error.root_cause.kind == ErrorKind.NETWORK_ERROR

    def test_configured_retry_bound(self):
        engine = RecoveryEngine(
            RecoveryConfig(policies={"network_error": RetryPolicyConfig(max_retries=1, delay_ms=10)}),
            clock=self.clock, sleep=self.sleep,
        )
        op = Flaky([NetworkError("reset")] * 5)

        with pytest.raises(ClassifiedError):
            run(engine.run(op, self.context))

        assert op.calls == 2
        assert self.sleep.delays == [10]

    def test_abort_kinds_are_not_retried(self):
        op = Flaky([ValidationFailed(["bad token"])])

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.engine.run(op, self.context))

        assert op.calls == 1
        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED

    def test_retry_disabled_for_writes(self):
        op = Flaky([NetworkError("reset")])

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.engine.run(op, self.context, retry=False))

        assert op.calls == 1
        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR

    def test_different_cause_during_retry_surfaces(self):
        op = Flaky([NetworkError("reset"), ValidationFailed(["token delisted"])])

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.engine.run(op, self.context))

        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED
        assert op.calls == 2

    def test_rate_limit_delay_comes_from_reset_time(self):
        op = Flaky([RateLimitExceeded(self.clock() + 5000)])

        run(self.engine.run(op, self.context))

        assert self.sleep.delays == [5000]

    def test_fallback_handler(self):
        seen = []

        async def reduce_amount(error):
            seen.append(error)
            return "reduced"

        op = Flaky([InsufficientLiquidity("SEI/USDC", 100.0, 10.0)])
        result = run(self.engine.run(op, self.context, fallbacks={"reduce_amount": reduce_amount}))

        assert result == "reduced"
        assert seen[0].kind == ErrorKind.INSUFFICIENT_LIQUIDITY
        assert op.calls == 1

    def test_failing_fallback_tries_next_option(self):
        async def failing(error):
            raise RuntimeError("still no liquidity")

        async def alternative(error):
            return "alt"

        op = Flaky([InsufficientLiquidity("SEI/USDC", 100.0, 10.0)])
        result = run(self.engine.run(op, self.context,
                                     fallbacks={"reduce_amount": failing, "alternative_route": alternative}))

        assert result == "alt"

    def test_fallback_without_handlers_surfaces_original(self):
        op = Flaky([InsufficientLiquidity("SEI/USDC", 100.0, 10.0)])

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.engine.run(op, self.context))

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_LIQUIDITY
        assert exc_info.value.error.recovery_strategy.fallback_options == (
            "reduce_amount", "increase_slippage", "alternative_route",
        )

    def test_retry_state_is_explicit(self):
        error = self.engine.enhance(NetworkError("reset"), self.context)
        state = RetryState.for_context(self.context)
        op = Flaky([NetworkError("reset")] * 10)

        with pytest.raises(ClassifiedError):
            run(self.engine.attempt_recovery(error, op, state))

        assert state.key == "get_quote_0xuser"
        assert state.attempts == 3
        assert state.exhausted

    def test_error_stats(self):
        run(self.engine.run(Flaky([NetworkError("reset")]), self.context))
        with pytest.raises(ClassifiedError):
            run(self.engine.run(Flaky([ValidationFailed(["x"])]), self.context))

        stats = self.engine.get_error_stats()

        assert stats["total_errors"] == 2
        assert stats["errors_by_kind"] == {"network_error": 1, "validation_failed": 1}
        assert stats["errors_by_severity"] == {"medium": 1, "high": 1}
        assert stats["recovery_success_rate"] == 1.0

        self.engine.clear_history()
        assert self.engine.get_error_stats()["total_errors"] == 0

    def test_history_is_bounded_per_user(self):
        engine = RecoveryEngine(RecoveryConfig(history_per_user=2), clock=self.clock, sleep=self.sleep)
        for _ in range(5):
            engine.enhance(ValidationFailed(["x"]), self.context)
        assert len(engine.history("0xuser")) == 2

    def test_timeout_is_classified(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(ClassifiedError) as exc_info:
            run(self.engine.run(lambda: call_with_timeout(slow(), 10, "get_quote"), self.context))

        assert exc_info.value.kind == ErrorKind.EXECUTION_FAILED
        assert exc_info.value.error.root_cause.kind == ErrorKind.TIMEOUT


class TestDeadline:
    """Test a request deadline shared across calls."""

    def test_without_timeout_runs_unbounded(self):
        deadline = Deadline(None, "get_quote")

        async def value():
            return 7

        assert run(deadline.run(value)) == 7
        assert deadline.remaining_ms() is None

    def test_expiry_raises_request_timeout(self):
        deadline = Deadline(50, "open_leverage")

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(RequestTimeout) as exc_info:
            run(deadline.run(slow))

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert "50ms" in exc_info.value.technical_message()

    def test_spent_deadline_does_not_start_call(self):
        deadline = Deadline(50, "open_leverage")
        deadline.expires_at -= 1.0
        started = []

        async def call():
            started.append(True)

        with pytest.raises(RequestTimeout):
            run(deadline.run(call))
        assert started == []


class TestFormatting:
    """Test error formatting helpers."""

    def test_format_for_user_and_logging(self):
        engine = RecoveryEngine(clock=FakeClock())
        error = engine.enhance(ExecutionFailed("reverted", tx_hash="0xabc"), engine.context("execute_swap"))
        wrapped = ClassifiedError(error)

        assert format_error_for_user(wrapped) == "Transaction execution failed. Please try again."
        assert format_error_for_logging(wrapped) == f"[{error.error_code}] Execution failed: reverted (TX: 0xabc)"
        assert format_error_for_user(ValueError("x")).startswith("Validation failed")

    def test_to_dict_shape(self):
        engine = RecoveryEngine(clock=FakeClock())
        data = engine.enhance(NetworkError("reset"), engine.context("get_routes")).to_dict()

        assert data["kind"] == "network_error"
        assert data["recoveryStrategy"]["maxRetries"] == 3
        assert data["partialResults"] is None
