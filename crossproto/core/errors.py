"""
Closed error taxonomy for the orchestration engine.

Raw failures raised by protocol clients are ``ProtocolError`` subclasses, one
per ``ErrorKind``, each carrying the payload needed to explain it. Once a
failure has been classified by the recovery engine it travels upward as a
``ClassifiedError`` wrapping an immutable ``EnhancedError``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorKind(Enum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TOKEN = "invalid_token"
    VALIDATION_FAILED = "validation_failed"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    ROUTE_NOT_FOUND = "route_not_found"
    QUOTE_EXPIRED = "quote_expired"
    GAS_ESTIMATION_FAILED = "gas_estimation_failed"
    EXECUTION_FAILED = "execution_failed"
    PROTOCOL_UNAVAILABLE = "protocol_unavailable"
    COORDINATION_TIMEOUT = "coordination_timeout"
    INSUFFICIENT_COLLATERAL = "insufficient_collateral"
    HEALTH_FACTOR_TOO_LOW = "health_factor_too_low"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    AGENT_UNAVAILABLE = "agent_unavailable"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    MANUAL = "manual"
    ABORT = "abort"


@dataclass(frozen=True)
class RecoveryPolicy:
    """Default recovery policy for one error kind."""
    can_recover: bool
    action: RecoveryAction
    delay_ms: Optional[int] = None
    max_retries: Optional[int] = None
    fallback_options: Tuple[str, ...] = ()


SEVERITY: Dict[ErrorKind, Severity] = {
    ErrorKind.NETWORK_ERROR: Severity.MEDIUM,
    ErrorKind.TIMEOUT: Severity.MEDIUM,
    ErrorKind.RATE_LIMIT_EXCEEDED: Severity.LOW,
    ErrorKind.INVALID_TOKEN: Severity.HIGH,
    ErrorKind.VALIDATION_FAILED: Severity.HIGH,
    ErrorKind.INSUFFICIENT_LIQUIDITY: Severity.MEDIUM,
    ErrorKind.SLIPPAGE_EXCEEDED: Severity.MEDIUM,
    ErrorKind.ROUTE_NOT_FOUND: Severity.LOW,
    ErrorKind.QUOTE_EXPIRED: Severity.LOW,
    ErrorKind.GAS_ESTIMATION_FAILED: Severity.MEDIUM,
    ErrorKind.EXECUTION_FAILED: Severity.HIGH,
    ErrorKind.PROTOCOL_UNAVAILABLE: Severity.CRITICAL,
    ErrorKind.COORDINATION_TIMEOUT: Severity.MEDIUM,
    ErrorKind.INSUFFICIENT_COLLATERAL: Severity.HIGH,
    ErrorKind.HEALTH_FACTOR_TOO_LOW: Severity.HIGH,
    ErrorKind.INSUFFICIENT_ALLOWANCE: Severity.HIGH,
    ErrorKind.AGENT_UNAVAILABLE: Severity.HIGH,
}

_ABORT = RecoveryPolicy(can_recover=False, action=RecoveryAction.ABORT)
_MANUAL = RecoveryPolicy(can_recover=False, action=RecoveryAction.MANUAL)

DEFAULT_POLICIES: Dict[ErrorKind, RecoveryPolicy] = {
    ErrorKind.NETWORK_ERROR: RecoveryPolicy(True, RecoveryAction.RETRY, delay_ms=2000, max_retries=3),
    ErrorKind.TIMEOUT: RecoveryPolicy(True, RecoveryAction.RETRY, delay_ms=2000, max_retries=3),
    # delay for rate limits comes from the reset time carried by the error
    ErrorKind.RATE_LIMIT_EXCEEDED: RecoveryPolicy(True, RecoveryAction.RETRY, delay_ms=None, max_retries=1),
    ErrorKind.QUOTE_EXPIRED: RecoveryPolicy(True, RecoveryAction.RETRY, delay_ms=1000, max_retries=2),
    ErrorKind.GAS_ESTIMATION_FAILED: RecoveryPolicy(True, RecoveryAction.RETRY, delay_ms=1000, max_retries=2),
    ErrorKind.INSUFFICIENT_LIQUIDITY: RecoveryPolicy(
        True, RecoveryAction.FALLBACK,
        fallback_options=("reduce_amount", "increase_slippage", "alternative_route"),
    ),
    ErrorKind.SLIPPAGE_EXCEEDED: RecoveryPolicy(
        True, RecoveryAction.FALLBACK, fallback_options=("increase_slippage", "alternative_route"),
    ),
    ErrorKind.ROUTE_NOT_FOUND: RecoveryPolicy(
        True, RecoveryAction.FALLBACK, fallback_options=("alternative_tokens", "multi_hop_route"),
    ),
    ErrorKind.PROTOCOL_UNAVAILABLE: RecoveryPolicy(
        True, RecoveryAction.FALLBACK, fallback_options=("alternative_protocol",),
    ),
    ErrorKind.COORDINATION_TIMEOUT: RecoveryPolicy(
        True, RecoveryAction.FALLBACK, fallback_options=("conservative_strategy",),
    ),
    ErrorKind.INVALID_TOKEN: _ABORT,
    ErrorKind.VALIDATION_FAILED: _ABORT,
    ErrorKind.EXECUTION_FAILED: _ABORT,
    ErrorKind.INSUFFICIENT_ALLOWANCE: _ABORT,
    ErrorKind.AGENT_UNAVAILABLE: _ABORT,
    ErrorKind.INSUFFICIENT_COLLATERAL: _MANUAL,
    ErrorKind.HEALTH_FACTOR_TOO_LOW: _MANUAL,
}


def _check_exhaustive() -> None:
    tables = (("SEVERITY", SEVERITY), ("DEFAULT_POLICIES", DEFAULT_POLICIES), ("ERROR_CLASSES", ERROR_CLASSES))
    for name, table in tables:
        missing = set(ErrorKind) - set(table)
        if missing:
            raise RuntimeError(f"{name} is missing error kinds: {sorted(k.value for k in missing)}")


def _iso(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


# --- raw failures -----------------------------------------------------------

class ProtocolError(Exception):
    """Base class for raw failures observed from an external collaborator."""
    kind: ErrorKind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str = ""):
        super().__init__(message or self.technical_message())
        self.partial_results: Optional["PartialResults"] = None

    def user_message(self) -> str:
        return "An unexpected error occurred. Please try again."

    def technical_message(self) -> str:
        return self.kind.value


class NetworkError(ProtocolError):
    kind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__()

    def user_message(self) -> str:
        return "Network connection issue. Please check your internet connection and try again."

    def technical_message(self) -> str:
        suffix = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"Network error: {self.message}{suffix}"


class RequestTimeout(ProtocolError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, operation: str, duration_ms: int):
        self.operation = operation
        self.duration_ms = duration_ms
        super().__init__()

    def user_message(self) -> str:
        return "Request timed out. Please try again."

    def technical_message(self) -> str:
        return f"Operation {self.operation} timed out after {self.duration_ms}ms"


class RateLimitExceeded(ProtocolError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    def __init__(self, reset_time_ms: int):
        self.reset_time_ms = reset_time_ms
        super().__init__()

    def user_message(self) -> str:
        return "Too many requests. Please wait a moment and try again."

    def technical_message(self) -> str:
        return f"Rate limit exceeded. Reset time: {_iso(self.reset_time_ms)}"


class InvalidToken(ProtocolError):
    kind = ErrorKind.INVALID_TOKEN

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__()

    def user_message(self) -> str:
        return f"Invalid token address: {self.token}. Please verify the token address."

    def technical_message(self) -> str:
        return f"Invalid token {self.token}: {self.reason}"


class ValidationFailed(ProtocolError):
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__()

    def user_message(self) -> str:
        return f"Validation failed: {', '.join(self.errors)}"

    def technical_message(self) -> str:
        return f"Validation failed: {', '.join(self.errors)}"


class InsufficientLiquidity(ProtocolError):
    kind = ErrorKind.INSUFFICIENT_LIQUIDITY

    def __init__(self, pair: str, requested: float, available: float):
        self.pair = pair
        self.requested = requested
        self.available = available
        super().__init__()

    def user_message(self) -> str:
        return (f"Insufficient liquidity for {self.pair}. "
                "Try reducing the amount or increasing slippage tolerance.")

    def technical_message(self) -> str:
        return (f"Insufficient liquidity for {self.pair}. "
                f"Requested: {self.requested}, Available: {self.available}")


class SlippageExceeded(ProtocolError):
    kind = ErrorKind.SLIPPAGE_EXCEEDED

    def __init__(self, expected: float, actual: float, limit: float):
        self.expected = expected
        self.actual = actual
        self.limit = limit
        super().__init__()

    def user_message(self) -> str:
        return "Transaction would exceed slippage tolerance. Try increasing slippage or reducing amount."

    def technical_message(self) -> str:
        return f"Slippage exceeded. Expected: {self.expected}, Actual: {self.actual}, Limit: {self.limit}"


class RouteNotFound(ProtocolError):
    kind = ErrorKind.ROUTE_NOT_FOUND

    def __init__(self, token_in: str, token_out: str, amount: float):
        self.token_in = token_in
        self.token_out = token_out
        self.amount = amount
        super().__init__()

    def user_message(self) -> str:
        return f"No swap route found for {self.token_in} to {self.token_out}. Try a different token pair."

    def technical_message(self) -> str:
        return f"No route found for {self.token_in} -> {self.token_out} ({self.amount})"


class QuoteExpired(ProtocolError):
    kind = ErrorKind.QUOTE_EXPIRED

    def __init__(self, quote_id: str, expired_at_ms: int):
        self.quote_id = quote_id
        self.expired_at_ms = expired_at_ms
        super().__init__()

    def user_message(self) -> str:
        return "Price quote has expired. Fetching new quote..."

    def technical_message(self) -> str:
        return f"Quote {self.quote_id} expired at {_iso(self.expired_at_ms)}"


class GasEstimationFailed(ProtocolError):
    kind = ErrorKind.GAS_ESTIMATION_FAILED

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__()

    def user_message(self) -> str:
        return "Unable to estimate gas cost. Please try again."

    def technical_message(self) -> str:
        return f"Gas estimation failed: {self.reason}"


class ExecutionFailed(ProtocolError):
    kind = ErrorKind.EXECUTION_FAILED

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__()

    def user_message(self) -> str:
        return "Transaction execution failed. Please try again."

    def technical_message(self) -> str:
        suffix = f" (TX: {self.tx_hash})" if self.tx_hash else ""
        return f"Execution failed: {self.reason}{suffix}"


class ProtocolUnavailable(ProtocolError):
    kind = ErrorKind.PROTOCOL_UNAVAILABLE

    def __init__(self, protocol: str, reason: str):
        self.protocol = protocol
        self.reason = reason
        super().__init__()

    def user_message(self) -> str:
        return f"{self.protocol} protocol is temporarily unavailable. Trying alternative routes."

    def technical_message(self) -> str:
        return f"Protocol {self.protocol} unavailable: {self.reason}"


class CoordinationTimeout(ProtocolError):
    kind = ErrorKind.COORDINATION_TIMEOUT

    def __init__(self, timeout_ms: int, partial_decisions: Optional[List[Any]] = None,
                 fallback_strategy: Optional[Dict[str, Any]] = None):
        self.timeout_ms = timeout_ms
        self.partial_decisions = list(partial_decisions or [])
        self.fallback_strategy = fallback_strategy or {}
        super().__init__()

    def user_message(self) -> str:
        return "Agents did not agree in time. A conservative strategy was prepared instead."

    def technical_message(self) -> str:
        return (f"Coordination timed out after {self.timeout_ms}ms "
                f"with {len(self.partial_decisions)} partial decisions")


class InsufficientCollateral(ProtocolError):
    kind = ErrorKind.INSUFFICIENT_COLLATERAL

    def __init__(self, asset: str, required: float, available: float):
        self.asset = asset
        self.required = required
        self.available = available
        super().__init__()

    def user_message(self) -> str:
        return f"Not enough {self.asset} collateral for this operation. Add collateral or reduce the amount."

    def technical_message(self) -> str:
        return f"Insufficient collateral {self.asset}. Required: {self.required}, Available: {self.available}"


class HealthFactorTooLow(ProtocolError):
    kind = ErrorKind.HEALTH_FACTOR_TOO_LOW

    def __init__(self, health_factor: float, minimum: float):
        self.health_factor = health_factor
        self.minimum = minimum
        super().__init__()

    def user_message(self) -> str:
        return "This position would be at risk of liquidation. Reduce leverage or add collateral."

    def technical_message(self) -> str:
        return f"Health factor {self.health_factor:.4f} is not above the minimum {self.minimum}"


class InsufficientAllowance(ProtocolError):
    kind = ErrorKind.INSUFFICIENT_ALLOWANCE

    def __init__(self, token: str, required: float, allowance: float):
        self.token = token
        self.required = required
        self.allowance = allowance
        super().__init__()

    def user_message(self) -> str:
        return f"Token approval required for {self.token}. Approve the spend and try again."

    def technical_message(self) -> str:
        return f"Insufficient allowance for {self.token}. Required: {self.required}, Allowance: {self.allowance}"


class AgentUnavailable(ProtocolError):
    kind = ErrorKind.AGENT_UNAVAILABLE

    def __init__(self, agent_ids: List[str], reason: str = "unavailable"):
        self.agent_ids = list(agent_ids)
        self.reason = reason
        super().__init__()

    def user_message(self) -> str:
        return "Some required agents are not available right now. Please try again later."

    def technical_message(self) -> str:
        return f"Required agents {', '.join(self.agent_ids)} {self.reason}"


ERROR_CLASSES = {cls.kind: cls for cls in ProtocolError.__subclasses__()}


# --- classified failures ----------------------------------------------------

@dataclass(frozen=True)
class CommittedStep:
    """A state-changing step that committed before a composite operation failed."""
    name: str
    tx_hash: str


@dataclass(frozen=True)
class PartialResults:
    """What a composite operation committed before failing."""
    steps_committed: int
    committed_steps: Tuple[CommittedStep, ...] = ()
    failed_step: Optional[str] = None
    exposure: Tuple[str, ...] = ()

    @property
    def nothing_committed(self) -> bool:
        return self.steps_committed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepsCommitted": self.steps_committed,
            "committedSteps": [{"name": s.name, "txHash": s.tx_hash} for s in self.committed_steps],
            "failedStep": self.failed_step,
            "exposure": list(self.exposure),
        }


@dataclass(frozen=True)
class ErrorContext:
    """Where and for whom a failure happened."""
    operation: str
    timestamp: int
    user_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveryStrategy:
    """Recovery strategy attached to a classified error."""
    can_recover: bool
    action: RecoveryAction
    suggested_delay_ms: Optional[int] = None
    max_retries: Optional[int] = None
    fallback_options: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "canRecover": self.can_recover,
            "action": self.action.value,
            "suggestedDelay": self.suggested_delay_ms,
            "maxRetries": self.max_retries,
            "fallbackOptions": list(self.fallback_options),
        }


@dataclass(frozen=True)
class EnhancedError:
    """A classified failure. Created once per root cause and never mutated."""
    kind: ErrorKind
    severity: Severity
    context: ErrorContext
    recovery_strategy: RecoveryStrategy
    user_message: str
    technical_message: str
    error_code: str
    help_url: str
    cause: Optional[ProtocolError] = field(default=None, compare=False, repr=False)
    root_cause: Optional["EnhancedError"] = field(default=None, compare=False, repr=False)
    partial_results: Optional[PartialResults] = None

    def with_partial_results(self, partial: PartialResults) -> "EnhancedError":
        """Copy of this error annotated with the steps a composite operation committed."""
        return replace(self, partial_results=partial)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "errorCode": self.error_code,
            "userMessage": self.user_message,
            "technicalMessage": self.technical_message,
            "helpUrl": self.help_url,
            "operation": self.context.operation,
            "timestamp": self.context.timestamp,
            "recoveryStrategy": self.recovery_strategy.to_dict(),
            "partialResults": self.partial_results.to_dict() if self.partial_results else None,
        }


class ClassifiedError(Exception):
    """Carries an ``EnhancedError`` across component boundaries."""

    def __init__(self, error: EnhancedError):
        super().__init__(f"[{error.error_code}] {error.technical_message}")
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


_check_exhaustive()
