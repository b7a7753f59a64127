"""
Error classification and recovery engine.

Every raw failure coming out of a protocol client is classified exactly once
into an ``EnhancedError`` and then retried, handed to a caller-supplied
fallback, or surfaced unchanged depending on the recovery policy of its kind.
"""

import asyncio
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar, Union

import aiohttp
from loguru import logger

from ..config import RecoveryConfig
from .errors import (
    DEFAULT_POLICIES, SEVERITY, ClassifiedError, EnhancedError, ErrorContext, ErrorKind,
    ExecutionFailed, NetworkError, ProtocolError, RateLimitExceeded, RecoveryAction,
    RecoveryPolicy, RecoveryStrategy, RequestTimeout, ValidationFailed,
)
from .utils import Clock, Sleep, now_ms, sleep_ms

T = TypeVar("T")

Fallback = Callable[[EnhancedError], Awaitable[Any]]


@dataclass
class RetryState:
    """Retry bookkeeping for one logical operation."""
    key: str
    attempts: int = 0
    max_retries: int = 0
    last_kind: Optional[ErrorKind] = None

    @classmethod
    def for_context(cls, context: ErrorContext) -> "RetryState":
        return cls(key=f"{context.operation}_{context.user_address or 'unknown'}")

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_retries


def to_protocol_error(error: BaseException, operation: str = "unknown") -> ProtocolError:
    """Map an arbitrary exception onto the closed taxonomy."""
    if isinstance(error, ProtocolError):
        return error
    # aiohttp.ServerTimeoutError is both a ClientError and a TimeoutError
    if isinstance(error, asyncio.TimeoutError):
        return RequestTimeout(operation, 0)
    if isinstance(error, aiohttp.ClientResponseError):
        return NetworkError(error.message or str(error), status_code=error.status)
    if isinstance(error, (aiohttp.ClientError, ConnectionError)):
        return NetworkError(str(error) or type(error).__name__)
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ValidationFailed([str(error) or type(error).__name__])
    return ExecutionFailed(str(error) or type(error).__name__)


async def call_with_timeout(awaitable: Awaitable[T], timeout_ms: Optional[int], operation: str) -> T:
    """Await ``awaitable`` under a deadline, turning expiry into ``RequestTimeout``."""
    if not timeout_ms:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise RequestTimeout(operation, timeout_ms)


class Deadline:
    """
    Deadline shared by every call made on behalf of one request.

    Each call gets whatever time is left, so a composite operation that runs
    out of time fails at the step in flight and keeps the record of the steps
    that already committed.
    """

    def __init__(self, timeout_ms: Optional[int], operation: str):
        self.timeout_ms = timeout_ms
        self.operation = operation
        self.expires_at = time.monotonic() + timeout_ms / 1000 if timeout_ms else None

    def remaining_ms(self) -> Optional[int]:
        if self.expires_at is None:
            return None
        return max(0, int((self.expires_at - time.monotonic()) * 1000))

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Start ``factory()`` only if time is left and await it for the remaining time."""
        if self.expires_at is None:
            return await factory()
        remaining = self.expires_at - time.monotonic()
        if remaining <= 0:
            raise RequestTimeout(self.operation, self.timeout_ms)
        try:
            return await asyncio.wait_for(factory(), timeout=remaining)
        except asyncio.TimeoutError:
            raise RequestTimeout(self.operation, self.timeout_ms)


class RecoveryEngine:
    """Classifies failures and drives retry / fallback recovery."""

    def __init__(self, config: Optional[RecoveryConfig] = None, clock: Clock = now_ms,
                 sleep: Sleep = sleep_ms):
        self.config = config or RecoveryConfig()
        self.clock = clock
        self.sleep = sleep
        self._history: Dict[str, Deque[EnhancedError]] = defaultdict(
            lambda: deque(maxlen=self.config.history_per_user)
        )
        self._recovery_attempts = 0
        self._recovery_successes = 0

    def context(self, operation: str, user_address: Optional[str] = None, **metadata) -> ErrorContext:
        """Build an error context stamped with the engine clock."""
        return ErrorContext(operation=operation, timestamp=self.clock(),
                            user_address=user_address, metadata=metadata)

    def policy_for(self, kind: ErrorKind) -> RecoveryPolicy:
        """Default policy for ``kind`` with configured overrides applied."""
        policy = DEFAULT_POLICIES[kind]
        override = self.config.policies.get(kind.value)
        if override is None:
            return policy
        return RecoveryPolicy(
            can_recover=policy.can_recover,
            action=policy.action,
            delay_ms=override.delay_ms if override.delay_ms is not None else policy.delay_ms,
            max_retries=override.max_retries if override.max_retries is not None else policy.max_retries,
            fallback_options=policy.fallback_options,
        )

    def _strategy(self, error: ProtocolError) -> RecoveryStrategy:
        policy = self.policy_for(error.kind)
        delay = policy.delay_ms
        if isinstance(error, RateLimitExceeded):
            delay = max(0, error.reset_time_ms - self.clock())
        return RecoveryStrategy(
            can_recover=policy.can_recover,
            action=policy.action,
            suggested_delay_ms=delay,
            max_retries=policy.max_retries,
            fallback_options=policy.fallback_options,
        )

    def _error_code(self, kind: ErrorKind) -> str:
        return f"XP_{kind.value.upper()}_{str(self.clock())[-6:]}"

    def _help_url(self, kind: ErrorKind) -> str:
        return f"{self.config.help_base_url.rstrip('/')}/{kind.value.replace('_', '-')}"

    def enhance(self, error: BaseException, context: ErrorContext,
                root_cause: Optional[EnhancedError] = None) -> EnhancedError:
        """Classify ``error`` once. Already classified errors are returned unchanged."""
        if isinstance(error, ClassifiedError):
            return error.error
        raw = to_protocol_error(error, context.operation)
        enhanced = EnhancedError(
            kind=raw.kind,
            severity=SEVERITY[raw.kind],
            context=context,
            recovery_strategy=self._strategy(raw),
            user_message=raw.user_message(),
            technical_message=raw.technical_message(),
            error_code=self._error_code(raw.kind),
            help_url=self._help_url(raw.kind),
            cause=raw,
            root_cause=root_cause,
            partial_results=raw.partial_results,
        )
        self._record(enhanced)
        return enhanced

    def _record(self, error: EnhancedError) -> None:
        self._history[error.context.user_address or "unknown"].append(error)
        logger.error(
            f"[{error.error_code}] {error.kind.value} ({error.severity.value}) "
            f"in {error.context.operation}: {error.technical_message}"
        )

    async def run(self, operation: Callable[[], Awaitable[T]], context: ErrorContext,
                  fallbacks: Optional[Dict[str, Fallback]] = None, retry: bool = True,
                  state: Optional[RetryState] = None) -> T:
        """
        Run ``operation`` and recover from its failure.

        Args:
            operation: zero-argument coroutine factory, re-invoked on retry
            context: context used to classify the first failure
            fallbacks: callables keyed by fallback option name
            retry: when False, retryable failures are classified and raised
            state: retry state to continue; a fresh one is created per call

        Raises:
            ClassifiedError: the classified failure, or terminal execution_failed
            once the retry bound is exhausted
        """
        state = state or RetryState.for_context(context)
        try:
            return await operation()
        except ClassifiedError:
            raise
        except Exception as exc:
            enhanced = self.enhance(exc, context)

        if enhanced.recovery_strategy.action == RecoveryAction.RETRY and not retry:
            raise ClassifiedError(enhanced)
        return await self.attempt_recovery(enhanced, operation, state, fallbacks)

    async def attempt_recovery(self, error: EnhancedError, operation: Callable[[], Awaitable[T]],
                               state: RetryState,
                               fallbacks: Optional[Dict[str, Fallback]] = None) -> T:
        """Apply the recovery strategy of an already classified error."""
        strategy = error.recovery_strategy
        if not strategy.can_recover:
            raise ClassifiedError(error)
        if strategy.action == RecoveryAction.RETRY:
            return await self._retry(error, operation, state)
        if strategy.action == RecoveryAction.FALLBACK:
            return await self._fallback(error, fallbacks or {})
        raise ClassifiedError(error)

    async def _retry(self, error: EnhancedError, operation: Callable[[], Awaitable[T]],
                     state: RetryState) -> T:
        strategy = error.recovery_strategy
        state.max_retries = strategy.max_retries if strategy.max_retries is not None else 3
        state.last_kind = error.kind
        delay = strategy.suggested_delay_ms if strategy.suggested_delay_ms is not None else 1000

        while not state.exhausted:
            state.attempts += 1
            self._recovery_attempts += 1
            logger.warning(f"Retrying {state.key} in {delay}ms (attempt {state.attempts}/{state.max_retries})")
            await self.sleep(delay)
            try:
                result = await operation()
            except ClassifiedError as exc:
                # classified further down; count it against this retry bound without re-deriving
                state.last_kind = exc.kind
                if self.policy_for(exc.kind).action != RecoveryAction.RETRY:
                    raise
                continue
            except Exception as exc:
                raw = to_protocol_error(exc, error.context.operation)
                state.last_kind = raw.kind
                if self.policy_for(raw.kind).action != RecoveryAction.RETRY:
                    # a different root cause surfaced during recovery
                    raise ClassifiedError(self.enhance(raw, error.context))
                logger.debug(f"Retry {state.attempts} of {state.key} failed: {raw.technical_message()}")
                continue
            self._recovery_successes += 1
            logger.info(f"Recovered {state.key} after {state.attempts} retries")
            return result

        terminal = ExecutionFailed(f"Max retries ({state.max_retries}) exceeded for operation {state.key}")
        terminal.partial_results = error.partial_results
        raise ClassifiedError(self.enhance(terminal, error.context, root_cause=error))

    async def _fallback(self, error: EnhancedError, fallbacks: Dict[str, Fallback]) -> Any:
        for option in error.recovery_strategy.fallback_options:
            handler = fallbacks.get(option)
            if handler is None:
                continue
            self._recovery_attempts += 1
            logger.warning(f"Trying fallback '{option}' for {error.error_code}")
            try:
                result = await handler(error)
            except Exception as exc:
                logger.warning(f"Fallback '{option}' for {error.error_code} failed: {exc}")
                continue
            self._recovery_successes += 1
            logger.info(f"Fallback '{option}' recovered {error.error_code}")
            return result
        raise ClassifiedError(error)

    def get_error_stats(self) -> Dict[str, Any]:
        """Aggregate statistics over the retained error history."""
        errors: List[EnhancedError] = [e for history in self._history.values() for e in history]
        by_kind: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for err in errors:
            by_kind[err.kind.value] = by_kind.get(err.kind.value, 0) + 1
            by_severity[err.severity.value] = by_severity.get(err.severity.value, 0) + 1
        rate = self._recovery_successes / self._recovery_attempts if self._recovery_attempts else 0.0
        return {
            "total_errors": len(errors),
            "errors_by_kind": by_kind,
            "errors_by_severity": by_severity,
            "recovery_success_rate": rate,
        }

    def history(self, user_address: Optional[str] = None) -> List[EnhancedError]:
        return list(self._history.get(user_address or "unknown", ()))

    def clear_history(self, user_address: Optional[str] = None) -> None:
        if user_address is None:
            self._history.clear()
            self._recovery_attempts = 0
            self._recovery_successes = 0
        else:
            self._history.pop(user_address, None)


def format_error_for_user(error: Union[BaseException, EnhancedError]) -> str:
    """Short actionable message for any failure."""
    if isinstance(error, ClassifiedError):
        return error.error.user_message
    if isinstance(error, EnhancedError):
        return error.user_message
    return to_protocol_error(error).user_message()


def format_error_for_logging(error: Union[BaseException, EnhancedError]) -> str:
    """``[CODE] technical message`` for classified failures."""
    if isinstance(error, ClassifiedError):
        error = error.error
    if isinstance(error, EnhancedError):
        return f"[{error.error_code}] {error.technical_message}"
    return to_protocol_error(error).technical_message()
