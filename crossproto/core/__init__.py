"""Core orchestration types, error taxonomy, cache and recovery engine.

The composite operations (quotes, detector, executor, leverage,
yield_optimizer) depend on the protocol contracts and are imported from
their own modules.
"""

from .types import (
    TokenInfo, RouteStep, RouteFees, Route, Quote, RouteSet, QuoteRequest, SwapRequest,
    GasEstimate, TxResult, SwapResult, ArbitrageOpportunity, ArbitrageDirection,
    ArbitrageResult, LeveragePosition, Holding, YieldSource, YieldOptimizationResult,
)
from .errors import (
    ErrorKind, Severity, RecoveryAction, ProtocolError, EnhancedError, ClassifiedError,
    ErrorContext, PartialResults,
)
from .cache import CacheKind, QuoteRouteCache, fingerprint
from .recovery import Deadline, RecoveryEngine, RetryState, format_error_for_user, format_error_for_logging
from .steps import StepLedger

__all__ = [
    'TokenInfo',
    'RouteStep',
    'RouteFees',
    'Route',
    'Quote',
    'RouteSet',
    'QuoteRequest',
    'SwapRequest',
    'GasEstimate',
    'TxResult',
    'SwapResult',
    'ArbitrageOpportunity',
    'ArbitrageDirection',
    'ArbitrageResult',
    'LeveragePosition',
    'Holding',
    'YieldSource',
    'YieldOptimizationResult',
    'ErrorKind',
    'Severity',
    'RecoveryAction',
    'ProtocolError',
    'EnhancedError',
    'ClassifiedError',
    'ErrorContext',
    'PartialResults',
    'CacheKind',
    'QuoteRouteCache',
    'fingerprint',
    'Deadline',
    'RecoveryEngine',
    'RetryState',
    'format_error_for_user',
    'format_error_for_logging',
    'StepLedger',
]
