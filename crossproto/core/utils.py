"""Utility functions shared by the orchestration components."""

import asyncio
import time
from typing import Awaitable, Callable, Iterable


Clock = Callable[[], int]
Sleep = Callable[[float], Awaitable[None]]


def now_ms() -> int:
    """Current wall clock time in milliseconds."""
    return int(time.time() * 1000)


async def sleep_ms(delay_ms: float) -> None:
    """Sleep for ``delay_ms`` milliseconds without blocking the loop."""
    await asyncio.sleep(max(0.0, delay_ms) / 1000)


def format_bps(bps: float) -> str:
    """Format basis points with appropriate precision."""
    if bps >= 100:
        return f"{bps:.0f} bps"
    elif bps >= 10:
        return f"{bps:.1f} bps"
    else:
        return f"{bps:.2f} bps"


def format_duration(seconds: float) -> str:
    """Format duration in human readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers, returning default if denominator is zero."""
    if denominator == 0:
        return default
    return numerator / denominator


def clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp a value between min and max."""
    return max(min_val, min(value, max_val))


def within_tolerance(actual: float, expected: float, tolerance: float) -> bool:
    """Check that ``actual`` is within a relative ``tolerance`` of ``expected``."""
    if expected == 0:
        return abs(actual) <= tolerance
    return abs(actual - expected) <= abs(expected) * tolerance


def variance(values: Iterable[float]) -> float:
    """Population variance."""
    values = list(values)
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def minimum_amount_out(amount_out: float, slippage_percent: float) -> float:
    """Slippage-adjusted lower bound for a quoted output amount."""
    return amount_out * (1 - slippage_percent / 100)
