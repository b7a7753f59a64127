"""Shared aiohttp request helper for the protocol REST gateways."""

from typing import Any, Dict, Optional

import aiohttp
from loguru import logger

from ..core.errors import (
    InvalidToken, NetworkError, ProtocolUnavailable, RateLimitExceeded, ValidationFailed,
)
from ..core.utils import now_ms


def _reset_time_ms(headers) -> int:
    reset = headers.get("X-RateLimit-Reset")
    if reset:
        value = int(float(reset))
        # seconds since epoch vs milliseconds since epoch
        return value * 1000 if value < 10 ** 12 else value
    retry_after = headers.get("Retry-After")
    if retry_after:
        return now_ms() + int(float(retry_after) * 1000)
    return now_ms() + 1000


async def request_json(method: str, url: str, protocol: str, timeout_ms: int,
                       payload: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Any:
    """
    Make a REST request and decode the JSON body.

    Non-2xx responses are raised as typed protocol errors; transport failures
    propagate as ``aiohttp`` exceptions for the recovery engine to classify.
    """
    timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.request(method, url, json=payload, params=params) as response:
            if response.status == 200:
                return await response.json()

            body = await response.text()
            logger.debug(f"{protocol} {method} {url} -> {response.status}: {body[:200]}")
            if response.status == 429:
                raise RateLimitExceeded(_reset_time_ms(response.headers))
            if response.status in (502, 503, 504):
                raise ProtocolUnavailable(protocol, f"HTTP {response.status}")
            if response.status == 422 and payload and "token" in body.lower():
                raise InvalidToken(str(payload.get("tokenIn") or payload.get("asset")), body[:200])
            if response.status in (400, 422):
                raise ValidationFailed([body[:200] or f"HTTP {response.status}"])
            raise NetworkError(body[:200] or response.reason or "request failed", status_code=response.status)
