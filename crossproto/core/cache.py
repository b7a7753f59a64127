"""Time-bounded memoization of quotes, routes, prices and gas estimates."""

import base64
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

from loguru import logger

from ..config import CacheConfig
from .utils import Clock, now_ms

T = TypeVar("T")


class CacheKind(Enum):
    QUOTE = "quote"
    ROUTES = "routes"
    PRICE = "price"
    GAS = "gas"


# kinds whose lookups do not depend on the order of the token pair
SYMMETRIC_KINDS = {CacheKind.PRICE}


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    cached_at: int


def fingerprint(kind: CacheKind, request: Dict[str, Any]) -> str:
    """Normalized serialization of a request: sorted keys, optional sorted token pair."""
    fields = dict(request)
    if kind in SYMMETRIC_KINDS and "token_in" in fields and "token_out" in fields:
        pair = sorted([str(fields.pop("token_in")), str(fields.pop("token_out"))])
        fields["pair"] = pair
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
    encoded = base64.urlsafe_b64encode(canonical.encode()).decode()
    return f"{kind.value}:{encoded}"


class QuoteRouteCache:
    """
    Keyed cache with a TTL per kind.

    Entries are never purged actively: ``get`` treats an entry as absent once
    ``now - cached_at >= ttl`` and the next ``put`` overwrites it. The total
    number of entries is capped with least-recently-used drop.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Clock = now_ms):
        self.config = config or CacheConfig()
        self.clock = clock
        self.ttls: Dict[CacheKind, int] = {
            CacheKind.QUOTE: self.config.quote_ttl_ms,
            CacheKind.ROUTES: self.config.route_ttl_ms,
            CacheKind.PRICE: self.config.price_ttl_ms,
            CacheKind.GAS: self.config.gas_ttl_ms,
        }
        self._entries: "OrderedDict[Tuple[CacheKind, str], CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def ttl(self, kind: CacheKind) -> int:
        return self.ttls[kind]

    def get(self, kind: CacheKind, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get((kind, key))
            if entry is None or self.clock() - entry.cached_at >= self.ttls[kind]:
                self.misses += 1
                return None
            self._entries.move_to_end((kind, key))
            self.hits += 1
            return entry.value

    def put(self, kind: CacheKind, key: str, value: Any) -> None:
        with self._lock:
            self._entries[(kind, key)] = CacheEntry(value=value, cached_at=self.clock())
            self._entries.move_to_end((kind, key))
            while len(self._entries) > self.config.max_entries:
                dropped, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache full, dropped {dropped[0].value} entry")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
