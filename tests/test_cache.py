"""Test the quote/route cache."""

from crossproto.config import CacheConfig
from crossproto.core.cache import CacheKind, QuoteRouteCache, fingerprint

from fakes import FakeClock


class TestFingerprint:
    """Test request fingerprints."""

    def test_key_order_does_not_matter(self):
        a = fingerprint(CacheKind.QUOTE, {"token_in": "SEI", "token_out": "USDC", "amount_in": 1.0})
        b = fingerprint(CacheKind.QUOTE, {"amount_in": 1.0, "token_out": "USDC", "token_in": "SEI"})
        assert a == b

    def test_price_lookups_are_symmetric(self):
        a = fingerprint(CacheKind.PRICE, {"token_in": "SEI", "token_out": "USDC"})
        b = fingerprint(CacheKind.PRICE, {"token_in": "USDC", "token_out": "SEI"})
        assert a == b

    def test_quote_lookups_keep_direction(self):
        a = fingerprint(CacheKind.QUOTE, {"token_in": "SEI", "token_out": "USDC"})
        b = fingerprint(CacheKind.QUOTE, {"token_in": "USDC", "token_out": "SEI"})
        assert a != b

    def test_kind_prefix(self):
        assert fingerprint(CacheKind.ROUTES, {"x": 1}).startswith("routes:")


class TestQuoteRouteCache:
    """Test TTL and capacity behavior."""

    def setup_method(self):
        self.clock = FakeClock()
        self.cache = QuoteRouteCache(CacheConfig(quote_ttl_ms=1000, route_ttl_ms=5000), clock=self.clock)

    def test_entry_expires_at_ttl(self):
        self.cache.put(CacheKind.QUOTE, "k", "value")

        self.clock.advance(999)
        assert self.cache.get(CacheKind.QUOTE, "k") == "value"

        self.clock.advance(1)
        assert self.cache.get(CacheKind.QUOTE, "k") is None

    def test_ttl_is_per_kind(self):
        self.cache.put(CacheKind.QUOTE, "k", "quote")
        self.cache.put(CacheKind.ROUTES, "k", "routes")

        self.clock.advance(2000)

        assert self.cache.get(CacheKind.QUOTE, "k") is None
        assert self.cache.get(CacheKind.ROUTES, "k") == "routes"

    def test_stale_entry_overwritten_by_put(self):
        self.cache.put(CacheKind.QUOTE, "k", "old")
        self.clock.advance(5000)
        self.cache.put(CacheKind.QUOTE, "k", "new")

        assert self.cache.get(CacheKind.QUOTE, "k") == "new"
        assert len(self.cache) == 1

    def test_lru_drop_beyond_capacity(self):
        cache = QuoteRouteCache(CacheConfig(max_entries=2), clock=self.clock)
        cache.put(CacheKind.GAS, "a", 1)
        cache.put(CacheKind.GAS, "b", 2)
        assert cache.get(CacheKind.GAS, "a") == 1  # a is now most recent

        cache.put(CacheKind.GAS, "c", 3)

        assert cache.get(CacheKind.GAS, "b") is None
        assert cache.get(CacheKind.GAS, "a") == 1
        assert cache.get(CacheKind.GAS, "c") == 3

    def test_stats(self):
        self.cache.put(CacheKind.PRICE, "k", 1.0)
        self.cache.get(CacheKind.PRICE, "k")
        self.cache.get(CacheKind.PRICE, "missing")

        stats = self.cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

    def test_clear(self):
        self.cache.put(CacheKind.QUOTE, "k", 1)
        self.cache.clear()
        assert len(self.cache) == 0
