"""
Tests for the in-process query cache.

Run with: pytest tests/test_query_cache.py -v
"""

from dataclasses import dataclass
from unittest.mock import MagicMock, patch

from query_cache import QueryCache, make_key


@dataclass
class _Filters:
    status: str | None = None
    client_id: str | None = None


class TestMakeKey:
    """Tests for cache key construction."""

    def test_dict_parts_are_order_independent(self):
        assert make_key("quotes", {"a": 1, "b": 2}) == make_key("quotes", {"b": 2, "a": 1})

    def test_lists_become_tuples(self):
        key = make_key("jobs", ["j-1", "j-2"])
        assert key == ("jobs", ("j-1", "j-2"))
        hash(key)

    def test_dataclass_parts_are_hashable(self):
        key = make_key("quotes", _Filters(status="draft"))
        hash(key)
        assert key != make_key("quotes", _Filters(status="sent"))
        assert key == make_key("quotes", _Filters(status="draft"))


class TestQueryCache:
    """Tests for TTL caching and prefix invalidation."""

    def test_miss_then_hit(self, cache):
        fetch = MagicMock(return_value=[{"id": "q-1"}])

        first = cache.get_or_fetch(("quotes",), fetch)
        second = cache.get_or_fetch(("quotes",), fetch)

        assert first == second == [{"id": "q-1"}]
        fetch.assert_called_once()

    def test_none_results_are_cached(self, cache):
        fetch = MagicMock(return_value=None)
        cache.get_or_fetch(("quote", "missing"), fetch)
        cache.get_or_fetch(("quote", "missing"), fetch)
        fetch.assert_called_once()

    def test_disabled_always_fetches(self):
        cache = QueryCache(ttl_seconds=300, enabled=False)
        fetch = MagicMock(return_value=1)
        cache.get_or_fetch(("x",), fetch)
        cache.get_or_fetch(("x",), fetch)
        assert fetch.call_count == 2
        assert len(cache) == 0

    def test_expired_entry_refetches(self, cache):
        fetch = MagicMock(side_effect=[1, 2])
        with patch("query_cache.time.monotonic", return_value=1000.0):
            assert cache.get_or_fetch(("x",), fetch) == 1
        with patch("query_cache.time.monotonic", return_value=1000.0 + cache.ttl_seconds + 1):
            assert ("x",) not in cache
            assert cache.get_or_fetch(("x",), fetch) == 2

    def test_invalidate_prefix(self, cache):
        cache.get_or_fetch(("quotes", "draft"), lambda: [])
        cache.get_or_fetch(("quotes", "sent"), lambda: [])
        cache.get_or_fetch(("quote", "q-1"), lambda: {})

        dropped = cache.invalidate(("quotes",))

        assert dropped == 2
        assert ("quote", "q-1") in cache
        assert ("quotes", "draft") not in cache

    def test_invalidate_exact_key(self, cache):
        cache.get_or_fetch(("quote", "q-1"), lambda: {})
        cache.get_or_fetch(("quote", "q-2"), lambda: {})
        assert cache.invalidate(("quote", "q-1")) == 1
        assert ("quote", "q-2") in cache

    def test_clear(self, cache):
        cache.get_or_fetch(("a",), lambda: 1)
        cache.clear()
        assert len(cache) == 0
