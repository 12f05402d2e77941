"""A memcached client wrapper that counts outcomes of every operation."""

from __future__ import annotations

from .memcached_client import CacheMissError, Item, MemcacheClient, NotStoredError
from .metrics import Scope


class StatsCollectingClient(MemcacheClient):
    """Delegates to another client and records success, miss and error counts."""

    def __init__(self, client: MemcacheClient, scope: Scope) -> None:
        self._client = client
        self._multi_get_success = scope.counter("multiget", {"code": "success"})
        self._multi_get_error = scope.counter("multiget", {"code": "error"})
        self._increment_success = scope.counter("increment", {"code": "success"})
        self._increment_miss = scope.counter("increment", {"code": "miss"})
        self._increment_error = scope.counter("increment", {"code": "error"})
        self._add_success = scope.counter("add", {"code": "success"})
        self._add_error = scope.counter("add", {"code": "error"})
        self._add_not_stored = scope.counter("add", {"code": "not_stored"})
        self._keys_requested = scope.counter("keys_requested")
        self._keys_found = scope.counter("keys_found")

    def get_multi(self, keys: list[str]) -> dict[str, Item]:
        self._keys_requested.add(len(keys))
        try:
            results = self._client.get_multi(keys)
        except Exception:
            self._multi_get_error.inc()
            raise
        self._keys_found.add(len(results))
        self._multi_get_success.inc()
        return results

    def increment(self, key: str, delta: int) -> int:
        try:
            new_value = self._client.increment(key, delta)
        except CacheMissError:
            self._increment_miss.inc()
            raise
        except Exception:
            self._increment_error.inc()
            raise
        self._increment_success.inc()
        return new_value

    def add(self, item: Item) -> None:
        try:
            self._client.add(item)
        except NotStoredError:
            self._add_not_stored.inc()
            raise
        except Exception:
            self._add_error.inc()
            raise
        self._add_success.inc()


def collect_stats(client: MemcacheClient, scope: Scope) -> StatsCollectingClient:
    """Wrap client so that its operations are counted in scope."""
    return StatsCollectingClient(client, scope)