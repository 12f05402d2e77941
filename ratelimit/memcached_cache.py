"""A rate limit cache backed by memcached.

Current counts are fetched with one multi-get and increments happen in the
background, since memcached has no multi-increment. Memcached does not create
a key on increment, so a missed increment is followed by an add, and a failed
add (another writer won the race) by one more increment.
"""

from __future__ import annotations

import logging
import queue
import random
import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Protocol, Sequence

from .memcached_client import (
    CacheMissError,
    Item,
    MemcacheClient,
    MemcacheError,
    NotStoredError,
)

logger = logging.getLogger(__name__)

_UINT32_MASK = 0xFFFFFFFF
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_NUMBER = re.compile(r"[+-]?[0-9]+")
_UNIT_SECONDS = {"SECOND": 1, "MINUTE": 60, "HOUR": 3600, "DAY": 86400}
_IDLE_PERIOD = 10.0


class ServerList:
    """A thread-safe, replaceable list of memcached server addresses."""

    def __init__(self) -> None:
        self._servers: tuple[str, ...] = ()
        self._lock = threading.Lock()

    @staticmethod
    def _validate(server: str) -> str:
        if "/" in server:
            return server
        host, sep, port = server.rpartition(":")
        if not sep or not host or not port.isdigit() or int(port) > 65535:
            raise MemcacheError(f"invalid memcache server address: {server!r}")
        return server

    def set_servers(self, *args: str) -> None:
        """Replace all servers; on an invalid address nothing changes."""
        servers = tuple(self._validate(server) for server in args)
        with self._lock:
            self._servers = servers

    def servers(self) -> list[str]:
        with self._lock:
            return list(self._servers)


class SrvResolver(ABC):
    """Resolves a DNS SRV name into "host:port" strings."""

    @abstractmethod
    def server_strings_from_srv(self, srv: str) -> list[str]:
        """Return the servers behind srv, raising on failure."""


def refresh_servers(server_list: ServerList, srv: str, resolver: SrvResolver) -> None:
    """Replace the servers of server_list with those srv resolves to."""
    servers = resolver.server_strings_from_srv(srv)
    server_list.set_servers(*servers)


def refresh_servers_periodically(
    server_list: ServerList,
    srv: str,
    interval: float,
    resolver: SrvResolver,
    finish: threading.Event,
) -> None:
    """Refresh servers every interval seconds until finish is set."""
    while not finish.wait(interval):
        try:
            refresh_servers(server_list, srv, resolver)
        except Exception:
            logger.warning("failed to refresh memcache hosts")
        else:
            logger.debug("refreshed memcache hosts")


_tasks: "queue.Queue[Callable[[], Any]]" = queue.Queue()
_idle_workers = 0
_workers_lock = threading.Lock()


def _run_task(task: Callable[[], Any]) -> None:
    try:
        task()
    except Exception:
        logger.exception("background task failed")


def _worker(first: Callable[[], Any]) -> None:
    global _idle_workers
    _run_task(first)
    processed = 0
    period_end = time.monotonic() + _IDLE_PERIOD
    with _workers_lock:
        _idle_workers += 1
    while True:
        try:
            task = _tasks.get(timeout=max(period_end - time.monotonic(), 0.0))
        except queue.Empty:
            period_end = time.monotonic() + _IDLE_PERIOD
            if processed:
                processed = 0
                continue
            with _workers_lock:
                # Leave only if no queued task is counting on this worker.
                if _idle_workers > 0:
                    _idle_workers -= 1
                    return
            continue
        _run_task(task)
        processed += 1
        with _workers_lock:
            _idle_workers += 1


def run_async(task: Callable[[], Any]) -> None:
    """Run task on an idle background worker, starting a new one if none is idle.

    Workers exit after a full idle period without tasks.
    """
    global _idle_workers
    with _workers_lock:
        if _idle_workers > 0:
            _idle_workers -= 1
            _tasks.put(task)
            return
    threading.Thread(target=_worker, args=(task,), daemon=True).start()


class _BaseRateLimiter(Protocol):
    def generate_cache_keys(self, request: Any, limits: Sequence[Any], hits_addend: int) -> list[Any]: ...

    def is_over_limit_with_local_cache(self, key: str) -> bool: ...

    def rate_limit_info(self, limit: Any, limit_before_increase: int, limit_after_increase: int) -> Any: ...

    def get_response_descriptor_status(
        self, key: str, limit_info: Any, is_over_limit_with_local_cache: bool, hits_addend: int
    ) -> Any: ...


def _unit_to_divider(unit: Any) -> int:
    name = str(getattr(unit, "name", unit)).upper()
    try:
        return _UNIT_SECONDS[name]
    except KeyError:
        raise ValueError(f"unknown rate limit unit: {unit!r}") from None


def _parse_count(raw: bytes) -> int:
    text = raw.decode("ascii", errors="replace")
    if not _NUMBER.fullmatch(text):
        raise ValueError(f"non-numeric value: {raw!r}")
    value = int(text)
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"value out of range: {raw!r}")
    return value & _UINT32_MASK


class MemcacheRateLimitCache:
    """Checks and updates rate limit counters stored in memcached.

    The base limiter supplies cache keys, the local over-limit cache and the
    construction of descriptor statuses.
    """

    def __init__(
        self,
        client: MemcacheClient,
        base_limiter: _BaseRateLimiter,
        jitter_rand: random.Random | None = None,
        expiration_jitter_max_seconds: int = 0,
        auto_flush: bool = False,
    ) -> None:
        self._client = client
        self._base = base_limiter
        self._jitter_rand = jitter_rand or random.Random()
        self._jitter_max = expiration_jitter_max_seconds
        self._auto_flush = auto_flush
        self._pending = 0
        self._pending_changed = threading.Condition()

    def do_limit(self, request: Any, limits: Sequence[Any]) -> list[Any]:
        logger.debug("starting cache lookup")
        hits_addend = max(1, request.hits_addend or 0)
        cache_keys = self._base.generate_cache_keys(request, limits, hits_addend)

        over_local = [False] * len(request.descriptors)
        keys_to_get: list[str] = []
        for index, cache_key in enumerate(cache_keys):
            if not cache_key.key:
                continue
            if self._base.is_over_limit_with_local_cache(cache_key.key):
                over_local[index] = True
                logger.debug("cache key is over the limit: %s", cache_key.key)
                continue
            logger.debug("looking up cache key: %s", cache_key.key)
            keys_to_get.append(cache_key.key)

        values: dict[str, Item] = {}
        if keys_to_get:
            try:
                values = self._client.get_multi(keys_to_get)
            except (MemcacheError, OSError) as exc:
                logger.error("Error multi-getting memcache keys (%s): %s", keys_to_get, exc)

        statuses = []
        for cache_key, limit, is_over in zip(cache_keys, limits, over_local):
            before = 0
            item = values.get(cache_key.key)
            if item is not None:
                try:
                    before = _parse_count(item.value)
                except ValueError:
                    logger.error("Unexpected non-numeric value in memcached: %r", item)
            after = (before + hits_addend) & _UINT32_MASK
            info = self._base.rate_limit_info(limit, before, after)
            statuses.append(
                self._base.get_response_descriptor_status(cache_key.key, info, is_over, hits_addend)
            )

        with self._pending_changed:
            self._pending += 1
        run_async(lambda: self._increase(cache_keys, over_local, limits, hits_addend))
        if self._auto_flush:
            self.flush()
        return statuses

    def _increase(
        self, cache_keys: Sequence[Any], over_local: Sequence[bool], limits: Sequence[Any], hits_addend: int
    ) -> None:
        try:
            for cache_key, is_over, limit in zip(cache_keys, over_local, limits):
                if not cache_key.key or is_over:
                    continue
                try:
                    self._client.increment(cache_key.key, hits_addend)
                except CacheMissError:
                    self._add_missing(cache_key.key, limit, hits_addend)
                except (MemcacheError, OSError) as exc:
                    logger.error("Failed to increment key %s: %s", cache_key.key, exc)
        finally:
            with self._pending_changed:
                self._pending -= 1
                self._pending_changed.notify_all()

    def _add_missing(self, key: str, limit: Any, hits_addend: int) -> None:
        expiration = _unit_to_divider(limit.limit.unit)
        if self._jitter_max > 0:
            expiration += self._jitter_rand.randrange(self._jitter_max)
        try:
            self._client.add(Item(key, str(hits_addend).encode(), expiration))
        except NotStoredError:
            # Another writer added the key first; incrementing works now.
            try:
                self._client.increment(key, hits_addend)
            except (MemcacheError, OSError) as exc:
                logger.error("Failed to increment key %s after failing to add: %s", key, exc)
        except (MemcacheError, OSError) as exc:
            logger.error("Failed to add key %s: %s", key, exc)

    def flush(self) -> None:
        """Wait until every background increment has finished."""
        with self._pending_changed:
            self._pending_changed.wait_for(lambda: self._pending == 0)