"""A fixed-window rate limit cache backed by redis."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from .redis_driver import Pipeline, RedisClient

logger = logging.getLogger(__name__)

_UINT32_MASK = 0xFFFFFFFF
_UNIT_SECONDS = {"SECOND": 1, "MINUTE": 60, "HOUR": 3600, "DAY": 86400}


class _BaseRateLimiter(Protocol):
    def generate_cache_keys(self, request: Any, limits: Sequence[Any], hits_addend: int) -> list[Any]: ...

    def is_over_limit_with_local_cache(self, key: str) -> bool: ...

    def rate_limit_info(self, limit: Any, limit_before_increase: int, limit_after_increase: int) -> Any: ...

    def is_over_limit_threshold_reached(self, limit_info: Any) -> bool: ...

    def get_response_descriptor_status(
        self, key: str, limit_info: Any, is_over_limit_with_local_cache: bool, hits_addend: int
    ) -> Any: ...


def _unit_to_divider(unit: Any) -> int:
    name = str(getattr(unit, "name", unit)).upper()
    try:
        return _UNIT_SECONDS[name]
    except KeyError:
        raise ValueError(f"unknown rate limit unit: {unit!r}") from None


def _to_count(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (bytes, str)):
        value = int(value)
    return int(value) & _UINT32_MASK


@dataclass
class _Batch:
    """Commands for one client, with the descriptor index each result belongs to."""

    client: RedisClient
    pipeline: Pipeline = field(default_factory=list)
    indexes: list[int | None] = field(default_factory=list)

    def append(self, index: int | None, cmd: str, key: str, *args: Any) -> None:
        self.pipeline = self.client.pipe_append(self.pipeline, cmd, key, *args)
        self.indexes.append(index)

    def run(self) -> list[tuple[int, Any]]:
        if not self.pipeline:
            return []
        results = self.client.pipe_do(self.pipeline)
        return [(index, value) for index, value in zip(self.indexes, results) if index is not None]


class FixedRateLimitCache:
    """Counts hits per fixed window with INCRBY and EXPIRE.

    Limits with a per-second unit go to per_second_client when one is given.
    """

    def __init__(
        self,
        client: RedisClient,
        per_second_client: RedisClient | None,
        base_limiter: _BaseRateLimiter,
        jitter_rand: random.Random | None = None,
        expiration_jitter_max_seconds: int = 0,
        stop_cache_key_increment_when_overlimit: bool = False,
    ) -> None:
        self._client = client
        self._per_second_client = per_second_client
        self._base = base_limiter
        self._jitter_rand = jitter_rand or random.Random()
        self._jitter_max = expiration_jitter_max_seconds
        self._stop_increment = stop_cache_key_increment_when_overlimit
        self._active_calls = 0
        self._idle = threading.Condition()

    def _batches(self) -> dict[bool, _Batch]:
        batches = {False: _Batch(self._client)}
        if self._per_second_client is not None:
            batches[True] = _Batch(self._per_second_client)
        return batches

    def _route(self, cache_key: Any) -> bool:
        return self._per_second_client is not None and bool(cache_key.per_second)

    def _over_local(self, key: str, limit: Any) -> bool:
        if not self._base.is_over_limit_with_local_cache(key):
            return False
        if getattr(limit, "shadow_mode", False):
            logger.debug("Cache key %s would be rate limited but shadow mode is enabled on this rule", key)
        else:
            logger.debug("cache key is over the limit: %s", key)
        return True

    def do_limit(self, request: Any, limits: Sequence[Any]) -> list[Any]:
        with self._idle:
            self._active_calls += 1
        try:
            return self._do_limit(request, limits)
        finally:
            with self._idle:
                self._active_calls -= 1
                if self._active_calls == 0:
                    self._idle.notify_all()

    def _do_limit(self, request: Any, limits: Sequence[Any]) -> list[Any]:
        logger.debug("starting cache lookup")
        hits_addend = max(1, request.hits_addend or 0)
        cache_keys = self._base.generate_cache_keys(request, limits, hits_addend)

        count = len(request.descriptors)
        over_local = [False] * count
        near_limit = [False] * count
        results = [0] * count
        hits_for_redis = hits_addend

        if self._stop_increment:
            gets = self._batches()
            any_over = False
            for index, cache_key in enumerate(cache_keys):
                if not cache_key.key:
                    continue
                if self._over_local(cache_key.key, limits[index]):
                    over_local[index] = True
                    hits_for_redis = 0
                    any_over = True
                    continue
                gets[self._route(cache_key)].append(index, "GET", cache_key.key)

            # Only when no key is over the limit locally, ask redis whether one is about to be.
            if len(cache_keys) > 1 and not any_over:
                current = [0] * count
                for batch in gets.values():
                    for index, value in batch.run():
                        current[index] = _to_count(value)
                for index, cache_key in enumerate(cache_keys):
                    if not cache_key.key:
                        continue
                    before = current[index]
                    after = (before + hits_addend) & _UINT32_MASK
                    info = self._base.rate_limit_info(limits[index], before, after)
                    if self._base.is_over_limit_threshold_reached(info):
                        hits_for_redis = 0
                        near_limit[index] = True
        else:
            for index, cache_key in enumerate(cache_keys):
                if cache_key.key and self._over_local(cache_key.key, limits[index]):
                    over_local[index] = True

        increments = self._batches()
        for index, cache_key in enumerate(cache_keys):
            if not cache_key.key or over_local[index]:
                continue
            logger.debug("looking up cache key: %s", cache_key.key)
            expiration = _unit_to_divider(limits[index].limit.unit)
            if self._jitter_max > 0:
                expiration += self._jitter_rand.randrange(self._jitter_max)
            addend = hits_addend if near_limit[index] else hits_for_redis
            batch = increments[self._route(cache_key)]
            batch.append(index, "INCRBY", cache_key.key, addend)
            batch.append(None, "EXPIRE", cache_key.key, expiration)

        for batch in increments.values():
            for index, value in batch.run():
                results[index] = _to_count(value)

        statuses = []
        for index, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
            after = results[index]
            before = (after - hits_addend) & _UINT32_MASK
            info = self._base.rate_limit_info(limit, before, after)
            statuses.append(
                self._base.get_response_descriptor_status(cache_key.key, info, over_local[index], hits_addend)
            )
        return statuses

    def flush(self) -> None:
        """Wait until every do_limit call in progress has finished its updates."""
        with self._idle:
            self._idle.wait_for(lambda: self._active_calls == 0)