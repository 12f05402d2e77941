import random
from dataclasses import dataclass
from types import SimpleNamespace

import pytest
import redis

from ratelimit.metrics import Scope
from ratelimit.redis_cache import FixedRateLimitCache
from ratelimit.redis_driver import PoolStats, RedisClient, RedisError


class FakePipeline:
    def __init__(self, backend):
        self.backend = backend
        self.queued = []

    def execute_command(self, *args):
        self.queued.append(args)
        return self

    def execute(self):
        return [self.backend.execute_command(*args) for args in self.queued]


class FakeBackend:
    def __init__(self, fail=False):
        self.store = {}
        self.ttl = {}
        self.commands = []
        self.fail = fail

    def execute_command(self, cmd, key=None, *args):
        if self.fail:
            raise redis.exceptions.ConnectionError("connection refused")
        self.commands.append(cmd)
        if cmd == "INCRBY":
            self.store[key] = self.store.get(key, 0) + int(args[0])
            return self.store[key]
        if cmd == "EXPIRE":
            self.ttl[key] = args[0]
            return key in self.store
        if cmd == "GET":
            value = self.store.get(key)
            return None if value is None else str(value).encode()
        raise AssertionError(cmd)

    def pipeline(self, transaction=True):
        return FakePipeline(self)


@dataclass
class CacheKey:
    key: str
    per_second: bool


@dataclass
class Info:
    limit: object
    before: int
    after: int


class FakeBaseLimiter:
    def __init__(self, over_local=()):
        self.over_local = set(over_local)

    def generate_cache_keys(self, request, limits, hits_addend):
        return [
            CacheKey("", False) if limit is None else CacheKey(f"{request.domain}_{name}", limit.limit.unit == "SECOND")
            for name, limit in zip(request.descriptors, limits)
        ]

    def is_over_limit_with_local_cache(self, key):
        return key in self.over_local

    def rate_limit_info(self, limit, before, after):
        return Info(limit, before, after)

    def is_over_limit_threshold_reached(self, info):
        return info.after > info.limit.limit.requests_per_unit

    def get_response_descriptor_status(self, key, info, over_local, hits_addend):
        return key, info, over_local, hits_addend


def make_limit(unit, requests_per_unit, shadow_mode=False):
    return SimpleNamespace(
        limit=SimpleNamespace(unit=unit, requests_per_unit=requests_per_unit), shadow_mode=shadow_mode
    )


def make_request(descriptors, hits_addend=1, domain="d"):
    return SimpleNamespace(domain=domain, descriptors=list(descriptors), hits_addend=hits_addend)


def make_client(backend):
    return RedisClient(backend, PoolStats(Scope()), implicit_pipelining=False)


def make_cache(backend, per_second_backend=None, over_local=(), **kwargs):
    per_second = make_client(per_second_backend) if per_second_backend is not None else None
    return FixedRateLimitCache(make_client(backend), per_second, FakeBaseLimiter(over_local), **kwargs)


def test_counts_accumulate_across_calls():
    backend = FakeBackend()
    cache = make_cache(backend)
    limits = [make_limit("MINUTE", 10)]
    cache.do_limit(make_request(["a"]), limits)
    key, info, over_local, hits = cache.do_limit(make_request(["a"]), limits)[0]
    assert key == "d_a"
    assert (info.before, info.after) == (1, 2)
    assert over_local is False
    assert backend.store["d_a"] == 2
    assert backend.ttl["d_a"] == 60


def test_zero_hits_addend_counts_as_one():
    backend = FakeBackend()
    cache = make_cache(backend)
    cache.do_limit(make_request(["a"], hits_addend=0), [make_limit("MINUTE", 10)])
    assert backend.store["d_a"] == 1


def test_hits_addend_is_applied():
    backend = FakeBackend()
    cache = make_cache(backend)
    _, info, _, hits = cache.do_limit(make_request(["a"], hits_addend=3), [make_limit("HOUR", 10)])[0]
    assert hits == 3
    assert (info.before, info.after) == (0, 3)
    assert backend.store["d_a"] == 3


def test_per_second_limits_use_their_own_client():
    main, per_second = FakeBackend(), FakeBackend()
    cache = make_cache(main, per_second)
    cache.do_limit(make_request(["a", "b"]), [make_limit("SECOND", 5), make_limit("MINUTE", 5)])
    assert per_second.store == {"d_a": 1}
    assert main.store == {"d_b": 1}
    assert per_second.ttl["d_a"] == 1


def test_without_per_second_client_everything_goes_to_main():
    main = FakeBackend()
    cache = make_cache(main)
    cache.do_limit(make_request(["a", "b"]), [make_limit("SECOND", 5), make_limit("MINUTE", 5)])
    assert main.store == {"d_a": 1, "d_b": 1}


def test_locally_over_limit_key_is_not_incremented():
    backend = FakeBackend()
    cache = make_cache(backend, over_local={"d_a"})
    statuses = cache.do_limit(make_request(["a", "b"]), [make_limit("MINUTE", 5), make_limit("MINUTE", 5)])
    assert statuses[0][2] is True
    assert statuses[1][2] is False
    assert "d_a" not in backend.store
    assert backend.store["d_b"] == 1


def test_unlimited_descriptor_skips_redis():
    backend = FakeBackend()
    cache = make_cache(backend)
    statuses = cache.do_limit(make_request(["a"]), [None])
    assert statuses[0][0] == ""
    assert statuses[0][1].after == 0
    assert backend.commands == []


def test_stop_increment_when_a_key_nears_its_limit():
    backend = FakeBackend()
    backend.store["d_a"] = 1
    cache = make_cache(backend, stop_cache_key_increment_when_overlimit=True)
    cache.do_limit(make_request(["a", "b"]), [make_limit("MINUTE", 1), make_limit("MINUTE", 10)])
    assert backend.store["d_a"] == 2
    assert backend.store["d_b"] == 0
    assert "GET" in backend.commands


def test_stop_increment_when_a_key_is_over_locally():
    backend = FakeBackend()
    cache = make_cache(backend, over_local={"d_a"}, stop_cache_key_increment_when_overlimit=True)
    statuses = cache.do_limit(make_request(["a", "b"]), [make_limit("MINUTE", 5), make_limit("MINUTE", 5)])
    assert statuses[0][2] is True
    assert "d_a" not in backend.store
    assert backend.store["d_b"] == 0
    assert "GET" not in backend.commands


def test_stop_increment_with_single_key_does_not_read():
    backend = FakeBackend()
    backend.store["d_a"] = 5
    cache = make_cache(backend, stop_cache_key_increment_when_overlimit=True)
    _, info, _, _ = cache.do_limit(make_request(["a"]), [make_limit("MINUTE", 1)])[0]
    assert "GET" not in backend.commands
    assert backend.store["d_a"] == 6
    assert (info.before, info.after) == (5, 6)


def test_expiration_jitter_stays_in_range():
    backend = FakeBackend()
    cache = make_cache(backend, jitter_rand=random.Random(1), expiration_jitter_max_seconds=5)
    plain = FakeBackend()
    make_cache(plain).do_limit(make_request(["a"]), [make_limit("MINUTE", 10)])
    cache.do_limit(make_request(["a"]), [make_limit("MINUTE", 10)])
    base = plain.ttl["d_a"]
    assert base <= backend.ttl["d_a"] < base + 5


def test_redis_failure_raises_redis_error():
    cache = make_cache(FakeBackend(fail=True))
    with pytest.raises(RedisError, match="connection refused"):
        cache.do_limit(make_request(["a"]), [make_limit("MINUTE", 10)])