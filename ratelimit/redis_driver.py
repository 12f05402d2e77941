"""A redis client wrapper with command pipelining and connection statistics."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import redis
from redis.connection import Connection, SSLConnection, UnixDomainSocketConnection
from redis.sentinel import Sentinel, SentinelManagedConnection, SentinelManagedSSLConnection

from .metrics import Scope

logger = logging.getLogger(__name__)

REDIS_HEALTH_COMPONENT_NAME = "redis"

_CREDENTIALS = re.compile(r"[^,/@]*:[^,/@]*@")

Command = tuple[str, str, tuple[Any, ...]]
Pipeline = list[Command]


class RedisError(Exception):
    """An error raised while setting up or talking to redis."""


class _HealthChecker(Protocol):
    def ok(self, component: str) -> Any: ...

    def fail(self, component: str) -> Any: ...


class _Server(Protocol):
    def health_checker(self) -> _HealthChecker: ...


class PoolStats:
    """Connection statistics of a pool, optionally driving a health check."""

    def __init__(
        self,
        scope: Scope,
        health_check_active_connection: bool = False,
        server: _Server | None = None,
        component: str = REDIS_HEALTH_COMPONENT_NAME,
    ) -> None:
        self.connection_active = scope.gauge("cx_active")
        self.connection_total = scope.counter("cx_total")
        self.connection_close = scope.counter("cx_local_close")
        self._health_check = health_check_active_connection
        self._server = server
        self._component = component

    def _update_health(self, healthy: bool) -> None:
        checker = self._server.health_checker()
        try:
            if healthy:
                checker.ok(self._component)
            else:
                checker.fail(self._component)
        except Exception as exc:
            logger.error("Unable to update health status: %s", exc)

    def connection_created(self, error: BaseException | None) -> None:
        """Record a connection attempt; error is None when it succeeded."""
        if error is not None:
            logger.error("creating redis connection error: %s", error)
            return
        self.connection_total.add(1)
        self.connection_active.add(1)
        if self._health_check and self._server is not None:
            self._update_health(True)

    def connection_closed(self) -> None:
        """Record a connection closed by this side."""
        self.connection_active.sub(1)
        self.connection_close.add(1)
        if self._health_check and self._server is not None and self.connection_active.value == 0:
            self._update_health(False)


def _traced(base: type, stats: PoolStats) -> type:
    """A connection class that reports opens and closes to stats."""

    class TracedConnection(base):  # type: ignore[misc, valid-type]
        def connect(self, *args: Any, **kwargs: Any) -> None:
            if getattr(self, "_sock", None) is not None:
                return
            try:
                super().connect(*args, **kwargs)
            except Exception as exc:
                stats.connection_created(exc)
                raise
            stats.connection_created(None)

        def disconnect(self, *args: Any) -> None:
            was_connected = getattr(self, "_sock", None) is not None
            super().disconnect(*args)
            if was_connected:
                stats.connection_closed()

    TracedConnection.__name__ = f"Traced{base.__name__}"
    return TracedConnection


class RedisClient:
    """Runs redis commands, singly or as pipelines."""

    def __init__(self, client: Any, stats: PoolStats, implicit_pipelining: bool = False) -> None:
        self._client = client
        self._stats = stats
        self._implicit_pipelining = implicit_pipelining

    def do_cmd(self, cmd: str, key: str, *args: Any) -> Any:
        """Run one command and return its result."""
        try:
            return self._client.execute_command(cmd, key, *args)
        except (redis.exceptions.RedisError, OSError) as exc:
            raise RedisError(str(exc)) from exc

    def pipe_append(self, pipeline: Pipeline, cmd: str, key: str, *args: Any) -> Pipeline:
        """Return a new pipeline with the command appended."""
        return [*pipeline, (cmd, key, args)]

    def pipe_do(self, pipeline: Pipeline) -> list[Any]:
        """Run every command of the pipeline and return their results in order."""
        try:
            if self._implicit_pipelining:
                return [self._client.execute_command(cmd, key, *args) for cmd, key, args in pipeline]
            batch = self._client.pipeline(transaction=False)
            for cmd, key, args in pipeline:
                batch.execute_command(cmd, key, *args)
            return list(batch.execute())
        except (redis.exceptions.RedisError, OSError) as exc:
            raise RedisError(str(exc)) from exc

    def close(self) -> None:
        self._client.close()

    def num_active_conns(self) -> int:
        return self._stats.connection_active.value

    def implicit_pipelining_enabled(self) -> bool:
        return self._implicit_pipelining


def _mask_credentials(url: str) -> str:
    return _CREDENTIALS.sub("*****:*****@", url)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise RedisError(f"invalid redis address: {address!r}")
    return host, int(port)


def _auth_kwargs(auth: str, masked_url: str) -> dict[str, str]:
    if not auth:
        return {}
    user, sep, rest = auth.partition(":")
    if sep:
        logger.warning("enabling authentication to redis on %s with user %s", masked_url, user)
        password = rest
        return dict(username=user, password=password)
    logger.warning("enabling authentication to redis on %s without user", masked_url)
    password = auth
    return dict(password=password)


def new_client(
    scope: Scope,
    use_tls: bool,
    auth: str,
    socket_type: str,
    redis_type: str,
    url: str,
    pool_size: int,
    pipeline_window: float,
    pipeline_limit: int,
    tls_context: dict[str, Any] | None,
    health_check_active_connection: bool,
    server: _Server | None,
) -> RedisClient:
    """Connect to a single, cluster or sentinel redis and check it answers PING.

    tls_context holds the ssl_* keyword options of the redis library.
    """
    masked_url = _mask_credentials(url)
    logger.warning("connecting to redis on %s with pool size %d", masked_url, pool_size)

    stats = PoolStats(scope, health_check_active_connection, server)
    implicit_pipelining = not (pipeline_window == 0 and pipeline_limit == 0)
    logger.debug("Implicit pipelining enabled: %s", implicit_pipelining)

    options: dict[str, Any] = _auth_kwargs(auth, masked_url)
    if use_tls:
        options.update(tls_context or {})
    max_connections = pool_size if pool_size > 0 else None

    kind = redis_type.lower()
    try:
        if kind == "single":
            if socket_type == "unix":
                base, address = UnixDomainSocketConnection, {"path": url}
            else:
                host, port = _split_address(url)
                base = SSLConnection if use_tls else Connection
                address = {"host": host, "port": port}
            pool = redis.ConnectionPool(
                connection_class=_traced(base, stats),
                max_connections=max_connections,
                **address,
                **options,
            )
            client = redis.Redis(connection_pool=pool)
        elif kind == "cluster":
            urls = url.split(",")
            if not implicit_pipelining:
                raise RedisError(
                    "Implicit Pipelining must be enabled to work with Redis Cluster Mode. "
                    "Set values for REDIS_PIPELINE_WINDOW or REDIS_PIPELINE_LIMIT to enable implicit pipelining"
                )
            logger.warning("Creating cluster with urls %s", urls)
            nodes = [redis.cluster.ClusterNode(*_split_address(node)) for node in urls]
            base = SSLConnection if use_tls else Connection
            client = redis.RedisCluster(
                startup_nodes=nodes,
                connection_class=_traced(base, stats),
                max_connections=max_connections or 2**31,
                **options,
            )
        elif kind == "sentinel":
            urls = url.split(",")
            if len(urls) < 2:
                raise RedisError(
                    "Expected master name and a list of urls for the sentinels, "
                    "in the format: <redis master name>,<sentinel1>,...,<sentineln>"
                )
            sentinel = Sentinel(
                [_split_address(address) for address in urls[1:]],
                sentinel_kwargs=dict(options),
            )
            base = SentinelManagedSSLConnection if use_tls else SentinelManagedConnection
            client = sentinel.master_for(
                urls[0],
                connection_class=_traced(base, stats),
                max_connections=max_connections,
                **options,
            )
        else:
            raise RedisError(f"Unrecognized redis type {redis_type}")

        response = client.execute_command("PING")
    except (redis.exceptions.RedisError, OSError) as exc:
        raise RedisError(str(exc)) from exc

    if response is not True and response not in ("PONG", b"PONG"):
        raise RedisError(f"connecting redis error: {response}")

    return RedisClient(client, stats, implicit_pipelining)