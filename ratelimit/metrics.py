"""In-process statistics primitives and server-side request metrics."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Mapping


class Counter:
    """A monotonically increasing counter."""

    def __init__(self, name: str, tags: Mapping[str, str] | None = None) -> None:
        self.name = name
        self.tags = dict(tags or {})
        self._value = 0
        self._lock = threading.Lock()

    def inc(self) -> None:
        self.add(1)

    def add(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("counter increments must not be negative")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        return self._value


class Gauge:
    """A value that can move up and down."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0
        self._lock = threading.Lock()

    def add(self, amount: int) -> None:
        with self._lock:
            self._value += amount

    def sub(self, amount: int) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> int:
        return self._value


class Timer:
    """Records a series of durations, in milliseconds."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._values: list[float] = []
        self._lock = threading.Lock()

    def add_value(self, value: float) -> None:
        with self._lock:
            self._values.append(float(value))

    @property
    def values(self) -> tuple[float, ...]:
        with self._lock:
            return tuple(self._values)


class Scope:
    """A named namespace of statistics; child scopes share one registry."""

    def __init__(self, name: str = "", registry: dict | None = None) -> None:
        self.name = name
        self._registry: dict = {} if registry is None else registry
        self._lock = threading.Lock()

    def _full_name(self, name: str) -> str:
        return f"{self.name}.{name}" if self.name else name

    def _lookup(self, kind: str, name: str, tags: Mapping[str, str], factory: Callable[[], Any]) -> Any:
        key = (kind, name, frozenset(tags.items()))
        with self._lock:
            stat = self._registry.get(key)
            if stat is None:
                stat = factory()
                self._registry[key] = stat
            return stat

    def scope(self, name: str) -> "Scope":
        child = Scope(self._full_name(name), self._registry)
        child._lock = self._lock
        return child

    def counter(self, name: str, tags: Mapping[str, str] | None = None) -> Counter:
        full = self._full_name(name)
        tags = dict(tags or {})
        return self._lookup("counter", full, tags, lambda: Counter(full, tags))

    def gauge(self, name: str) -> Gauge:
        full = self._full_name(name)
        return self._lookup("gauge", full, {}, lambda: Gauge(full))

    def timer(self, name: str) -> Timer:
        full = self._full_name(name)
        return self._lookup("timer", full, {}, lambda: Timer(full))


def split_method_name(full_method_name: str) -> tuple[str, str]:
    """Split "/service/method" into its service and method parts."""
    if full_method_name.startswith("/"):
        full_method_name = full_method_name[1:]
    service, sep, method = full_method_name.partition("/")
    if not sep:
        return "unknown", "unknown"
    return service, method


class ServerReporter:
    """Reports request counts and response times per called method."""

    def __init__(self, scope: Scope) -> None:
        self.scope = scope

    def unary_server_interceptor(self) -> Callable[[Any, str, Callable[[Any], Any]], Any]:
        def interceptor(request: Any, full_method: str, handler: Callable[[Any], Any]) -> Any:
            start = time.monotonic()
            _, method = split_method_name(full_method)
            total_requests = self.scope.counter(f"{method}.total_requests")
            response_time = self.scope.timer(f"{method}.response_time")
            total_requests.inc()
            try:
                return handler(request)
            finally:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                response_time.add_value(elapsed_ms)

        return interceptor