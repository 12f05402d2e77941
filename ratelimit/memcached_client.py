"""The memcached client interface used by the memcached rate limit cache."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class MemcacheError(Exception):
    """An error raised by memcached setup or operations."""


class CacheMissError(MemcacheError):
    """The requested key is not present."""


class NotStoredError(MemcacheError):
    """A conditional write was not performed, e.g. add on an existing key."""


@dataclass(frozen=True)
class Item:
    """A memcached item; expiration is in seconds, 0 meaning never."""

    key: str
    value: bytes = b""
    expiration: int = 0
    flags: int = 0


class MemcacheClient(ABC):
    """Operations the rate limit cache needs from a memcached client."""

    @abstractmethod
    def get_multi(self, keys: list[str]) -> dict[str, Item]:
        """Fetch several keys at once; missing keys are absent from the result."""

    @abstractmethod
    def increment(self, key: str, delta: int) -> int:
        """Add delta to a numeric value; raise CacheMissError if missing."""

    @abstractmethod
    def add(self, item: Item) -> None:
        """Store item only if absent; raise NotStoredError otherwise."""