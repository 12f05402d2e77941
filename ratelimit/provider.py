"""Configuration providers and the events they publish."""

from __future__ import annotations

import queue
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ConfigUpdateEvent:
    """A newly loaded configuration, or the error raised while loading it."""

    config: Any = None
    error: Any = None

    def get_config(self) -> tuple[Any, Any]:
        return self.config, self.error


class RateLimitConfigProvider(ABC):
    """Base for sources of rate limit configuration.

    Implementations publish a ConfigUpdateEvent whenever they detect a change;
    consumers read them from the queue returned by config_update_events().
    """

    def __init__(self) -> None:
        self._events: queue.Queue[ConfigUpdateEvent] = queue.Queue()

    def config_update_events(self) -> "queue.Queue[ConfigUpdateEvent]":
        return self._events

    def _publish(self, event: ConfigUpdateEvent) -> None:
        self._events.put(event)

    @abstractmethod
    def stop(self) -> None:
        """Stop watching for configuration changes."""