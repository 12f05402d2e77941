import queue

import pytest

from ratelimit.provider import ConfigUpdateEvent, RateLimitConfigProvider


class StaticProvider(RateLimitConfigProvider):
    def __init__(self):
        super().__init__()
        self.stopped = False

    def emit(self, event):
        self._publish(event)

    def stop(self):
        self.stopped = True


def test_event_returns_config():
    config = {"domain": "basic"}
    assert ConfigUpdateEvent(config=config).get_config() == (config, None)


def test_event_returns_error():
    error = ValueError("load error")
    config, err = ConfigUpdateEvent(error=error).get_config()
    assert config is None
    assert err is error


def test_default_event_is_empty():
    assert ConfigUpdateEvent().get_config() == (None, None)


def test_provider_is_abstract():
    with pytest.raises(TypeError):
        RateLimitConfigProvider()


def test_published_events_arrive_in_order():
    provider = StaticProvider()
    first = ConfigUpdateEvent(config="one")
    second = ConfigUpdateEvent(error="two")
    provider.emit(first)
    provider.emit(second)
    events = provider.config_update_events()
    assert events.get_nowait() is first
    assert events.get_nowait() is second
    with pytest.raises(queue.Empty):
        events.get_nowait()


def test_events_published_before_stop_remain_available():
    provider = StaticProvider()
    event = ConfigUpdateEvent(config="last")
    provider.emit(event)
    provider.stop()
    assert provider.stopped is True
    events = provider.config_update_events()
    assert events.get_nowait().get_config() == ("last", None)