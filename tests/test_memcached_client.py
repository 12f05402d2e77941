import pytest

from ratelimit.memcached_client import (
    CacheMissError,
    Item,
    MemcacheClient,
    MemcacheError,
    NotStoredError,
)


class DictClient(MemcacheClient):
    def __init__(self):
        self.store = {}

    def get_multi(self, keys):
        return {k: self.store[k] for k in keys if k in self.store}

    def increment(self, key, delta):
        if key not in self.store:
            raise CacheMissError(key)
        new_value = int(self.store[key].value) + delta
        self.store[key] = Item(key, str(new_value).encode())
        return new_value

    def add(self, item):
        if item.key in self.store:
            raise NotStoredError(item.key)
        self.store[item.key] = item


def test_error_message():
    assert str(MemcacheError("Both are set")) == "Both are set"


def test_specific_errors_are_memcache_errors():
    assert issubclass(CacheMissError, MemcacheError)
    assert issubclass(NotStoredError, MemcacheError)
    assert str(CacheMissError("k")) == "k"
    assert str(NotStoredError("j")) == "j"


def test_specific_errors_caught_as_memcache_error():
    client = DictClient()
    with pytest.raises(MemcacheError, match="missing"):
        client.increment("missing", 1)
    client.add(Item("present", b"1"))
    with pytest.raises(MemcacheError, match="present"):
        client.add(Item("present", b"2"))


def test_item_defaults_and_equality():
    item = Item("key")
    assert (item.value, item.expiration, item.flags) == (b"", 0, 0)
    assert Item("key", b"3", 60) == Item("key", b"3", 60)


def test_client_is_abstract():
    with pytest.raises(TypeError):
        MemcacheClient()


def test_implementation_round_trip():
    client = DictClient()
    client.add(Item("a", b"4"))
    assert client.increment("a", 3) == 7
    assert client.get_multi(["a", "b"]) == {"a": Item("a", b"7")}
    with pytest.raises(CacheMissError):
        client.increment("b", 1)
    with pytest.raises(NotStoredError):
        client.add(Item("a", b"1"))