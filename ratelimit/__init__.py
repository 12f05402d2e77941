"""Rate limit counting backends for Redis and memcached, with in-process metrics and config update events."""

__version__ = "0.1.0"