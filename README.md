# ratelimit

Counting backends for a rate limit service. A backend receives a rate
limit request with a list of descriptors, and the limit that applies to
each descriptor. It counts the hits in Redis or memcached and returns
one status per descriptor.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install ".[test]"
```

## Modules

### `ratelimit.metrics`

These are in-process statistics.

- `Scope(name="")` is a named namespace.
  - `scope(name)` returns a child scope whose names are prefixed with
    `"<parent>.<name>"`. The child shares the parent's registry.
  - `counter(name, tags=None)`, `gauge(name)` and `timer(name)` return
    the same object each time they are asked for the same name and tags.
- `Counter` has `inc()`, `add(amount)` and a `value` attribute. A
  negative amount raises `ValueError`.
- `Gauge` has `add(amount)`, `sub(amount)` and a `value` attribute.
- `Timer` has `add_value(value)`. Its `values` attribute holds every
  recorded value.
- `split_method_name("/pkg.Service/Method")` returns
  `("pkg.Service", "Method")`. It returns `("unknown", "unknown")` when
  no `/` follows the optional leading slash.
- `ServerReporter(scope).unary_server_interceptor()` returns a function
  `interceptor(request, full_method, handler)`. For each call, the
  function:
  - increments `<method>.total_requests`;
  - calls `handler(request)`;
  - records the elapsed whole milliseconds in the timer
    `<method>.response_time`, even when the handler raises.

### `ratelimit.provider`

- `ConfigUpdateEvent(config=None, error=None)` is a frozen dataclass.
  `get_config()` returns the tuple `(config, error)`.
- `RateLimitConfigProvider` is an abstract base class.
  - `config_update_events()` returns the `queue.Queue` that events are
    published to.
  - Subclasses publish events with `_publish(event)` and implement
    `stop()`.

### `ratelimit.memcached_client`

- `MemcacheClient` is the abstract interface the memcached backend
  needs: `get_multi(keys)`, `increment(key, delta)` and `add(item)`.
- `Item(key, value=b"", expiration=0, flags=0)` is the item that
  `add(item)` stores.
- The errors are `MemcacheError` and its subclasses `CacheMissError`
  and `NotStoredError`.

### `ratelimit.memcached_stats`

`collect_stats(client, scope)` wraps a `MemcacheClient` in a
`StatsCollectingClient`. Every operation is passed on to the wrapped
client, and any exception it raises is raised again. The wrapper keeps
these counters in `scope`:

- `multiget`, tagged with `code` = `success` or `error`;
- `increment`, tagged with `code` = `success`, `miss` or `error`;
- `add`, tagged with `code` = `success`, `not_stored` or `error`;
- `keys_requested` and `keys_found`.

### `ratelimit.memcached_cache`

`MemcacheRateLimitCache(client, base_limiter, jitter_rand=None,
expiration_jitter_max_seconds=0, auto_flush=False)` is the memcached
backend.

- `do_limit(request, limits)`:
  - reads every counter that is not already over its limit in the local
    cache, in one `get_multi` call;
  - builds the statuses from those counts;
  - schedules the increments in the background.
- The background increment first tries `increment`. On a cache miss it
  calls `add`, with an expiration of the limit unit's length in seconds
  plus optional random jitter. If the `add` is not stored, it calls
  `increment` once more.
- `flush()` waits until all background increments have finished. With
  `auto_flush=True`, every `do_limit` call waits for them.

Server discovery:

- `ServerList` holds the server addresses, either `host:port` or a
  socket path. `set_servers(*args)` rejects invalid addresses with
  `MemcacheError` and then leaves the list unchanged.
- `SrvResolver` is an abstract DNS SRV resolver.
- `refresh_servers(server_list, srv, resolver)` replaces the list with
  the servers that `srv` resolves to.
- `refresh_servers_periodically(..., interval, resolver, finish)`
  refreshes every `interval` seconds until the `threading.Event`
  `finish` is set.

`run_async(task)` runs a callable on an idle background worker thread.
It starts a new worker when none is idle.

### `ratelimit.redis_driver`

`new_client(scope, use_tls, auth, socket_type, redis_type, url,
pool_size, pipeline_window, pipeline_limit, tls_context,
health_check_active_connection, server)` connects to Redis, sends
`PING` and returns a `RedisClient`.

- `redis_type` is one of the following, in any case:
  - `single`: `url` is `host:port`, or a socket path when `socket_type`
    is `"unix"`;
  - `cluster`: `url` is a comma-separated list of nodes;
  - `sentinel`: `url` is `<master name>,<sentinel1>,...`.
- `auth` is either `password` or `user:password`.
- `tls_context` holds the `ssl_*` keyword options of the redis library.
- Cluster mode requires a non-zero `pipeline_window` or
  `pipeline_limit`.
- Setup and command failures raise `RedisError`.

`RedisClient`:

- `do_cmd(cmd, key, *args)` runs one command.
- `pipe_append(pipeline, cmd, key, *args)` returns a new pipeline with
  the command added.
- `pipe_do(pipeline)` runs the pipeline and returns the results in
  order. When implicit pipelining is enabled, it sends the commands one
  by one; otherwise it sends them as a single non-transactional batch.
- `close()`, `num_active_conns()` and `implicit_pipelining_enabled()`
  are also available.

`PoolStats` counts connections in the gauge `cx_active` and the counters
`cx_total` and `cx_local_close`. When asked to, it reports the `redis`
component as healthy or failed to `server.health_checker()` as
connections open and close.

### `ratelimit.redis_cache`

`FixedRateLimitCache(client, per_second_client, base_limiter,
jitter_rand=None, expiration_jitter_max_seconds=0,
stop_cache_key_increment_when_overlimit=False)` is the fixed-window
Redis backend.

- For each key, it sends `INCRBY` followed by `EXPIRE`. Keys that are
  over their limit in the local cache are skipped.
- Per-second keys go to `per_second_client` when one is given.
- With `stop_cache_key_increment_when_overlimit`, it stops incrementing
  keys once a limit is exceeded. When any key is over its limit in the
  local cache, or (with several keys) a `GET` shows a key about to
  reach its limit, the other keys are incremented by zero.
- `flush()` waits for the `do_limit` calls in progress.

## Example

```python
from ratelimit.memcached_client import Item, MemcacheClient
from ratelimit.memcached_stats import collect_stats
from ratelimit.metrics import Scope, split_method_name

split_method_name("/envoy.service.ratelimit.v3.RateLimitService/ShouldRateLimit")
# ('envoy.service.ratelimit.v3.RateLimitService', 'ShouldRateLimit')


class InMemory(MemcacheClient):
    def __init__(self):
        self.items = {}

    def get_multi(self, keys):
        return {k: self.items[k] for k in keys if k in self.items}

    def increment(self, key, delta):
        raise NotImplementedError

    def add(self, item):
        self.items[item.key] = item


root = Scope()
client = collect_stats(InMemory(), root.scope("memcache"))
client.add(Item("a", b"1"))
client.get_multi(["a", "b"])
root.counter("memcache.keys_requested").value  # 2
root.counter("memcache.keys_found").value      # 1
```

## What this package does not do

- It does not run a rate limit server. It has no gRPC or HTTP endpoint,
  no command-line program and no health-check endpoint.
- It does not load or parse rate limit configuration files.
  `RateLimitConfigProvider` is only a base class for providers.
- It does not generate cache keys or build descriptor statuses. Both
  caches take a `base_limiter` object that supplies:
  - `generate_cache_keys`;
  - `is_over_limit_with_local_cache`;
  - `rate_limit_info`;
  - `get_response_descriptor_status`;
  - for Redis, also `is_over_limit_threshold_reached`.
- It includes no memcached network client and no DNS SRV resolver.
  `MemcacheClient` and `SrvResolver` are interfaces for you to
  implement.