# ratelimitsvc

Rate limiting by descriptor. A descriptor is an ordered list of key/value
entries, such as `[("source_cluster", "proxy"), ("destination_cluster", "mock")]`.
Limits are declared per domain in YAML files, and each descriptor of a request
is checked against them.

The package contains:

- `ratelimitsvc.model`: the data types (`Unit`, `RateLimit`,
  `RateLimitDescriptor`, `DescriptorEntry`, `RateLimitOverride`, ...), the
  `RateLimitConfigError` exception, and `StatsManager`, which hands out named
  counters.
- `ratelimitsvc.config`: loading and validation of YAML configurations, plus
  descriptor lookup with default values, wildcard values (`value: foo*`),
  per-request limit overrides and detailed metrics. It also has
  `config_xds_to_yaml`, which converts a configuration given as a mapping of
  xDS proto fields.
- `ratelimitsvc.cache_key`: cache keys for fixed time windows.
- `ratelimitsvc.local_cache`: an in-process, size-bounded cache of over-limit
  keys (`LocalCache`) and the gauges that report on it (`LocalCacheStats`).
- `ratelimitsvc.base_limiter`: the shared decision logic. It decides between
  OK and OVER_LIMIT, accounts for near-limit hits, handles shadow mode and
  computes the time until the window resets.
- `ratelimitsvc.config_check`: the `ratelimit-config-check` command.

## Installation

```
pip install .
```

## Configuration format

```yaml
domain: mongo_cps
descriptors:
  - key: database
    value: users
    rate_limit:
      unit: second
      requests_per_unit: 500
  - key: database
    value: default
    rate_limit:
      unit: second
      requests_per_unit: 500
    shadow_mode: true
  - key: category
    value: "acc*"
    rate_limit:
      unlimited: true
```

These keys are accepted: `domain`, `key`, `value`, `descriptors`,
`rate_limit`, `unit`, `requests_per_unit`, `unlimited`, `shadow_mode`, `name`,
`replaces` and `detailed_metric`. Any other key is an error.

The units are `second`, `minute`, `hour` and `day`, and case does not matter.
A limit that is not unlimited must have one of these units. An unlimited limit
must not have one.

An entry in `replaces` must not be empty, and it must not repeat the limit's own
`name`. Within one level, each descriptor's `key` plus `value` must be unique.

## Looking up limits

```python
from ratelimitsvc.config import config_file_content_to_yaml, new_rate_limit_config_impl
from ratelimitsvc.model import (
    DescriptorEntry,
    RateLimitConfigToLoad,
    RateLimitDescriptor,
    StatsManager,
)

with open("config.yaml") as fh:
    root = config_file_content_to_yaml("config.yaml", fh.read())

stats = StatsManager()
config = new_rate_limit_config_impl(
    [RateLimitConfigToLoad(name="config.yaml", config_yaml=root)], stats, False
)

limit = config.get_limit(
    "mongo_cps",
    RateLimitDescriptor(entries=[DescriptorEntry(key="database", value="users")]),
)
print(limit.limit.requests_per_unit, limit.limit.unit)   # 500 Unit.SECOND
print(config.dump())
```

`get_limit` returns `None` when nothing matches.

The counters of each limit are named after its full key, for example
`stats.counter("mongo_cps.database_users.total_hits")`. Each limit also has
`over_limit`, `near_limit`, `within_limit`, `over_limit_with_local_cache` and
`shadow_mode` counters.

If a configuration is invalid, a `RateLimitConfigError` is raised. Its message
begins with the name of the file, for example
`config.yaml: invalid rate limit unit 'foo'`.

By default, two files that declare the same domain are an error. Pass
`merge_domain_configs=True` to merge their descriptors instead. Duplicate
composite keys are still rejected when merging.

## Deciding on a request

`BaseRateLimiter` holds the logic that any counting backend needs. The counting
itself is up to you. In this example, `before` and `after` stand for the
counter's value before and after this request's hits were added.

```python
from ratelimitsvc.base_limiter import BaseRateLimiter, LimitInfo, RateLimitRequest, TimeSource
from ratelimitsvc.local_cache import LocalCache

limiter = BaseRateLimiter(TimeSource(), local_cache=LocalCache(), stats_manager=stats)
request = RateLimitRequest("mongo_cps", [descriptor], hits_addend=1)
keys = limiter.generate_cache_keys(request, [limit], 1)

key = keys[0].key   # e.g. "mongo_cps_database_users_1700000000"
cached = limiter.is_over_limit_with_local_cache(key)
status = limiter.get_response_descriptor_status(
    key, LimitInfo(limit, before, after), cached, 1
)
print(status.code, status.limit_remaining, status.duration_until_reset)
```

When a limit is in shadow mode, the reported code is always OK. Its over-limit
hits are still counted.

## Checking a directory of configs

```
ratelimit-config-check --config_dir /etc/ratelimit/config
ratelimit-config-check --config_dir /etc/ratelimit/config --merge_domain_configs
```

The command loads every file in the directory. When all of them load, it prints
`all rate limit configs ok`. Otherwise it prints the error and exits with
status 1.

## What this package does not do

It runs no rate limit service: it has no gRPC server and no client command. It
also has no storage backend. Nothing here counts hits in Redis, memcached or
another shared store. Configurations are read from files or from mappings you
pass in, and are not fetched from a management server.

## Running the tests

```
pip install .[test]
pytest
```