"""Core data types for rate limit configuration and lookups."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .config import YamlRoot


class RateLimitConfigError(Exception):
    """Raised when a rate limit configuration cannot be loaded."""


class Unit(enum.IntEnum):
    """Unit of time a rate limit applies to."""

    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4


_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 3600,
    Unit.DAY: 86400,
}


def unit_to_divider(unit) -> int:
    """Return the length of one unit in seconds."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unknown rate limit unit: {unit!r}") from None


@dataclass
class Counter:
    """A monotonically increasing named counter."""

    name: str
    value: int = 0

    def add(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("counter cannot be decreased")
        self.value += amount

    def inc(self) -> None:
        self.add(1)


@dataclass
class RateLimitStats:
    """The counters kept for one configured rate limit."""

    key: str
    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


class StatsManager:
    """Creates counters, handing back the same counter for the same name."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}

    def counter(self, name: str) -> Counter:
        return self._counters.setdefault(name, Counter(name))

    def new_stats(self, key: str) -> RateLimitStats:
        return RateLimitStats(
            key=key,
            total_hits=self.counter(f"{key}.total_hits"),
            over_limit=self.counter(f"{key}.over_limit"),
            near_limit=self.counter(f"{key}.near_limit"),
            over_limit_with_local_cache=self.counter(f"{key}.over_limit_with_local_cache"),
            within_limit=self.counter(f"{key}.within_limit"),
            shadow_mode=self.counter(f"{key}.shadow_mode"),
        )


@dataclass
class RateLimitPolicy:
    """The number of requests allowed per unit of time."""

    requests_per_unit: int
    unit: Unit


@dataclass
class RateLimit:
    """A configured rate limit together with its stats."""

    full_key: str
    stats: RateLimitStats
    limit: RateLimitPolicy
    unlimited: bool = False
    shadow_mode: bool = False
    name: str = ""
    replaces: list[str] = field(default_factory=list)
    include_value_in_metric_when_not_specified: bool = False


def new_rate_limit(
    requests_per_unit: int,
    unit,
    stats: RateLimitStats,
    unlimited: bool,
    shadow_mode: bool,
    name: str,
    replaces: Optional[Iterable[str]],
    include_value_in_metric_when_not_specified: bool,
) -> RateLimit:
    """Build a rate limit entry keyed by its stats key."""
    return RateLimit(
        full_key=stats.key,
        stats=stats,
        limit=RateLimitPolicy(requests_per_unit=requests_per_unit, unit=Unit(unit)),
        unlimited=unlimited,
        shadow_mode=shadow_mode,
        name=name,
        replaces=list(replaces or ()),
        include_value_in_metric_when_not_specified=include_value_in_metric_when_not_specified,
    )


@dataclass(frozen=True)
class DescriptorEntry:
    """One key/value pair of a request descriptor."""

    key: str
    value: str = ""


@dataclass(frozen=True)
class RateLimitOverride:
    """A limit supplied with the request instead of the configured one."""

    requests_per_unit: int
    unit: Unit


@dataclass
class RateLimitDescriptor:
    """A request descriptor: an ordered list of entries and an optional override."""

    entries: list[DescriptorEntry] = field(default_factory=list)
    limit: Optional[RateLimitOverride] = None


@dataclass
class RateLimitConfigToLoad:
    """A named configuration document to load into the aggregate config."""

    name: str
    config_yaml: YamlRoot