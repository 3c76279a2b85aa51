"""Cache keys identifying a descriptor's counter within its current time window."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .model import RateLimit, RateLimitDescriptor, Unit, unit_to_divider


@dataclass(frozen=True)
class CacheKey:
    """A cache key; ``per_second`` is true when the limit's unit is SECOND."""

    key: str
    per_second: bool = False


def is_per_second_limit(unit) -> bool:
    return Unit(unit) is Unit.SECOND


def _window_start(now: int, divider: int) -> int:
    # Division truncates toward zero, as the keys were always generated.
    quotient = abs(now) // divider
    return (quotient if now >= 0 else -quotient) * divider


class CacheKeyGenerator:
    """Builds cache keys from a prefix, a domain, descriptor entries and the time."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    def generate_cache_key(
        self,
        domain: str,
        descriptor: RateLimitDescriptor,
        limit: Optional[RateLimit],
        now: int,
    ) -> CacheKey:
        """Return the key for a limit lookup; an empty key when there is no limit."""
        if limit is None:
            return CacheKey(key="", per_second=False)

        parts = [self.prefix, domain, "_"]
        for entry in descriptor.entries:
            parts.extend((entry.key, "_", entry.value, "_"))
        parts.append(str(_window_start(now, unit_to_divider(limit.limit.unit))))
        return CacheKey(key="".join(parts), per_second=is_per_second_limit(limit.limit.unit))