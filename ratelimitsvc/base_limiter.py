"""Shared rate limiting logic: cache keys, limit thresholds and descriptor statuses."""

from __future__ import annotations

import datetime
import enum
import logging
import math
import random
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .cache_key import CacheKey, CacheKeyGenerator
from .local_cache import LocalCache
from .model import (
    RateLimit,
    RateLimitDescriptor,
    RateLimitPolicy,
    StatsManager,
    unit_to_divider,
)

logger = logging.getLogger(__name__)


class Code(enum.IntEnum):
    """Overall result for a descriptor."""

    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2


@dataclass
class DescriptorStatus:
    """The outcome of checking one descriptor against its limit."""

    code: Code
    current_limit: Optional[RateLimitPolicy] = None
    limit_remaining: int = 0
    duration_until_reset: Optional[datetime.timedelta] = None


@dataclass
class RateLimitRequest:
    """A request to check a list of descriptors within a domain."""

    domain: str
    descriptors: list[RateLimitDescriptor] = field(default_factory=list)
    hits_addend: int = 1


class TimeSource:
    """Supplies the current Unix time in whole seconds."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def unix_now(self) -> int:
        return int(self._clock())


def calculate_reset(unit, time_source: TimeSource) -> datetime.timedelta:
    """Return the time left until the current window of ``unit`` ends."""
    divider = unit_to_divider(unit)
    now = time_source.unix_now()
    return datetime.timedelta(seconds=divider - now % divider)


@dataclass
class LimitInfo:
    """Counter values and thresholds for one limit during a check."""

    limit: RateLimit
    limit_before_increase: int
    limit_after_increase: int
    near_limit_threshold: int = 0
    over_limit_threshold: int = 0


def _float32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


class BaseRateLimiter:
    """Logic common to every cache backend that counts hits per time window."""

    def __init__(
        self,
        time_source: TimeSource,
        jitter_rand: Optional[random.Random] = None,
        expiration_jitter_max_seconds: int = 0,
        local_cache: Optional[LocalCache] = None,
        near_limit_ratio: float = 0.8,
        cache_key_prefix: str = "",
        stats_manager: Optional[StatsManager] = None,
    ) -> None:
        self.time_source = time_source
        self.jitter_rand = jitter_rand if jitter_rand is not None else random.Random()
        self.expiration_jitter_max_seconds = expiration_jitter_max_seconds
        self.cache_key_generator = CacheKeyGenerator(cache_key_prefix)
        self.local_cache = local_cache
        self.near_limit_ratio = near_limit_ratio
        self.stats_manager = stats_manager if stats_manager is not None else StatsManager()

    def generate_cache_keys(
        self,
        request: RateLimitRequest,
        limits: Sequence[Optional[RateLimit]],
        hits_addend: int,
    ) -> list[CacheKey]:
        """Return one cache key per descriptor (empty where there is no limit)."""
        if len(request.descriptors) != len(limits):
            raise ValueError("the number of limits must match the number of descriptors")
        now = self.time_source.unix_now()
        keys = []
        for descriptor, limit in zip(request.descriptors, limits):
            keys.append(
                self.cache_key_generator.generate_cache_key(
                    request.domain, descriptor, limit, now
                )
            )
            if limit is not None:
                limit.stats.total_hits.add(hits_addend)
        return keys

    def is_over_limit_with_local_cache(self, key: str) -> bool:
        """True when the local cache is enabled and holds ``key``."""
        if self.local_cache is None:
            return False
        try:
            self.local_cache.get(key)
        except KeyError:
            return False
        return True

    def is_over_limit_threshold_reached(self, limit_info: LimitInfo) -> bool:
        limit_info.over_limit_threshold = limit_info.limit.limit.requests_per_unit
        return limit_info.limit_after_increase > limit_info.over_limit_threshold

    def get_response_descriptor_status(
        self,
        key: str,
        limit_info: Optional[LimitInfo],
        is_over_limit_with_local_cache: bool,
        hits_addend: int,
    ) -> DescriptorStatus:
        """Decide the status for one descriptor and update its stats."""
        if not key:
            return self._status(Code.OK, None, 0)

        limit = limit_info.limit
        stats = limit.stats
        is_over_limit = False
        if is_over_limit_with_local_cache:
            is_over_limit = True
            stats.over_limit.add(hits_addend)
            stats.over_limit_with_local_cache.add(hits_addend)
            status = self._status(Code.OVER_LIMIT, limit.limit, 0)
        else:
            limit_info.over_limit_threshold = limit.limit.requests_per_unit
            limit_info.near_limit_threshold = int(
                math.floor(
                    _float32(
                        _float32(limit_info.over_limit_threshold)
                        * _float32(self.near_limit_ratio)
                    )
                )
            )
            logger.debug("cache key: %s current: %d", key, limit_info.limit_after_increase)
            if limit_info.limit_after_increase > limit_info.over_limit_threshold:
                is_over_limit = True
                status = self._status(Code.OVER_LIMIT, limit.limit, 0)
                self._check_over_limit_threshold(limit_info, hits_addend)
                if self.local_cache is not None:
                    # The key changes with every window, so a TTL of one whole unit suffices.
                    try:
                        self.local_cache.set(key, b"", unit_to_divider(limit.limit.unit))
                    except ValueError:
                        logger.error("Failing to set local cache key: %s", key)
            else:
                status = self._status(
                    Code.OK,
                    limit.limit,
                    limit_info.over_limit_threshold - limit_info.limit_after_increase,
                )
                self._check_near_limit_threshold(limit_info, hits_addend)
                stats.within_limit.add(hits_addend)

        if is_over_limit and limit.shadow_mode:
            logger.debug("Limit with key %s, is in shadow_mode", limit.full_key)
            status.code = Code.OK
            self._increase_shadow_mode_stats(
                is_over_limit_with_local_cache, limit_info, hits_addend
            )
        return status

    @staticmethod
    def _check_over_limit_threshold(limit_info: LimitInfo, hits_addend: int) -> None:
        stats = limit_info.limit.stats
        if limit_info.limit_before_increase >= limit_info.over_limit_threshold:
            stats.over_limit.add(hits_addend)
        else:
            stats.over_limit.add(
                limit_info.limit_after_increase - limit_info.over_limit_threshold
            )
            stats.near_limit.add(
                limit_info.over_limit_threshold
                - max(limit_info.near_limit_threshold, limit_info.limit_before_increase)
            )

    @staticmethod
    def _check_near_limit_threshold(limit_info: LimitInfo, hits_addend: int) -> None:
        if limit_info.limit_after_increase <= limit_info.near_limit_threshold:
            return
        stats = limit_info.limit.stats
        if limit_info.limit_before_increase >= limit_info.near_limit_threshold:
            stats.near_limit.add(hits_addend)
        else:
            stats.near_limit.add(
                limit_info.limit_after_increase - limit_info.near_limit_threshold
            )

    @staticmethod
    def _increase_shadow_mode_stats(
        is_over_limit_with_local_cache: bool, limit_info: LimitInfo, hits_addend: int
    ) -> None:
        stats = limit_info.limit.stats
        if (
            is_over_limit_with_local_cache
            or limit_info.limit_before_increase >= limit_info.over_limit_threshold
        ):
            stats.shadow_mode.add(hits_addend)
        else:
            stats.shadow_mode.add(
                limit_info.limit_after_increase - limit_info.over_limit_threshold
            )

    def _status(
        self, code: Code, limit: Optional[RateLimitPolicy], remaining: int
    ) -> DescriptorStatus:
        if limit is None:
            return DescriptorStatus(code=code, current_limit=None, limit_remaining=remaining)
        return DescriptorStatus(
            code=code,
            current_limit=limit,
            limit_remaining=remaining,
            duration_until_reset=calculate_reset(limit.unit, self.time_source),
        )