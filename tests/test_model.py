import pytest

from ratelimitsvc.model import (
    Counter,
    DescriptorEntry,
    RateLimitConfigError,
    RateLimitDescriptor,
    StatsManager,
    Unit,
    new_rate_limit,
    unit_to_divider,
)


@pytest.mark.parametrize(
    "unit, divider",
    [(Unit.SECOND, 1), (Unit.MINUTE, 60), (Unit.HOUR, 3600), (Unit.DAY, 86400)],
)
def test_unit_to_divider(unit, divider):
    assert unit_to_divider(unit) == divider


def test_unit_to_divider_unknown_raises():
    with pytest.raises(ValueError):
        unit_to_divider(Unit.UNKNOWN)


def test_counter_inc_and_add():
    counter = Counter("c")
    counter.inc()
    assert counter.value == 1
    counter.add(0)
    assert counter.value == 1


def test_counter_rejects_negative():
    counter = Counter("c")
    with pytest.raises(ValueError):
        counter.add(-1)


def test_stats_manager_reuses_counters():
    manager = StatsManager()
    assert manager.counter("a.b") is manager.counter("a.b")
    assert manager.counter("a.b") is not manager.counter("a.c")


def test_new_stats_names():
    manager = StatsManager()
    stats = manager.new_stats("test-domain.key2")
    assert stats.key == "test-domain.key2"
    assert stats.total_hits.name == "test-domain.key2.total_hits"
    assert stats.over_limit.name == "test-domain.key2.over_limit"
    assert stats.near_limit.name == "test-domain.key2.near_limit"
    assert stats.within_limit.name == "test-domain.key2.within_limit"
    assert stats.shadow_mode.name == "test-domain.key2.shadow_mode"


def test_new_stats_share_counters():
    manager = StatsManager()
    first = manager.new_stats("k")
    second = manager.new_stats("k")
    first.total_hits.inc()
    assert second.total_hits.value == 1
    assert manager.counter("k.total_hits").value == 1


def test_new_rate_limit_fields():
    manager = StatsManager()
    stats = manager.new_stats("key_value")
    replaces = ["a"]
    rl = new_rate_limit(10, Unit.SECOND, stats, False, True, "n", replaces, False)
    assert rl.full_key == "key_value"
    assert rl.limit.requests_per_unit == 10
    assert rl.limit.unit is Unit.SECOND
    assert rl.shadow_mode is True
    assert rl.name == "n"
    assert rl.replaces == ["a"]
    replaces.append("b")
    assert rl.replaces == ["a"]


def test_new_rate_limit_accepts_no_replaces():
    rl = new_rate_limit(1, 2, StatsManager().new_stats("x"), False, False, "", None, False)
    assert rl.replaces == []
    assert rl.limit.unit is Unit.MINUTE


def test_config_error_message():
    err = RateLimitConfigError("file.yaml: bad")
    assert str(err) == "file.yaml: bad"


def test_descriptor_defaults():
    descriptor = RateLimitDescriptor()
    assert descriptor.entries == []
    assert descriptor.limit is None
    assert DescriptorEntry("k").value == ""