"""
Tests for quota evaluation, grace anchoring and usage alerts.
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest

from tiergate.core.errors import CounterStoreUnavailable
from tiergate.core.timeutil import month_start
from tiergate.features.usage.service import QuotaTracker
from tiergate.features.usage.store import InMemoryCounterStore
from tiergate.models.usage import UsageCounter


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD = month_start(NOW)


def _seed(store, user_id, usage_type, count, limit_reached_at=None):
    store.put(
        UsageCounter(
            user_id=user_id,
            usage_type=usage_type,
            period_start=PERIOD,
            count=count,
            limit_reached_at=limit_reached_at,
        )
    )


class BrokenStore(InMemoryCounterStore):
    def get_counter(self, user_id, usage_type):
        raise CounterStoreUnavailable("counter backend down")


def test_missing_counter_reads_as_zero(tracker):
    snapshot = tracker.get_usage("u1", "monthly_scan", now=NOW)
    assert snapshot.used == 0
    assert snapshot.period_start == PERIOD


def test_evaluate_ok(tracker, counters):
    _seed(counters, "u1", "monthly_scan", 3)
    status = tracker.evaluate("u1", "monthly_scan", 10, now=NOW)
    assert status.used == 3
    assert status.remaining == 7
    assert status.percentage_used == 30.0
    assert status.level == "ok"
    assert not status.exhausted


@pytest.mark.parametrize(
    "used, level",
    [(7, "ok"), (8, "warning"), (9, "critical"), (10, "critical")],
)
def test_evaluate_levels(tracker, counters, used, level):
    _seed(counters, "u1", "monthly_scan", used)
    assert tracker.evaluate("u1", "monthly_scan", 10, now=NOW).level == level


def test_threshold_boundaries_are_inclusive(counters):
    tracker = QuotaTracker(counters, warning_threshold=75, critical_threshold=90)
    _seed(counters, "u1", "report_generation", 75)
    assert tracker.evaluate("u1", "report_generation", 100, now=NOW).level == "warning"
    _seed(counters, "u1", "report_generation", 90)
    assert tracker.evaluate("u1", "report_generation", 100, now=NOW).level == "critical"


def test_over_limit_clamps(tracker, counters):
    _seed(counters, "u1", "monthly_scan", 14)
    status = tracker.evaluate("u1", "monthly_scan", 10, now=NOW)
    assert status.remaining == 0
    assert status.percentage_used == 100.0
    assert status.exhausted


def test_unlimited(tracker, counters):
    _seed(counters, "u1", "monthly_scan", 5000)
    status = tracker.evaluate("u1", "monthly_scan", None, now=NOW)
    assert status.unlimited
    assert status.remaining is None
    assert status.percentage_used == 0.0
    assert status.level == "ok"
    assert not status.exhausted


def test_zero_limit_is_exhausted_at_zero_use(tracker):
    status = tracker.evaluate("u1", "team_invite", 0, now=NOW)
    assert status.percentage_used == 100.0
    assert status.remaining == 0
    assert status.exhausted


def test_per_call_threshold_override(tracker, counters):
    _seed(counters, "u1", "monthly_scan", 5)
    status = tracker.evaluate("u1", "monthly_scan", 10, warning_threshold=50, critical_threshold=60, now=NOW)
    assert status.level == "warning"


@pytest.mark.parametrize("warning, critical", [(90, 75), (-1, 50), (50, 101)])
def test_invalid_thresholds(tracker, warning, critical):
    with pytest.raises(ValueError):
        tracker.evaluate("u1", "monthly_scan", 10, warning_threshold=warning, critical_threshold=critical)


def test_invalid_default_thresholds(counters):
    with pytest.raises(ValueError):
        QuotaTracker(counters, warning_threshold=95, critical_threshold=90)


def test_store_outage_returns_unknown(caplog):
    tracker = QuotaTracker(BrokenStore())
    with caplog.at_level(logging.WARNING, logger="tiergate"):
        status = tracker.evaluate("u1", "monthly_scan", 10, now=NOW)
    assert status.level == "unknown"
    assert status.used == 0
    assert not status.exhausted
    assert any(getattr(r, "event_type", None) == "usage.store_unavailable" for r in caplog.records)


def test_grace_anchor_is_set_once(tracker, counters):
    _seed(counters, "u1", "monthly_scan", 10)
    status = tracker.evaluate("u1", "monthly_scan", 10, now=NOW)
    first = tracker.grace_anchor("u1", "monthly_scan", status, NOW)
    assert first == NOW

    # A second caller that read the counter before the anchor was stored
    later = NOW + timedelta(hours=5)
    second = tracker.grace_anchor("u1", "monthly_scan", status, later)
    assert second == NOW
    assert counters.get_counter("u1", "monthly_scan").limit_reached_at == NOW


def test_grace_anchor_uses_recorded_value(tracker, counters):
    anchored = NOW - timedelta(days=2)
    _seed(counters, "u1", "monthly_scan", 12, limit_reached_at=anchored)
    status = tracker.evaluate("u1", "monthly_scan", 10, now=NOW)
    assert status.limit_reached_at == anchored
    assert tracker.grace_anchor("u1", "monthly_scan", status, NOW) == anchored


def test_usage_alerts(tracker, counters, catalog):
    _seed(counters, "u1", "monthly_scan", 10)
    _seed(counters, "u1", "report_generation", 8)
    _seed(counters, "u1", "data_export", 1)
    alerts = {alert.usage_type: alert for alert in tracker.usage_alerts("u1", "free", catalog, now=NOW)}

    assert alerts["monthly_scan"].level == "exceeded"
    assert alerts["monthly_scan"].upgrade_required
    assert alerts["report_generation"].level == "warning"
    assert not alerts["report_generation"].upgrade_required
    assert "data_export" not in alerts
    # Zero-limit usage types are always exhausted on the free plan
    assert alerts["team_invite"].level == "exceeded"


def test_usage_alerts_skip_unlimited(tracker, counters, catalog):
    _seed(counters, "u1", "monthly_scan", 10_000)
    assert tracker.usage_alerts("u1", "enterprise", catalog, now=NOW) == []


def test_increment_and_reset_period(counters):
    counters.increment("u1", "monthly_scan", now=NOW)
    counter = counters.increment("u1", "monthly_scan", amount=2, now=NOW)
    assert counter.count == 3
    assert counter.period_start == PERIOD

    next_period = datetime(2025, 4, 1, tzinfo=timezone.utc)
    counters.reset_period("u1", next_period)
    counter = counters.get_counter("u1", "monthly_scan")
    assert counter.count == 0
    assert counter.period_start == next_period
    assert counter.limit_reached_at is None
