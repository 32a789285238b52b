"""
Tests for the access decision engine: every branch, fail-open on faults,
decision logs and metrics.
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest

from tiergate.core.errors import CounterStoreUnavailable
from tiergate.core.metrics import access_check_seconds, access_decisions_total, access_fallback_total
from tiergate.core.timeutil import month_start
import tiergate.features.access.service as access_service
from tiergate.features.access.service import AccessDecisionEngine
from tiergate.features.usage.service import QuotaTracker
from tiergate.features.usage.store import InMemoryCounterStore
from tiergate.models.access import FeatureRequirement
from tiergate.models.tier import Tier
from tiergate.models.usage import UsageCounter, UsageStatus


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)

SCANS = FeatureRequirement(required_tier="free", usage_type="monthly_scan", check_usage_limit=True)


def _seed(store, user_id, count, usage_type="monthly_scan", limit_reached_at=None):
    store.put(
        UsageCounter(
            user_id=user_id,
            usage_type=usage_type,
            period_start=month_start(NOW),
            count=count,
            limit_reached_at=limit_reached_at,
        )
    )


def _boom(*args, **kwargs):
    raise RuntimeError("injected fault")


# Tier gating

@pytest.mark.parametrize("user_id, tier", [(None, "free"), ("", "free"), ("u1", None)])
def test_unauthenticated_is_denied(engine, user_id, tier):
    decision = engine.check_access(user_id, tier, SCANS, now=NOW)
    assert not decision.allowed
    assert decision.reason == "tier"
    assert decision.details == {"requiredAuth": True}


def test_unknown_user_tier_is_unauthenticated(engine):
    decision = engine.check_access("u1", "platinum", SCANS, now=NOW)
    assert decision.reason == "tier"
    assert decision.details == {"requiredAuth": True}


def test_insufficient_tier_is_denied(engine):
    requirement = FeatureRequirement(required_tier="team")
    decision = engine.check_access("u1", "user", requirement, now=NOW)
    assert not decision.allowed
    assert decision.reason == "tier"
    assert decision.details == {"currentTier": "user", "requiredTier": "team"}


def test_sufficient_tier_without_usage_check(engine):
    decision = engine.check_access("u1", Tier.ENTERPRISE, FeatureRequirement(required_tier="team"), now=NOW)
    assert decision.allowed
    assert decision.reason is None
    assert decision.details is None


# Usage limits

def test_under_limit_allows_with_status(engine, counters):
    _seed(counters, "u1", 4)
    decision = engine.check_access("u1", "free", SCANS, now=NOW)
    assert decision.allowed
    assert decision.reason is None
    assert isinstance(decision.details, UsageStatus)
    assert decision.details.remaining == 6


def test_critical_but_not_exhausted_is_allowed(engine, counters):
    _seed(counters, "u1", 9)
    decision = engine.check_access("u1", "free", SCANS, now=NOW)
    assert decision.allowed
    assert decision.usage.level == "critical"


def test_exhausted_is_denied(engine, counters):
    _seed(counters, "u1", 10)
    decision = engine.check_access("u1", "free", SCANS, now=NOW)
    assert not decision.allowed
    assert decision.reason == "usage_limit"
    assert decision.usage.exhausted
    assert decision.usage.remaining == 0


def test_soft_limit_allows_when_exhausted(engine, counters):
    _seed(counters, "u1", 12)
    requirement = SCANS.model_copy(update={"soft_limit": True})
    decision = engine.check_access("u1", "free", requirement, now=NOW)
    assert decision.allowed
    assert decision.reason == "usage_limit"


def test_grace_period_anchors_on_first_exhaustion(engine, counters):
    _seed(counters, "u1", 10)
    requirement = SCANS.model_copy(update={"grace_period_days": 3})

    decision = engine.check_access("u1", "free", requirement, now=NOW)
    assert decision.allowed
    assert decision.reason == "grace_period"
    assert decision.usage.limit_reached_at == NOW

    inside = engine.check_access("u1", "free", requirement, now=NOW + timedelta(days=2, hours=23))
    assert inside.reason == "grace_period"

    after = engine.check_access("u1", "free", requirement, now=NOW + timedelta(days=3))
    assert not after.allowed
    assert after.reason == "usage_limit"


def test_expired_grace_falls_through_to_soft_limit(engine, counters):
    _seed(counters, "u1", 10, limit_reached_at=NOW - timedelta(days=5))
    requirement = SCANS.model_copy(update={"grace_period_days": 3, "soft_limit": True})
    decision = engine.check_access("u1", "free", requirement, now=NOW)
    assert decision.allowed
    assert decision.reason == "usage_limit"


def test_zero_grace_period_denies(engine, counters):
    _seed(counters, "u1", 10)
    requirement = SCANS.model_copy(update={"grace_period_days": 0})
    decision = engine.check_access("u1", "free", requirement, now=NOW)
    assert not decision.allowed


def test_counter_outage_falls_back_with_usage():
    class DownStore(InMemoryCounterStore):
        def get_counter(self, user_id, usage_type):
            raise CounterStoreUnavailable("down")

    from tiergate.features.catalog.service import default_catalog

    engine = AccessDecisionEngine(default_catalog(), QuotaTracker(DownStore()))
    decision = engine.check_access("u1", "free", SCANS, now=NOW)
    assert decision.allowed
    assert decision.reason == "fallback"
    assert decision.details["fallbackAccess"] is True
    assert decision.details["usage"].level == "unknown"
    assert access_fallback_total.value({"stage": "usage_store"}) == 1


@pytest.mark.parametrize("tier", ["enterprise", "admin"])
def test_counter_outage_keeps_unlimited_tiers_clean(tier):
    class DownStore(InMemoryCounterStore):
        def get_counter(self, user_id, usage_type):
            raise CounterStoreUnavailable("down")

    from tiergate.features.catalog.service import default_catalog

    engine = AccessDecisionEngine(default_catalog(), QuotaTracker(DownStore()))
    decision = engine.check_access("ent", tier, SCANS, now=NOW)
    assert decision.allowed
    assert decision.reason is None
    assert access_fallback_total.total() == 0


def test_requirement_needs_usage_type_for_limits():
    with pytest.raises(ValueError):
        FeatureRequirement(required_tier="free", check_usage_limit=True)


def test_negative_grace_period_rejected():
    with pytest.raises(ValueError):
        FeatureRequirement(required_tier="free", grace_period_days=-1)


# Fail-open

@pytest.mark.parametrize(
    "target, attr",
    [
        ("catalog", "resolve"),
        ("catalog", "compare_tiers"),
        ("catalog", "limit_for"),
        ("tracker", "evaluate"),
        ("tracker", "grace_anchor"),
    ],
)
def test_fault_at_any_step_fails_open(engine, counters, monkeypatch, caplog, target, attr):
    _seed(counters, "u1", 10)
    requirement = SCANS.model_copy(update={"grace_period_days": 3})
    monkeypatch.setattr(getattr(engine, target), attr, _boom)

    with caplog.at_level(logging.ERROR, logger="tiergate"):
        decision = engine.check_access("u1", "free", requirement, now=NOW)

    assert decision.allowed
    assert decision.reason == "fallback"
    assert decision.details == {"fallbackAccess": True}
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert errors and errors[0].exc_info is not None
    assert access_fallback_total.total() == 1


def test_fault_in_usage_status_fails_open(engine, counters, monkeypatch):
    # Tracker returns something that breaks the exhausted/unlimited checks
    _seed(counters, "u1", 10)
    monkeypatch.setattr(engine.tracker, "evaluate", lambda *a, **k: object())
    decision = engine.check_access("u1", "free", SCANS, now=NOW)
    assert decision.reason == "fallback"


class _BrokenCounter:
    def inc(self, *args, **kwargs):
        raise RuntimeError("metrics down")

    def observe(self, *args, **kwargs):
        raise RuntimeError("metrics down")


def test_broken_decision_metrics_do_not_escape(engine, counters, monkeypatch, caplog):
    _seed(counters, "u1", 10)
    monkeypatch.setattr(access_service, "access_decisions_total", _BrokenCounter())
    with caplog.at_level(logging.ERROR, logger="tiergate"):
        allowed = engine.check_access("u1", "free", FeatureRequirement(required_tier="free"), now=NOW)
        denied = engine.check_access("u1", "free", SCANS, now=NOW)
    assert allowed.allowed and allowed.reason is None
    assert (denied.allowed, denied.reason) == (False, "usage_limit")
    assert any(getattr(r, "event_type", None) == "access.metrics_error" for r in caplog.records)


def test_broken_metrics_during_fallback_still_fail_open(engine, monkeypatch):
    monkeypatch.setattr(engine.catalog, "compare_tiers", _boom)
    monkeypatch.setattr(access_service, "access_decisions_total", _BrokenCounter())
    monkeypatch.setattr(access_service, "access_fallback_total", _BrokenCounter())
    decision = engine.check_access("u1", "free", SCANS, now=NOW)
    assert (decision.allowed, decision.reason) == (True, "fallback")


def test_broken_latency_histogram_does_not_escape(engine, monkeypatch):
    monkeypatch.setattr(access_service, "access_check_seconds", _BrokenCounter())
    assert engine.check_access("u1", "free", FeatureRequirement(required_tier="free"), now=NOW).allowed


# Feature flags

def test_check_feature(engine):
    assert engine.check_feature("u1", "user", "api_access", now=NOW).allowed
    denied = engine.check_feature("u1", "free", "sso", now=NOW)
    assert not denied.allowed
    assert denied.details == {"currentTier": "free", "requiredTier": "team"}


def test_check_feature_unknown_flag(engine):
    decision = engine.check_feature("u1", "admin", "teleport", now=NOW)
    assert not decision.allowed
    assert decision.details["requiredTier"] is None


# Observability

def test_decisions_are_counted_and_logged(engine, counters, caplog):
    _seed(counters, "u1", 10)
    with caplog.at_level(logging.INFO, logger="tiergate"):
        engine.check_access("u1", "free", SCANS, now=NOW)
        engine.check_access("u1", "free", FeatureRequirement(required_tier="free"), now=NOW)
    assert access_decisions_total.value({"allowed": "false", "reason": "usage_limit"}) == 1
    assert access_decisions_total.value({"allowed": "true", "reason": "none"}) == 1
    events = [r for r in caplog.records if getattr(r, "event_type", None) == "access.decision"]
    assert len(events) == 2
    assert events[0].reason == "usage_limit"


def test_decision_payload_is_camel_case(engine, counters):
    _seed(counters, "u1", 10)
    payload = engine.check_access("u1", "free", SCANS, now=NOW).to_payload()
    assert payload["allowed"] is False
    assert payload["reason"] == "usage_limit"
    assert payload["details"]["percentageUsed"] == 100.0
    assert payload["details"]["remaining"] == 0


# End-to-end scenarios

def test_scenario_free_user_at_limit_is_denied(engine, counters):
    _seed(counters, "free-user", 10)
    decision = engine.check_access("free-user", "free", SCANS, now=NOW)
    assert (decision.allowed, decision.reason) == (False, "usage_limit")


def test_scenario_free_user_inside_grace_window(engine, counters):
    _seed(counters, "free-user", 10, limit_reached_at=NOW - timedelta(days=1))
    requirement = SCANS.model_copy(update={"grace_period_days": 3})
    decision = engine.check_access("free-user", "free", requirement, now=NOW)
    assert (decision.allowed, decision.reason) == (True, "grace_period")


@pytest.mark.parametrize("used", [0, 10, 1_000_000])
def test_scenario_enterprise_is_unlimited(engine, counters, used):
    _seed(counters, "ent-user", used)
    decision = engine.check_access("ent-user", "enterprise", SCANS, now=NOW)
    assert decision.allowed
    assert decision.reason is None


def test_scenario_unauthenticated(engine):
    payload = engine.check_access(None, None, SCANS, now=NOW).to_payload()
    assert payload == {"allowed": False, "reason": "tier", "details": {"requiredAuth": True}}


def test_check_latency_is_observed(engine):
    engine.check_access("u1", Tier.FREE, FeatureRequirement(required_tier="free"), now=NOW)
    engine.check_access(None, None, FeatureRequirement(required_tier="free"), now=NOW)
    assert access_check_seconds.count == 2
