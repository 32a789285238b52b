"""
SQL-backed stores against a temporary database (SQLite unless
TEST_DATABASE_URL is set).
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

import tiergate.features.usage.store as usage_store_module
from tiergate.core.errors import CounterStoreUnavailable, InteractionStoreUnavailable
from tiergate.core.metrics import usage_store_errors_total
from tiergate.core.timeutil import month_start
from tiergate.features.access.service import AccessDecisionEngine
from tiergate.features.catalog.service import default_catalog
from tiergate.features.identity.service import SqlTierDirectory
from tiergate.features.prompts.catalog import default_variant_catalog
from tiergate.features.prompts.service import PromptOrchestrator
from tiergate.features.prompts.store import SqlInteractionStore
from tiergate.features.usage.service import QuotaTracker
from tiergate.features.usage.store import SqlCounterStore
from tiergate.models.access import FeatureRequirement
from tiergate.models.prompt import PromptInteraction, PromptOptOut
from tiergate.models.tier import Tier


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD = month_start(NOW)


@pytest.fixture
def sql_counters(sqlite_url):
    return SqlCounterStore()


@pytest.fixture
def sql_interactions(sqlite_url):
    return SqlInteractionStore()


def _interaction(interaction_id, shown_at=NOW, user_id="u1", trigger="usage_limit"):
    return PromptInteraction(
        id=interaction_id,
        user_id=user_id,
        trigger_type=trigger,
        variant_id="usage_limit_friendly",
        user_tier=Tier.FREE,
        shown_at=shown_at,
    )


# Counters

def test_counter_increment_and_read(sql_counters):
    assert sql_counters.get_counter("u1", "monthly_scan") is None
    sql_counters.increment("u1", "monthly_scan", now=NOW)
    counter = sql_counters.increment("u1", "monthly_scan", amount=4, now=NOW)
    assert counter.count == 5
    assert counter.period_start == PERIOD
    assert sql_counters.get_counter("u1", "monthly_scan").count == 5


def test_counter_reset_period_opens_new_period(sql_counters):
    sql_counters.increment("u1", "monthly_scan", amount=7, now=NOW)
    next_period = datetime(2025, 4, 1, tzinfo=timezone.utc)
    sql_counters.reset_period("u1", next_period)
    counter = sql_counters.get_counter("u1", "monthly_scan")
    assert counter.count == 0
    assert counter.period_start == next_period

    # Opening the same period again is a no-op
    sql_counters.reset_period("u1", next_period, ["monthly_scan"])
    assert sql_counters.get_counter("u1", "monthly_scan").count == 0


def test_mark_limit_reached_is_set_if_absent(sql_counters):
    sql_counters.increment("u1", "monthly_scan", amount=10, now=NOW)
    first = sql_counters.mark_limit_reached("u1", "monthly_scan", PERIOD, NOW)
    second = sql_counters.mark_limit_reached("u1", "monthly_scan", PERIOD, NOW + timedelta(hours=3))
    assert first == NOW
    assert second == NOW
    assert sql_counters.get_counter("u1", "monthly_scan").limit_reached_at == NOW


def test_mark_limit_reached_without_counter(sql_counters):
    anchor = sql_counters.mark_limit_reached("u1", "team_invite", PERIOD, NOW)
    assert anchor == NOW
    counter = sql_counters.get_counter("u1", "team_invite")
    assert counter.count == 0
    assert counter.limit_reached_at == NOW


def test_counter_errors_are_wrapped(sql_counters, monkeypatch):
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(usage_store_module, "get_db_session", broken_session)
    with pytest.raises(CounterStoreUnavailable):
        sql_counters.get_counter("u1", "monthly_scan")
    assert usage_store_errors_total.value({"operation": "get_counter"}) == 1


def test_engine_over_sql_counters(sql_counters):
    engine = AccessDecisionEngine(default_catalog(), QuotaTracker(sql_counters))
    sql_counters.increment("u1", "monthly_scan", amount=10, now=NOW)
    requirement = FeatureRequirement(
        required_tier="free", usage_type="monthly_scan", check_usage_limit=True, grace_period_days=3
    )
    inside = engine.check_access("u1", "free", requirement, now=NOW)
    assert inside.reason == "grace_period"
    outside = engine.check_access("u1", "free", requirement, now=NOW + timedelta(days=4))
    assert not outside.allowed
    assert outside.reason == "usage_limit"


# Tier directory

def test_tier_directory_round_trip(sqlite_url):
    directory = SqlTierDirectory()
    assert directory.get_tier("u1") is None
    directory.set_tier("u1", "free", at=NOW)
    directory.set_tier("u1", "team", at=NOW + timedelta(days=1))
    assert directory.get_tier("u1") is Tier.TEAM


# Interactions

def test_create_if_latest_compare_and_set(sql_interactions):
    assert sql_interactions.create_if_latest(_interaction("i1"), None)
    # Someone else already created the first interaction
    assert not sql_interactions.create_if_latest(_interaction("i2"), None)
    # Stale expectation
    assert not sql_interactions.create_if_latest(_interaction("i3"), "i0")
    assert sql_interactions.create_if_latest(_interaction("i4", NOW + timedelta(hours=1)), "i1")

    latest = sql_interactions.latest("u1", "usage_limit")
    assert latest.id == "i4"
    assert sql_interactions.get("i2") is None
    assert [item.id for item in sql_interactions.list_for_user("u1")] == ["i4", "i1"]


def test_resolve_once(sql_interactions):
    sql_interactions.create_if_latest(_interaction("i1"), None)
    until = NOW + timedelta(hours=24)
    first = sql_interactions.resolve_once("i1", "snoozed", NOW, until)
    second = sql_interactions.resolve_once("i1", "clicked", NOW + timedelta(minutes=5))
    assert first.outcome == "snoozed"
    assert second.outcome == "snoozed"
    assert second.snooze_until == until
    assert sql_interactions.resolve_once("missing", "clicked", NOW) is None


def test_interaction_errors_are_wrapped(sql_interactions, monkeypatch):
    import tiergate.features.prompts.store as prompt_store_module

    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(prompt_store_module, "get_db_session", broken_session)
    with pytest.raises(InteractionStoreUnavailable):
        sql_interactions.latest("u1", "usage_limit")


def test_orchestrator_snooze_over_sql(sql_interactions):
    orchestrator = PromptOrchestrator(default_variant_catalog(), sql_interactions)
    shown = orchestrator.evaluate("u1", "usage_limit", "free", now=NOW)
    assert shown.shown
    orchestrator.resolve_interaction(shown.interaction_id, "snoozed", snooze_hours=24, now=NOW)
    assert orchestrator.evaluate("u1", "usage_limit", "free", now=NOW + timedelta(hours=1)).reason == "snoozed"
    later = orchestrator.evaluate("u1", "usage_limit", "free", now=NOW + timedelta(hours=25))
    assert later.shown
    assert later.interaction_id != shown.interaction_id


def test_outcome_counts_group_by_variant(sql_interactions):
    assert sql_interactions.create_if_latest(_interaction("i1"), None)
    assert sql_interactions.create_if_latest(_interaction("i2", shown_at=NOW + timedelta(hours=1)), "i1")
    assert sql_interactions.create_if_latest(_interaction("i3", user_id="u2"), None)
    assert sql_interactions.create_if_latest(_interaction("i4", trigger="feature_locked"), None)
    sql_interactions.resolve_once("i1", "clicked", NOW)
    sql_interactions.resolve_once("i3", "clicked", NOW)

    counts = sql_interactions.outcome_counts("usage_limit")
    assert counts == {
        ("usage_limit", "usage_limit_friendly", "clicked"): 2,
        ("usage_limit", "usage_limit_friendly", None): 1,
    }
    assert sum(sql_interactions.outcome_counts().values()) == 4


def test_orchestrator_analytics_over_sql(sql_interactions):
    orchestrator = PromptOrchestrator(default_variant_catalog(), sql_interactions)
    for user_id in ("a", "b"):
        shown = orchestrator.evaluate(user_id, "usage_limit", "free", variant_override="usage_limit_friendly", now=NOW)
        orchestrator.resolve_interaction(shown.interaction_id, "clicked" if user_id == "a" else "dismissed", now=NOW)
    rows = {row.variant_id: row for row in orchestrator.analytics("usage_limit")}
    assert rows["usage_limit_friendly"].impressions == 2
    assert rows["usage_limit_friendly"].click_through_rate == 0.5
    assert rows["usage_limit_urgent"].impressions == 0


def test_opt_out_round_trip(sql_interactions):
    assert sql_interactions.get_opt_out("u1") is None
    sql_interactions.put_opt_out(PromptOptOut(user_id="u1", disabled_at=NOW, reason="busy"))
    stored = sql_interactions.get_opt_out("u1")
    assert stored.disabled_until is None
    assert stored.disabled_at == NOW

    sql_interactions.put_opt_out(PromptOptOut(user_id="u1", disabled_at=NOW, disabled_until=NOW + timedelta(hours=2)))
    assert sql_interactions.get_opt_out("u1").disabled_until == NOW + timedelta(hours=2)
    assert sql_interactions.get_opt_out("u1").reason is None

    assert sql_interactions.delete_opt_out("u1") is True
    assert sql_interactions.delete_opt_out("u1") is False


def test_orchestrator_opt_out_over_sql(sql_interactions):
    orchestrator = PromptOrchestrator(default_variant_catalog(), sql_interactions)
    orchestrator.disable_for_user("u1", hours=24, now=NOW)
    assert orchestrator.evaluate("u1", "usage_limit", "free", now=NOW + timedelta(hours=1)).reason == "user_disabled"
    assert orchestrator.evaluate("u1", "usage_limit", "free", now=NOW + timedelta(hours=25)).shown

    orchestrator.disable_for_user("u1", now=NOW + timedelta(hours=26))
    assert orchestrator.evaluate("u1", "feature_locked", "free", now=NOW + timedelta(days=90)).reason == "user_disabled"
