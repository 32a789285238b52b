"""
tiergate/features/access/service.py

Access decision engine.

Handles:
- Tier gating against the catalog order
- Usage-limit enforcement with grace periods and soft limits
- Fail-open fallback when anything downstream breaks
- Structured decision logs and decision metrics
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional, Union

from tiergate.core.errors import UnknownTier
from tiergate.core.metrics import access_check_seconds, access_decisions_total, access_fallback_total
from tiergate.core.timeutil import normalize_now
from tiergate.features.catalog.service import TierCatalog
from tiergate.features.usage.service import QuotaTracker
from tiergate.models.access import AccessDecision, FeatureRequirement
from tiergate.models.tier import Tier


logger = logging.getLogger("tiergate")


class AccessDecisionEngine:
    """
    Decides whether a user may use a feature right now.

    Stateless apart from the injected catalog and tracker; safe to share
    across requests. Unexpected faults never deny access: they produce a
    fallback decision so an infrastructure outage cannot lock paying users
    out.
    """

    def __init__(self, catalog: TierCatalog, tracker: QuotaTracker):
        self.catalog = catalog
        self.tracker = tracker

    def check_access(
        self,
        user_id: Optional[str],
        user_tier: Optional[Union[Tier, str]],
        requirement: FeatureRequirement,
        *,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        started = time.perf_counter()
        try:
            return self._decide(user_id, user_tier, requirement, now)
        finally:
            try:
                access_check_seconds.observe(time.perf_counter() - started)
            except Exception:
                logger.error("[access] latency not recorded", exc_info=True, extra={"event_type": "access.metrics_error"})

    def _decide(self, user_id, user_tier, requirement: FeatureRequirement, now: Optional[datetime]) -> AccessDecision:
        stage = "tier"
        try:
            tier = self._resolve_user_tier(user_id, user_tier)
            if tier is None:
                return self._record(user_id, None, requirement, AccessDecision.deny("tier", {"requiredAuth": True}))

            if self.catalog.compare_tiers(tier, requirement.required_tier) < 0:
                decision = AccessDecision.deny(
                    "tier",
                    {"currentTier": tier.value, "requiredTier": requirement.required_tier.value},
                )
                return self._record(user_id, tier, requirement, decision)

            if not requirement.check_usage_limit:
                return self._record(user_id, tier, requirement, AccessDecision.allow())

            stage = "usage"
            current = normalize_now(now)
            limit = self.catalog.limit_for(tier, requirement.usage_type)
            status = self.tracker.evaluate(user_id, requirement.usage_type, limit, now=current)

            # Unlimited tiers never depend on the counter, even when it is down
            if limit is None:
                return self._record(user_id, tier, requirement, AccessDecision.allow(details=status))

            if status.level == "unknown":
                access_fallback_total.inc(labels={"stage": "usage_store"})
                logger.warning(
                    "[access] usage unknown, allowing with fallback",
                    extra={
                        "user_id": user_id,
                        "usage_type": requirement.usage_type,
                        "event_type": "access.fallback",
                    },
                )
                return self._record(user_id, tier, requirement, AccessDecision.fallback(usage=status))

            if not status.exhausted:
                return self._record(user_id, tier, requirement, AccessDecision.allow(details=status))

            if requirement.grace_period_days is not None:
                stage = "grace"
                anchor = self.tracker.grace_anchor(user_id, requirement.usage_type, status, current)
                if current < anchor + timedelta(days=requirement.grace_period_days):
                    if status.limit_reached_at is None:
                        status = status.model_copy(update={"limit_reached_at": anchor})
                    return self._record(user_id, tier, requirement, AccessDecision.allow("grace_period", status))

            if requirement.soft_limit:
                return self._record(user_id, tier, requirement, AccessDecision.allow("usage_limit", status))

            return self._record(user_id, tier, requirement, AccessDecision.deny("usage_limit", status))
        except Exception as exc:
            try:
                access_fallback_total.inc(labels={"stage": stage})
            except Exception:
                logger.error("[access] fallback not counted", exc_info=True, extra={"event_type": "access.metrics_error"})
            logger.error(
                "[access] check failed, allowing with fallback",
                exc_info=exc,
                extra={
                    "user_id": user_id,
                    "required_tier": requirement.required_tier.value,
                    "usage_type": requirement.usage_type,
                    "event_type": "access.error",
                    "error_code": exc.__class__.__name__,
                },
            )
            return self._record(user_id, None, requirement, AccessDecision.fallback())

    def check_feature(
        self,
        user_id: Optional[str],
        user_tier: Optional[Union[Tier, str]],
        feature_flag: str,
        *,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """Gate a catalog feature flag by the cheapest tier that enables it."""
        required = self.catalog.minimum_tier_for(feature_flag)
        if required is None:
            logger.warning(
                "[access] feature not enabled by any tier",
                extra={"user_id": user_id, "event_type": "access.unknown_feature", "feature": feature_flag},
            )
            tier = self._resolve_user_tier(user_id, user_tier)
            return AccessDecision.deny(
                "tier",
                {"currentTier": tier.value if tier else None, "requiredTier": None, "feature": feature_flag},
            )
        return self.check_access(user_id, user_tier, FeatureRequirement(required_tier=required), now=now)

    def _resolve_user_tier(self, user_id: Optional[str], user_tier) -> Optional[Tier]:
        if not user_id or user_tier is None:
            return None
        try:
            return self.catalog.resolve(user_tier)
        except UnknownTier:
            logger.warning(
                "[access] unresolvable tier, treating as unauthenticated",
                extra={"user_id": user_id, "event_type": "access.unknown_tier"},
            )
            return None

    def _record(
        self,
        user_id: Optional[str],
        tier: Optional[Tier],
        requirement: FeatureRequirement,
        decision: AccessDecision,
    ) -> AccessDecision:
        """Count and log a decision. Recording failures never change the decision."""
        try:
            access_decisions_total.inc(
                labels={"allowed": str(decision.allowed).lower(), "reason": decision.reason or "none"}
            )
            logger.log(
                logging.INFO if decision.allowed else logging.WARNING,
                "[access] decision",
                extra={
                    "user_id": user_id,
                    "tier": tier.value if tier else None,
                    "required_tier": requirement.required_tier.value,
                    "usage_type": requirement.usage_type,
                    "allowed": decision.allowed,
                    "reason": decision.reason,
                    "event_type": "access.decision",
                },
            )
        except Exception:
            logger.error(
                "[access] decision not recorded",
                exc_info=True,
                extra={"user_id": user_id, "event_type": "access.metrics_error"},
            )
        return decision
