"""
tiergate/features/usage/service.py

Quota tracker.

Handles:
- Read-through usage lookups against the counter store
- Quota evaluation (remaining, percentage, warning/critical level)
- Grace-period anchoring on the current billing period
- Usage alerts across every limited usage type
"""

import logging
from datetime import datetime
from typing import List, Optional

from tiergate.core.config import settings
from tiergate.core.errors import CounterStoreUnavailable
from tiergate.core.logging import log_event
from tiergate.core.timeutil import month_start, normalize_now
from tiergate.features.usage.store import CounterStore
from tiergate.models.usage import UsageAlert, UsageSnapshot, UsageStatus


logger = logging.getLogger("tiergate")


def _check_thresholds(warning: float, critical: float) -> None:
    if not (0 <= warning <= critical <= 100):
        raise ValueError(
            f"thresholds must satisfy 0 <= warning ({warning}) <= critical ({critical}) <= 100"
        )


def classify(percentage_used: float, warning: float, critical: float) -> str:
    if percentage_used >= critical:
        return "critical"
    if percentage_used >= warning:
        return "warning"
    return "ok"


class QuotaTracker:
    """
    Reads usage counters and classifies them against tier limits.

    Consistency is weak: counters are written by the execution service after
    the work completes, so a read may lag the true count by one in-flight
    increment. Two concurrent checks can both see `used = limit - 1` and both
    be allowed; the overshoot is bounded by request concurrency.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        warning_threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
    ):
        self.store = store
        self.warning_threshold = settings.USAGE_WARNING_THRESHOLD if warning_threshold is None else warning_threshold
        self.critical_threshold = settings.USAGE_CRITICAL_THRESHOLD if critical_threshold is None else critical_threshold
        _check_thresholds(self.warning_threshold, self.critical_threshold)

    def get_usage(self, user_id: str, usage_type: str, *, now: Optional[datetime] = None) -> UsageSnapshot:
        """
        Current-period usage for a user.

        Raises:
            CounterStoreUnavailable: when the counter backend is down
        """
        counter = self.store.get_counter(user_id, usage_type)
        if counter is None:
            return UsageSnapshot(used=0, period_start=month_start(now))
        return UsageSnapshot(
            used=counter.count,
            period_start=counter.period_start,
            limit_reached_at=counter.limit_reached_at,
        )

    def evaluate(
        self,
        user_id: str,
        usage_type: str,
        limit: Optional[int],
        *,
        warning_threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> UsageStatus:
        """
        Evaluate usage against a monthly limit (None = unlimited).

        A counter store outage never propagates: the status is returned with
        level "unknown" and used = 0 so callers can fail open.
        """
        warning = self.warning_threshold if warning_threshold is None else warning_threshold
        critical = self.critical_threshold if critical_threshold is None else critical_threshold
        _check_thresholds(warning, critical)

        try:
            snapshot = self.get_usage(user_id, usage_type, now=now)
        except CounterStoreUnavailable as exc:
            log_event(
                "warning",
                "[usage] counter store unavailable, usage unknown",
                user_id=user_id,
                event_type="usage.store_unavailable",
                error_code=exc.code,
                extra={"usage_type": usage_type, "error": exc.message},
            )
            return UsageStatus(
                usage_type=usage_type,
                used=0,
                limit=limit,
                remaining=limit,
                percentage_used=0.0,
                level="unknown",
                exhausted=False,
                period_start=month_start(now),
            )

        used = snapshot.used
        if limit is None:
            return UsageStatus(
                usage_type=usage_type,
                used=used,
                limit=None,
                remaining=None,
                percentage_used=0.0,
                level="ok",
                exhausted=False,
                period_start=snapshot.period_start,
                limit_reached_at=snapshot.limit_reached_at,
            )

        if limit == 0:
            percentage = 100.0
        else:
            percentage = min(max(used / limit * 100.0, 0.0), 100.0)

        return UsageStatus(
            usage_type=usage_type,
            used=used,
            limit=limit,
            remaining=max(limit - used, 0),
            percentage_used=round(percentage, 2),
            level=classify(percentage, warning, critical),
            exhausted=used >= limit,
            period_start=snapshot.period_start,
            limit_reached_at=snapshot.limit_reached_at,
        )

    def grace_anchor(self, user_id: str, usage_type: str, status: UsageStatus, now: Optional[datetime] = None) -> datetime:
        """
        First time this period the user was seen over the limit.

        Recorded with a set-if-absent write, so concurrent callers converge
        on the earliest stored value.
        """
        current = normalize_now(now)
        if status.limit_reached_at is not None:
            return status.limit_reached_at
        period_start = status.period_start or month_start(current)
        anchor = self.store.mark_limit_reached(user_id, usage_type, period_start, current)
        if anchor == current:
            logger.info(
                "[usage] limit reached, grace period anchored",
                extra={"user_id": user_id, "usage_type": usage_type, "event_type": "usage.limit_reached"},
            )
        return anchor

    def usage_alerts(self, user_id: str, tier, catalog, *, now: Optional[datetime] = None) -> List[UsageAlert]:
        """Warning/critical/exceeded summaries for every limited usage type."""
        alerts: List[UsageAlert] = []
        for usage_type in catalog.usage_types:
            limit = catalog.limit_for(tier, usage_type)
            if limit is None:
                continue
            status = self.evaluate(user_id, usage_type, limit, now=now)
            if status.level in ("ok", "unknown"):
                continue
            level = "exceeded" if status.exhausted else status.level
            alerts.append(
                UsageAlert(
                    usage_type=usage_type,
                    level=level,
                    used=status.used,
                    limit=limit,
                    percentage_used=status.percentage_used,
                    upgrade_required=status.exhausted,
                )
            )
        return alerts
