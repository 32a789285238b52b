"""
tiergate/features/usage/store.py

Usage counter stores.

Counters are incremented by the scan/audit execution service and rolled over
by the billing provider; the gating engine only reads them and records the
first-over-limit anchor of the current period.

In-memory implementation for development/tests, SQLAlchemy implementation
when DATABASE_URL is configured.
"""

import threading
from datetime import datetime
from typing import Dict, Iterable, Optional, Protocol, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tiergate.core.database import get_db_session, usage_counters
from tiergate.core.errors import CounterStoreUnavailable
from tiergate.core.metrics import usage_store_errors_total
from tiergate.core.timeutil import ensure_utc, month_start, normalize_now
from tiergate.models.usage import UsageCounter


class CounterStore(Protocol):
    """
    Protocol for usage counter backends.

    Implementations raise CounterStoreUnavailable when the backend cannot be
    reached; they never raise raw driver errors.
    """

    def get_counter(self, user_id: str, usage_type: str) -> Optional[UsageCounter]:
        """Return the counter for the current (latest) period, if any."""
        ...

    def mark_limit_reached(self, user_id: str, usage_type: str, period_start: datetime, at: datetime) -> datetime:
        """Record `at` as the period's first-over-limit time unless one exists.

        Returns the effective anchor (the earlier recorded value wins).
        """
        ...

    def increment(self, user_id: str, usage_type: str, amount: int = 1, *, now: Optional[datetime] = None) -> UsageCounter:
        """Add to the current period's count. Called by the execution service."""
        ...

    def reset_period(self, user_id: str, period_start: datetime, usage_types: Optional[Iterable[str]] = None) -> None:
        """Open a new billing period with zeroed counters. Called by billing."""
        ...


class InMemoryCounterStore:
    """Thread-safe in-memory counter store keyed by (user_id, usage_type)."""

    def __init__(self):
        self._counters: Dict[Tuple[str, str], UsageCounter] = {}
        self._lock = threading.Lock()

    def get_counter(self, user_id: str, usage_type: str) -> Optional[UsageCounter]:
        with self._lock:
            return self._counters.get((user_id, usage_type))

    def put(self, counter: UsageCounter) -> None:
        """Replace a counter outright (fixtures and imports)."""
        with self._lock:
            self._counters[(counter.user_id, counter.usage_type)] = counter

    def mark_limit_reached(self, user_id: str, usage_type: str, period_start: datetime, at: datetime) -> datetime:
        at = ensure_utc(at)
        period_start = ensure_utc(period_start)
        with self._lock:
            key = (user_id, usage_type)
            counter = self._counters.get(key)
            if counter is None:
                self._counters[key] = UsageCounter(
                    user_id=user_id,
                    usage_type=usage_type,
                    period_start=period_start,
                    count=0,
                    limit_reached_at=at,
                )
                return at
            if counter.period_start != period_start:
                # Period rolled over since the caller read it; leave the new period alone
                return at
            if counter.limit_reached_at is not None:
                return counter.limit_reached_at
            self._counters[key] = counter.model_copy(update={"limit_reached_at": at})
            return at

    def increment(self, user_id: str, usage_type: str, amount: int = 1, *, now: Optional[datetime] = None) -> UsageCounter:
        current = normalize_now(now)
        with self._lock:
            key = (user_id, usage_type)
            counter = self._counters.get(key)
            if counter is None:
                counter = UsageCounter(
                    user_id=user_id,
                    usage_type=usage_type,
                    period_start=month_start(current),
                    count=0,
                )
            counter = counter.model_copy(update={"count": counter.count + amount})
            self._counters[key] = counter
            return counter

    def reset_period(self, user_id: str, period_start: datetime, usage_types: Optional[Iterable[str]] = None) -> None:
        period_start = ensure_utc(period_start)
        with self._lock:
            types = set(usage_types or [])
            if not types:
                types = {usage_type for (uid, usage_type) in self._counters if uid == user_id}
            for usage_type in types:
                self._counters[(user_id, usage_type)] = UsageCounter(
                    user_id=user_id,
                    usage_type=usage_type,
                    period_start=period_start,
                    count=0,
                )

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


def _row_to_counter(row) -> UsageCounter:
    return UsageCounter(
        user_id=row.user_id,
        usage_type=row.usage_type,
        period_start=ensure_utc(row.period_start),
        count=int(row.count or 0),
        limit_reached_at=ensure_utc(row.limit_reached_at) if row.limit_reached_at else None,
    )


class SqlCounterStore:
    """SQLAlchemy-backed counter store (usage_counters table)."""

    def _unavailable(self, operation: str, exc: Exception) -> CounterStoreUnavailable:
        usage_store_errors_total.inc(labels={"operation": operation})
        return CounterStoreUnavailable(f"Usage counter store unavailable during {operation}: {exc.__class__.__name__}")

    @staticmethod
    def _current_row(session, user_id: str, usage_type: str):
        return session.execute(
            select(usage_counters)
            .where(usage_counters.c.user_id == user_id)
            .where(usage_counters.c.usage_type == usage_type)
            .order_by(usage_counters.c.period_start.desc())
            .limit(1)
        ).first()

    def get_counter(self, user_id: str, usage_type: str) -> Optional[UsageCounter]:
        try:
            with get_db_session() as session:
                row = self._current_row(session, user_id, usage_type)
                return _row_to_counter(row) if row else None
        except SQLAlchemyError as exc:
            raise self._unavailable("get_counter", exc) from exc

    def mark_limit_reached(self, user_id: str, usage_type: str, period_start: datetime, at: datetime) -> datetime:
        at = ensure_utc(at)
        period_start = ensure_utc(period_start)
        try:
            with get_db_session() as session:
                result = session.execute(
                    update(usage_counters)
                    .where(usage_counters.c.user_id == user_id)
                    .where(usage_counters.c.usage_type == usage_type)
                    .where(usage_counters.c.period_start == period_start)
                    .where(usage_counters.c.limit_reached_at.is_(None))
                    .values(limit_reached_at=at)
                )
                if result.rowcount:
                    return at

            with get_db_session() as session:
                row = session.execute(
                    select(usage_counters.c.limit_reached_at)
                    .where(usage_counters.c.user_id == user_id)
                    .where(usage_counters.c.usage_type == usage_type)
                    .where(usage_counters.c.period_start == period_start)
                ).first()
                if row and row.limit_reached_at:
                    return ensure_utc(row.limit_reached_at)

            try:
                with get_db_session() as session:
                    session.execute(
                        insert(usage_counters).values(
                            user_id=user_id,
                            usage_type=usage_type,
                            period_start=period_start,
                            count=0,
                            limit_reached_at=at,
                        )
                    )
                return at
            except IntegrityError:
                # Lost the insert race; whoever won recorded the anchor
                with get_db_session() as session:
                    row = session.execute(
                        select(usage_counters.c.limit_reached_at)
                        .where(usage_counters.c.user_id == user_id)
                        .where(usage_counters.c.usage_type == usage_type)
                        .where(usage_counters.c.period_start == period_start)
                    ).first()
                    return ensure_utc(row.limit_reached_at) if row and row.limit_reached_at else at
        except SQLAlchemyError as exc:
            raise self._unavailable("mark_limit_reached", exc) from exc

    def _increment_once(self, user_id: str, usage_type: str, amount: int, current: datetime) -> UsageCounter:
        with get_db_session() as session:
            row = self._current_row(session, user_id, usage_type)
            if row is None:
                session.execute(
                    insert(usage_counters).values(
                        user_id=user_id,
                        usage_type=usage_type,
                        period_start=month_start(current),
                        count=amount,
                    )
                )
            else:
                session.execute(
                    update(usage_counters)
                    .where(usage_counters.c.id == row.id)
                    .values(count=usage_counters.c.count + amount)
                )
            return _row_to_counter(self._current_row(session, user_id, usage_type))

    def increment(self, user_id: str, usage_type: str, amount: int = 1, *, now: Optional[datetime] = None) -> UsageCounter:
        current = normalize_now(now)
        try:
            try:
                return self._increment_once(user_id, usage_type, amount, current)
            except IntegrityError:
                # Concurrent first insert for the period won; add to its row
                return self._increment_once(user_id, usage_type, amount, current)
        except SQLAlchemyError as exc:
            raise self._unavailable("increment", exc) from exc

    def reset_period(self, user_id: str, period_start: datetime, usage_types: Optional[Iterable[str]] = None) -> None:
        period_start = ensure_utc(period_start)
        try:
            types = set(usage_types or [])
            if not types:
                with get_db_session() as session:
                    types = set(
                        session.execute(
                            select(usage_counters.c.usage_type)
                            .where(usage_counters.c.user_id == user_id)
                            .distinct()
                        ).scalars()
                    )
            for usage_type in sorted(types):
                try:
                    with get_db_session() as session:
                        session.execute(
                            insert(usage_counters).values(
                                user_id=user_id,
                                usage_type=usage_type,
                                period_start=period_start,
                                count=0,
                            )
                        )
                except IntegrityError:
                    # Period already opened
                    continue
        except SQLAlchemyError as exc:
            raise self._unavailable("reset_period", exc) from exc
