"""
tiergate/features/prompts/store.py

Prompt interaction stores.

Each (user, trigger) pair has a latest-interaction pointer. New interactions
are only created through a compare-and-set on that pointer, so two concurrent
evaluations cannot both show a prompt. Outcomes are written at most once.

The same stores keep per-user opt-outs and answer the per-variant outcome
counts behind prompt analytics.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tiergate.core.database import get_db_session, prompt_interactions, prompt_opt_outs, prompt_trigger_state
from tiergate.core.errors import InteractionStoreUnavailable
from tiergate.core.timeutil import ensure_utc
from tiergate.models.prompt import PromptInteraction, PromptOptOut

OutcomeKey = Tuple[str, str, Optional[str]]


class InteractionStore(Protocol):
    def get(self, interaction_id: str) -> Optional[PromptInteraction]:
        ...

    def latest(self, user_id: str, trigger_type: str) -> Optional[PromptInteraction]:
        ...

    def create_if_latest(self, interaction: PromptInteraction, expected_latest_id: Optional[str]) -> bool:
        """Insert `interaction` only if the pointer still equals `expected_latest_id`."""
        ...

    def resolve_once(
        self,
        interaction_id: str,
        outcome: str,
        resolved_at: datetime,
        snooze_until: Optional[datetime] = None,
    ) -> Optional[PromptInteraction]:
        """Record the outcome unless one exists; return the stored interaction (None if unknown)."""
        ...

    def list_for_user(self, user_id: str, trigger_type: Optional[str] = None) -> List[PromptInteraction]:
        """Interactions newest first."""
        ...

    def outcome_counts(self, trigger_type: Optional[str] = None) -> Dict[OutcomeKey, int]:
        """Interaction counts keyed by (trigger, variant, outcome); outcome None is unresolved."""
        ...

    def get_opt_out(self, user_id: str) -> Optional[PromptOptOut]:
        ...

    def put_opt_out(self, opt_out: PromptOptOut) -> None:
        """Create or replace the user's opt-out."""
        ...

    def delete_opt_out(self, user_id: str) -> bool:
        ...


class InMemoryInteractionStore:
    def __init__(self):
        self._interactions: Dict[str, PromptInteraction] = {}
        self._latest: Dict[Tuple[str, str], str] = {}
        self._opt_outs: Dict[str, PromptOptOut] = {}
        self._lock = threading.Lock()

    def get(self, interaction_id: str) -> Optional[PromptInteraction]:
        with self._lock:
            return self._interactions.get(interaction_id)

    def latest(self, user_id: str, trigger_type: str) -> Optional[PromptInteraction]:
        with self._lock:
            latest_id = self._latest.get((user_id, trigger_type))
            return self._interactions.get(latest_id) if latest_id else None

    def create_if_latest(self, interaction: PromptInteraction, expected_latest_id: Optional[str]) -> bool:
        key = (interaction.user_id, interaction.trigger_type)
        with self._lock:
            if self._latest.get(key) != expected_latest_id:
                return False
            self._interactions[interaction.id] = interaction
            self._latest[key] = interaction.id
            return True

    def resolve_once(
        self,
        interaction_id: str,
        outcome: str,
        resolved_at: datetime,
        snooze_until: Optional[datetime] = None,
    ) -> Optional[PromptInteraction]:
        with self._lock:
            interaction = self._interactions.get(interaction_id)
            if interaction is None or interaction.resolved:
                return interaction
            resolved = interaction.model_copy(
                update={"outcome": outcome, "resolved_at": resolved_at, "snooze_until": snooze_until}
            )
            self._interactions[interaction_id] = resolved
            return resolved

    def list_for_user(self, user_id: str, trigger_type: Optional[str] = None) -> List[PromptInteraction]:
        with self._lock:
            items = [
                interaction
                for interaction in self._interactions.values()
                if interaction.user_id == user_id and (trigger_type is None or interaction.trigger_type == trigger_type)
            ]
        return sorted(items, key=lambda item: item.shown_at, reverse=True)

    def outcome_counts(self, trigger_type: Optional[str] = None) -> Dict[OutcomeKey, int]:
        counts: Dict[OutcomeKey, int] = {}
        with self._lock:
            for item in self._interactions.values():
                if trigger_type is not None and item.trigger_type != trigger_type:
                    continue
                key = (item.trigger_type, item.variant_id, item.outcome)
                counts[key] = counts.get(key, 0) + 1
        return counts

    def get_opt_out(self, user_id: str) -> Optional[PromptOptOut]:
        with self._lock:
            return self._opt_outs.get(user_id)

    def put_opt_out(self, opt_out: PromptOptOut) -> None:
        with self._lock:
            self._opt_outs[opt_out.user_id] = opt_out

    def delete_opt_out(self, user_id: str) -> bool:
        with self._lock:
            return self._opt_outs.pop(user_id, None) is not None


class _PointerMoved(Exception):
    pass


def _row_to_interaction(row) -> PromptInteraction:
    return PromptInteraction(
        id=row.id,
        user_id=row.user_id,
        trigger_type=row.trigger_type,
        variant_id=row.variant_id,
        user_tier=row.user_tier,
        shown_at=ensure_utc(row.shown_at),
        outcome=row.outcome,
        resolved_at=ensure_utc(row.resolved_at) if row.resolved_at else None,
        snooze_until=ensure_utc(row.snooze_until) if row.snooze_until else None,
    )


class SqlInteractionStore:
    """prompt_interactions + prompt_trigger_state tables."""

    def _unavailable(self, operation: str, exc: Exception) -> InteractionStoreUnavailable:
        return InteractionStoreUnavailable(
            f"Prompt interaction store unavailable during {operation}: {exc.__class__.__name__}"
        )

    def get(self, interaction_id: str) -> Optional[PromptInteraction]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(prompt_interactions).where(prompt_interactions.c.id == interaction_id)
                ).first()
                return _row_to_interaction(row) if row else None
        except SQLAlchemyError as exc:
            raise self._unavailable("get", exc) from exc

    def latest(self, user_id: str, trigger_type: str) -> Optional[PromptInteraction]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(prompt_interactions)
                    .select_from(
                        prompt_trigger_state.join(
                            prompt_interactions,
                            prompt_interactions.c.id == prompt_trigger_state.c.latest_interaction_id,
                        )
                    )
                    .where(prompt_trigger_state.c.user_id == user_id)
                    .where(prompt_trigger_state.c.trigger_type == trigger_type)
                ).first()
                return _row_to_interaction(row) if row else None
        except SQLAlchemyError as exc:
            raise self._unavailable("latest", exc) from exc

    def create_if_latest(self, interaction: PromptInteraction, expected_latest_id: Optional[str]) -> bool:
        try:
            with get_db_session() as session:
                if expected_latest_id is None:
                    # Unique primary key on (user_id, trigger_type) makes the first insert the CAS
                    session.execute(
                        insert(prompt_trigger_state).values(
                            user_id=interaction.user_id,
                            trigger_type=interaction.trigger_type,
                            latest_interaction_id=interaction.id,
                            updated_at=interaction.shown_at,
                        )
                    )
                else:
                    result = session.execute(
                        update(prompt_trigger_state)
                        .where(prompt_trigger_state.c.user_id == interaction.user_id)
                        .where(prompt_trigger_state.c.trigger_type == interaction.trigger_type)
                        .where(prompt_trigger_state.c.latest_interaction_id == expected_latest_id)
                        .values(latest_interaction_id=interaction.id, updated_at=interaction.shown_at)
                    )
                    if result.rowcount != 1:
                        raise _PointerMoved()
                session.execute(
                    insert(prompt_interactions).values(
                        id=interaction.id,
                        user_id=interaction.user_id,
                        trigger_type=interaction.trigger_type,
                        variant_id=interaction.variant_id,
                        user_tier=interaction.user_tier.value if interaction.user_tier else None,
                        shown_at=interaction.shown_at,
                        outcome=None,
                        resolved_at=None,
                        snooze_until=None,
                    )
                )
            return True
        except (IntegrityError, _PointerMoved):
            return False
        except SQLAlchemyError as exc:
            raise self._unavailable("create_if_latest", exc) from exc

    def resolve_once(
        self,
        interaction_id: str,
        outcome: str,
        resolved_at: datetime,
        snooze_until: Optional[datetime] = None,
    ) -> Optional[PromptInteraction]:
        try:
            with get_db_session() as session:
                session.execute(
                    update(prompt_interactions)
                    .where(prompt_interactions.c.id == interaction_id)
                    .where(prompt_interactions.c.outcome.is_(None))
                    .values(outcome=outcome, resolved_at=resolved_at, snooze_until=snooze_until)
                )
                row = session.execute(
                    select(prompt_interactions).where(prompt_interactions.c.id == interaction_id)
                ).first()
                return _row_to_interaction(row) if row else None
        except SQLAlchemyError as exc:
            raise self._unavailable("resolve_once", exc) from exc

    def list_for_user(self, user_id: str, trigger_type: Optional[str] = None) -> List[PromptInteraction]:
        try:
            with get_db_session() as session:
                query = select(prompt_interactions).where(prompt_interactions.c.user_id == user_id)
                if trigger_type:
                    query = query.where(prompt_interactions.c.trigger_type == trigger_type)
                rows = session.execute(query.order_by(prompt_interactions.c.shown_at.desc())).all()
                return [_row_to_interaction(row) for row in rows]
        except SQLAlchemyError as exc:
            raise self._unavailable("list_for_user", exc) from exc

    def outcome_counts(self, trigger_type: Optional[str] = None) -> Dict[OutcomeKey, int]:
        try:
            with get_db_session() as session:
                query = select(
                    prompt_interactions.c.trigger_type,
                    prompt_interactions.c.variant_id,
                    prompt_interactions.c.outcome,
                    func.count().label("total"),
                ).group_by(
                    prompt_interactions.c.trigger_type,
                    prompt_interactions.c.variant_id,
                    prompt_interactions.c.outcome,
                )
                if trigger_type:
                    query = query.where(prompt_interactions.c.trigger_type == trigger_type)
                rows = session.execute(query).all()
                return {(row.trigger_type, row.variant_id, row.outcome): row.total for row in rows}
        except SQLAlchemyError as exc:
            raise self._unavailable("outcome_counts", exc) from exc

    def get_opt_out(self, user_id: str) -> Optional[PromptOptOut]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(prompt_opt_outs).where(prompt_opt_outs.c.user_id == user_id)
                ).first()
        except SQLAlchemyError as exc:
            raise self._unavailable("get_opt_out", exc) from exc
        if row is None:
            return None
        return PromptOptOut(
            user_id=row.user_id,
            disabled_at=ensure_utc(row.disabled_at),
            disabled_until=ensure_utc(row.disabled_until) if row.disabled_until else None,
            reason=row.reason,
        )

    def _update_opt_out(self, opt_out: PromptOptOut) -> int:
        with get_db_session() as session:
            result = session.execute(
                update(prompt_opt_outs)
                .where(prompt_opt_outs.c.user_id == opt_out.user_id)
                .values(disabled_at=opt_out.disabled_at, disabled_until=opt_out.disabled_until, reason=opt_out.reason)
            )
            return result.rowcount

    def put_opt_out(self, opt_out: PromptOptOut) -> None:
        try:
            if self._update_opt_out(opt_out):
                return
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(prompt_opt_outs).values(
                            user_id=opt_out.user_id,
                            disabled_at=opt_out.disabled_at,
                            disabled_until=opt_out.disabled_until,
                            reason=opt_out.reason,
                        )
                    )
            except IntegrityError:
                # Inserted concurrently; last writer wins
                self._update_opt_out(opt_out)
        except SQLAlchemyError as exc:
            raise self._unavailable("put_opt_out", exc) from exc

    def delete_opt_out(self, user_id: str) -> bool:
        try:
            with get_db_session() as session:
                result = session.execute(delete(prompt_opt_outs).where(prompt_opt_outs.c.user_id == user_id))
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise self._unavailable("delete_opt_out", exc) from exc
