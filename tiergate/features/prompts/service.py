"""
tiergate/features/prompts/service.py

Upgrade prompt orchestrator.

Handles:
- Mapping access decisions to prompt triggers
- Anti-annoyance throttling (per-user opt-out, snooze, dismiss cooldown,
  pending prompt, frequency caps) and trigger schedules
- Variant selection (explicit override or deterministic weighted bucket)
- Interaction lifecycle: created on show, resolved once
- Per-variant analytics for comparing A/B arms
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

from tiergate.core.errors import NotFoundError, ValidationError, VariantNotFound
from tiergate.core.metrics import prompts_total
from tiergate.core.timeutil import normalize_now
from tiergate.features.prompts.catalog import VariantCatalog, bucket_variant
from tiergate.features.prompts.store import InteractionStore
from tiergate.models.access import AccessDecision
from tiergate.models.prompt import (
    TRIGGER_FEATURE_LOCKED,
    TRIGGER_GRACE_PERIOD,
    TRIGGER_USAGE_LIMIT,
    TRIGGER_USAGE_WARNING,
    PromptInteraction,
    PromptOptOut,
    PromptResult,
    PromptSpec,
    PromptVariant,
    TriggerConfig,
    VariantAnalytics,
)
from tiergate.models.tier import Tier


logger = logging.getLogger("tiergate")

OUTCOMES = ("clicked", "dismissed", "snoozed")

_REASON_TRIGGERS = {
    "tier": TRIGGER_FEATURE_LOCKED,
    "usage_limit": TRIGGER_USAGE_LIMIT,
    "grace_period": TRIGGER_GRACE_PERIOD,
}


def _to_spec(trigger_type: str, variant: PromptVariant) -> PromptSpec:
    return PromptSpec(
        variant_id=variant.id,
        trigger_type=trigger_type,
        title=variant.title,
        message=variant.message,
        cta_text=variant.cta_text,
        secondary_cta_text=variant.secondary_cta_text,
        style=variant.style,
        position=variant.position,
        discount_percentage=variant.discount_percentage,
        urgency_timer=variant.urgency_timer,
    )


class PromptOrchestrator:
    """
    Decides whether to surface an upgrade prompt and records what was shown.

    All throttling windows are evaluated lazily against `now`; nothing is
    scheduled. Lookup failures suppress the prompt: a missing nudge is
    cheaper than a broken one.
    """

    def __init__(
        self,
        variants: VariantCatalog,
        store: InteractionStore,
        *,
        dismiss_cooldown: timedelta = timedelta(hours=24),
        pending_ttl: timedelta = timedelta(minutes=30),
        default_snooze: timedelta = timedelta(hours=24),
        enabled: bool = True,
    ):
        self.variants = variants
        self.store = store
        self.dismiss_cooldown = dismiss_cooldown
        self.pending_ttl = pending_ttl
        self.default_snooze = default_snooze
        self.enabled = enabled

    @staticmethod
    def trigger_for_decision(decision: AccessDecision) -> Optional[str]:
        if decision.reason in _REASON_TRIGGERS:
            return _REASON_TRIGGERS[decision.reason]
        if decision.allowed and decision.reason is None:
            usage = decision.usage
            if usage is not None and usage.level in ("warning", "critical"):
                return TRIGGER_USAGE_WARNING
        return None

    def select_variant(
        self,
        trigger_type: str,
        user_tier: Union[Tier, str],
        usage_alert: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        variant_override: Optional[str] = None,
    ) -> Optional[PromptSpec]:
        """Variant to render, or None to suppress."""
        tier = Tier.parse(user_tier)
        candidates = self.variants.candidates(trigger_type, tier, usage_alert)
        if variant_override:
            chosen = next((variant for variant in candidates if variant.id == variant_override), None)
        else:
            chosen = bucket_variant(f"{user_id or ''}:{trigger_type}", candidates)
        if chosen is None:
            return None
        return _to_spec(trigger_type, chosen)

    def evaluate(
        self,
        user_id: str,
        trigger_type: str,
        user_tier: Union[Tier, str],
        *,
        usage_alert: Optional[str] = None,
        variant_override: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PromptResult:
        if not self.enabled:
            return self._suppress(user_id, trigger_type, "disabled")

        current = normalize_now(now)
        try:
            opt_out = self.store.get_opt_out(user_id)
            if opt_out is not None and opt_out.active(current):
                return self._suppress(user_id, trigger_type, "user_disabled")

            tier = Tier.parse(user_tier)
            config = self.variants.trigger(trigger_type)
            if config is None or not config.is_active:
                return self._suppress(user_id, trigger_type, "no_trigger")
            if not config.targets(tier):
                return self._suppress(user_id, trigger_type, "tier_not_targeted")
            if not config.is_scheduled(current):
                return self._suppress(user_id, trigger_type, "outside_schedule")

            latest = self.store.latest(user_id, trigger_type)
            reason = self._throttle_reason(latest, config, current)
            if reason is None:
                reason = self._frequency_reason(user_id, config, current)
            if reason is not None:
                return self._suppress(user_id, trigger_type, reason)

            spec = self.select_variant(
                trigger_type, tier, usage_alert, user_id=user_id, variant_override=variant_override
            )
            if spec is None:
                raise VariantNotFound(f"No prompt variant for {trigger_type} at {tier.value}")

            interaction = PromptInteraction(
                id=uuid4().hex,
                user_id=user_id,
                trigger_type=trigger_type,
                variant_id=spec.variant_id,
                user_tier=tier,
                shown_at=current,
            )
            if not self.store.create_if_latest(interaction, latest.id if latest else None):
                return self._suppress(user_id, trigger_type, "concurrent")
        except VariantNotFound as exc:
            logger.warning(
                "[prompts] no variant, suppressing",
                extra={"user_id": user_id, "trigger_type": trigger_type, "event_type": "prompts.variant_not_found", "error_code": exc.code},
            )
            return self._suppress(user_id, trigger_type, "variant_not_found")
        except Exception:
            logger.error(
                "[prompts] evaluation failed, suppressing",
                exc_info=True,
                extra={"user_id": user_id, "trigger_type": trigger_type, "event_type": "prompts.error"},
            )
            return self._suppress(user_id, trigger_type, "error")

        prompts_total.inc(labels={"trigger": trigger_type, "action": "show"})
        logger.info(
            "[prompts] prompt shown",
            extra={
                "user_id": user_id,
                "trigger_type": trigger_type,
                "variant_id": spec.variant_id,
                "interaction_id": interaction.id,
                "event_type": "prompts.shown",
            },
        )
        return PromptResult(
            action="show",
            trigger_type=trigger_type,
            interaction_id=interaction.id,
            prompt=spec,
        )

    def evaluate_decision(
        self,
        user_id: str,
        user_tier: Union[Tier, str],
        decision: AccessDecision,
        *,
        variant_override: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PromptResult:
        """Evaluate the prompt that matches an access decision, if any."""
        trigger_type = self.trigger_for_decision(decision)
        if trigger_type is None:
            return PromptResult.suppress("no_trigger")
        usage = decision.usage
        return self.evaluate(
            user_id,
            trigger_type,
            user_tier,
            usage_alert=usage.level if usage else None,
            variant_override=variant_override,
            now=now,
        )

    def resolve_interaction(
        self,
        interaction_id: str,
        outcome: str,
        *,
        snooze_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PromptInteraction:
        """
        Record the user's response to a shown prompt.

        The first outcome wins; later reports return the stored interaction
        unchanged.

        Raises:
            ValidationError: unknown outcome or negative snooze
            NotFoundError: unknown interaction id
        """
        if outcome not in OUTCOMES:
            raise ValidationError(f"Unknown prompt outcome: {outcome!r}")
        if snooze_hours is not None and snooze_hours < 0:
            raise ValidationError("snooze_hours must not be negative")

        current = normalize_now(now)
        snooze_until = None
        if outcome == "snoozed":
            duration = self.default_snooze if snooze_hours is None else timedelta(hours=snooze_hours)
            snooze_until = current + duration

        stored = self.store.resolve_once(interaction_id, outcome, current, snooze_until)
        if stored is None:
            raise NotFoundError(f"Prompt interaction {interaction_id} not found")

        if stored.outcome == outcome and stored.resolved_at == current:
            prompts_total.inc(labels={"trigger": stored.trigger_type, "action": outcome})
            logger.info(
                "[prompts] interaction resolved",
                extra={
                    "user_id": stored.user_id,
                    "trigger_type": stored.trigger_type,
                    "interaction_id": stored.id,
                    "outcome": outcome,
                    "event_type": "prompts.resolved",
                },
            )
        else:
            logger.info(
                "[prompts] interaction already resolved, ignoring",
                extra={
                    "user_id": stored.user_id,
                    "interaction_id": stored.id,
                    "outcome": stored.outcome,
                    "event_type": "prompts.resolve_ignored",
                },
            )
        return stored

    def history(self, user_id: str) -> List[PromptInteraction]:
        return self.store.list_for_user(user_id)

    def disable_for_user(
        self,
        user_id: str,
        hours: Optional[float] = None,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PromptOptOut:
        """
        Stop all prompts for one user, for `hours` or until re-enabled.

        Replaces any earlier opt-out for the user.

        Raises:
            ValidationError: non-positive duration
        """
        if hours is not None and hours <= 0:
            raise ValidationError("hours must be positive")
        current = normalize_now(now)
        opt_out = PromptOptOut(
            user_id=user_id,
            disabled_at=current,
            disabled_until=current + timedelta(hours=hours) if hours is not None else None,
            reason=reason,
        )
        self.store.put_opt_out(opt_out)
        logger.info(
            "[prompts] prompts disabled for user",
            extra={
                "user_id": user_id,
                "disabled_until": opt_out.disabled_until,
                "reason": reason,
                "event_type": "prompts.user_disabled",
            },
        )
        return opt_out

    def enable_for_user(self, user_id: str) -> bool:
        removed = self.store.delete_opt_out(user_id)
        if removed:
            logger.info("[prompts] prompts re-enabled for user", extra={"user_id": user_id, "event_type": "prompts.user_enabled"})
        return removed

    def analytics(self, trigger_type: Optional[str] = None) -> List[VariantAnalytics]:
        """
        Per-variant outcome counts and click-through rate.

        Every configured variant is listed, including ones never shown, so
        A/B arms can be compared side by side. Variants removed from the
        catalog still report their recorded history.
        """
        counts = self.store.outcome_counts(trigger_type)
        rows: Dict[Tuple[str, str], Dict[str, int]] = {}
        for config_type in self.variants.trigger_types:
            if trigger_type is not None and config_type != trigger_type:
                continue
            for variant in self.variants.trigger(config_type).variants:
                rows[(config_type, variant.id)] = {}
        for (trigger, variant_id, outcome), total in counts.items():
            tally = rows.setdefault((trigger, variant_id), {})
            tally[outcome or "pending"] = tally.get(outcome or "pending", 0) + total

        result = []
        for (trigger, variant_id), tally in rows.items():
            impressions = sum(tally.values())
            clicked = tally.get("clicked", 0)
            result.append(
                VariantAnalytics(
                    trigger_type=trigger,
                    variant_id=variant_id,
                    impressions=impressions,
                    clicked=clicked,
                    dismissed=tally.get("dismissed", 0),
                    snoozed=tally.get("snoozed", 0),
                    pending=tally.get("pending", 0),
                    click_through_rate=round(clicked / impressions, 4) if impressions else 0.0,
                )
            )
        return result

    def _throttle_reason(
        self, latest: Optional[PromptInteraction], config: TriggerConfig, now: datetime
    ) -> Optional[str]:
        if latest is None:
            return None
        if latest.outcome == "snoozed":
            if latest.snooze_until and now < latest.snooze_until:
                return "snoozed"
            return None
        if latest.outcome == "dismissed":
            cooldown = self.dismiss_cooldown
            if config.cooldown_hours is not None:
                cooldown = timedelta(hours=config.cooldown_hours)
            if latest.resolved_at and now < latest.resolved_at + cooldown:
                return "cooldown"
            return None
        if latest.outcome is None and now < latest.shown_at + self.pending_ttl:
            return "pending"
        return None

    def _frequency_reason(self, user_id: str, config: TriggerConfig, now: datetime) -> Optional[str]:
        caps = config.frequency
        if not (caps.max_per_day or caps.max_per_week or caps.max_lifetime):
            return None
        shown = self.store.list_for_user(user_id, config.trigger_type)
        if caps.max_lifetime and len(shown) >= caps.max_lifetime:
            return "frequency_lifetime"
        if caps.max_per_week:
            week = sum(1 for item in shown if item.shown_at > now - timedelta(days=7))
            if week >= caps.max_per_week:
                return "frequency_week"
        if caps.max_per_day:
            day = sum(1 for item in shown if item.shown_at > now - timedelta(days=1))
            if day >= caps.max_per_day:
                return "frequency_day"
        return None

    def _suppress(self, user_id: str, trigger_type: str, reason: str) -> PromptResult:
        prompts_total.inc(labels={"trigger": trigger_type, "action": "suppress"})
        logger.info(
            "[prompts] prompt suppressed",
            extra={"user_id": user_id, "trigger_type": trigger_type, "reason": reason, "event_type": "prompts.suppressed"},
        )
        return PromptResult.suppress(reason, trigger_type)
