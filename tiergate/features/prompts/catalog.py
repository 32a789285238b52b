"""
tiergate/features/prompts/catalog.py

Upgrade prompt variant catalog.

Handles:
- Built-in trigger configs (usage limit, locked feature, grace period, usage warning)
- Loading configs from JSON with load-time validation
- Candidate filtering by targeted/excluded tier and usage alert level
- Deterministic weighted bucketing of users into variants
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from tiergate.core.errors import MisconfiguredCatalog
from tiergate.models.prompt import (
    TRIGGER_FEATURE_LOCKED,
    TRIGGER_GRACE_PERIOD,
    TRIGGER_USAGE_LIMIT,
    TRIGGER_USAGE_WARNING,
    PromptVariant,
    TriggerConfig,
)
from tiergate.models.tier import DISCOUNT_EXEMPT_TIERS, Tier


logger = logging.getLogger("tiergate")


DEFAULT_TRIGGERS: List[Dict[str, Any]] = [
    {
        "trigger_type": TRIGGER_USAGE_LIMIT,
        "target_tiers": ["free", "user", "team"],
        "frequency": {"max_per_day": 2, "max_per_week": 5, "max_lifetime": 50},
        "variants": [
            {
                "id": "usage_limit_urgent",
                "weight": 40,
                "style": "urgent",
                "position": "modal_center",
                "title": "You've Reached Your Limit!",
                "message": "Upgrade to continue analyzing websites and unlock more scans.",
                "cta_text": "Upgrade Now",
                "secondary_cta_text": "Maybe Later",
                "discount_percentage": 20,
            },
            {
                "id": "usage_limit_friendly",
                "weight": 60,
                "style": "friendly",
                "position": "slide_up",
                "title": "Ready for More?",
                "message": "You're making great progress! Upgrade and keep the momentum going.",
                "cta_text": "Let's Upgrade",
                "secondary_cta_text": "Not Now",
            },
        ],
    },
    {
        "trigger_type": TRIGGER_FEATURE_LOCKED,
        "target_tiers": ["free", "user", "team"],
        "frequency": {"max_per_day": 3, "max_per_week": 10},
        "variants": [
            {
                "id": "feature_tooltip",
                "weight": 100,
                "style": "professional",
                "position": "tooltip",
                "title": "Unlock This Feature",
                "message": "Get detailed performance insights and historical data on a higher plan.",
                "cta_text": "See Plans",
            },
        ],
    },
    {
        "trigger_type": TRIGGER_GRACE_PERIOD,
        "target_tiers": ["free", "user", "team"],
        "frequency": {"max_per_day": 2},
        "variants": [
            {
                "id": "grace_period_countdown",
                "weight": 100,
                "style": "urgent",
                "position": "banner_top",
                "title": "You're Over Your Limit",
                "message": "We've kept things running for now. Upgrade before your grace period ends.",
                "cta_text": "Upgrade Now",
                "secondary_cta_text": "Remind Me Later",
                "urgency_timer": True,
            },
        ],
    },
    {
        "trigger_type": TRIGGER_USAGE_WARNING,
        "target_tiers": ["free", "user", "team"],
        "frequency": {"max_per_day": 1, "max_per_week": 3},
        "variants": [
            {
                "id": "usage_warning_heads_up",
                "weight": 100,
                "style": "friendly",
                "position": "banner_bottom",
                "title": "Heads Up",
                "message": "You've used most of this month's allowance.",
                "cta_text": "View Plans",
                "secondary_cta_text": "Dismiss",
                "alert_levels": ["warning"],
            },
            {
                "id": "usage_warning_critical",
                "weight": 100,
                "style": "urgent",
                "position": "banner_top",
                "title": "Almost Out",
                "message": "You're about to hit this month's limit. Upgrade to avoid interruptions.",
                "cta_text": "Upgrade Now",
                "secondary_cta_text": "Not Now",
                "alert_levels": ["critical"],
            },
        ],
    },
]


def _reachable_tiers(config: TriggerConfig, variant: PromptVariant) -> List[Tier]:
    tiers = variant.tiers or config.target_tiers
    return [tier for tier in tiers if config.targets(tier)]


def bucket_variant(seed: str, variants: Sequence[PromptVariant]) -> Optional[PromptVariant]:
    """
    Deterministically map a seed onto a weighted variant list.

    The same seed always lands in the same variant as long as the variant
    list and weights are unchanged.
    """
    if not variants:
        return None
    total = sum(variant.weight for variant in variants)
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    point = int(digest[:16], 16) % total
    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if point < cumulative:
            return variant
    return variants[-1]


class VariantCatalog:
    """Validated trigger configs keyed by trigger type."""

    def __init__(self, triggers: Sequence[TriggerConfig]):
        self._triggers: Dict[str, TriggerConfig] = {}
        problems: List[str] = []
        seen_variant_ids = set()

        for config in triggers:
            if config.trigger_type in self._triggers:
                problems.append(f"trigger {config.trigger_type!r} is declared more than once")
                continue
            self._triggers[config.trigger_type] = config
            if not config.variants:
                problems.append(f"trigger {config.trigger_type!r} has no variants")
            for variant in config.variants:
                if variant.id in seen_variant_ids:
                    problems.append(f"variant id {variant.id!r} is not unique")
                seen_variant_ids.add(variant.id)
                if variant.discount_percentage:
                    exposed = sorted(
                        tier.value for tier in _reachable_tiers(config, variant) if tier in DISCOUNT_EXEMPT_TIERS
                    )
                    if exposed:
                        problems.append(
                            f"discount variant {variant.id!r} is reachable by {', '.join(exposed)}"
                        )

        if problems:
            raise MisconfiguredCatalog("Prompt catalog failed validation: " + "; ".join(problems))

    @property
    def trigger_types(self) -> List[str]:
        return list(self._triggers)

    def trigger(self, trigger_type: str) -> Optional[TriggerConfig]:
        return self._triggers.get(trigger_type)

    def candidates(self, trigger_type: str, tier: Tier, alert_level: Optional[str] = None) -> List[PromptVariant]:
        """Variants that may be shown to `tier` for this trigger, in declared order."""
        config = self._triggers.get(trigger_type)
        if config is None or not config.is_active or not config.targets(tier):
            return []
        result = []
        for variant in config.variants:
            if variant.tiers and tier not in variant.tiers:
                continue
            if variant.alert_levels and alert_level not in variant.alert_levels:
                continue
            result.append(variant)
        return result


def load_variant_catalog(raw: Any) -> VariantCatalog:
    """
    Build a VariantCatalog from `{"triggers": [...]}` or a bare list.

    Raises:
        MisconfiguredCatalog: malformed configs or a broken invariant
    """
    entries = raw.get("triggers") if isinstance(raw, Mapping) else raw
    if not isinstance(entries, list):
        raise MisconfiguredCatalog("Prompt catalog must be a list of trigger configs")
    try:
        configs = [TriggerConfig.model_validate(entry) for entry in entries]
    except PydanticValidationError as exc:
        raise MisconfiguredCatalog(f"Prompt catalog is malformed: {exc.errors()[0]['msg']}") from exc
    catalog = VariantCatalog(configs)
    logger.info(
        "[prompts] variant catalog loaded",
        extra={"event_type": "prompts.catalog_loaded", "trigger_type": ",".join(catalog.trigger_types)},
    )
    return catalog


def load_variant_catalog_file(path: str) -> VariantCatalog:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise MisconfiguredCatalog(f"Could not read prompt catalog {path}: {exc}") from exc
    return load_variant_catalog(raw)


def default_variant_catalog() -> VariantCatalog:
    return load_variant_catalog(DEFAULT_TRIGGERS)
