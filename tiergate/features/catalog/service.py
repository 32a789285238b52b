"""
tiergate/features/catalog/service.py

Tier catalog: ordered tiers, per-tier feature flags and monthly limits.

Handles:
- Catalog loading (built-in defaults or a JSON file)
- Load-time validation (fatal): complete declarations, monotonic flags and limits
- Tier comparison, feature lookup and limit lookup
"""

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from tiergate.core.errors import MisconfiguredCatalog, UnknownTier, UnknownUsageType
from tiergate.models.tier import TIER_ORDER, Tier
from tiergate.models.usage import UsageLimit


logger = logging.getLogger("tiergate")

TierLike = Union[Tier, str]


# Default catalog, mirrors the published plans
DEFAULT_CATALOG: Dict[str, Any] = {
    "tiers": {
        "free": {
            "name": "Free",
            "features": [
                "basic_reports",
                "basic_debugging",
                "community_support",
            ],
            "limits": {
                "monthly_scan": 10,
                "report_generation": 10,
                "data_export": 3,
                "team_invite": 0,
            },
        },
        "user": {
            "name": "Pro",
            "features": [
                "basic_reports",
                "basic_debugging",
                "community_support",
                "advanced_reports",
                "advanced_debugging",
                "performance_insights",
                "api_access",
                "priority_support",
            ],
            "limits": {
                "monthly_scan": 100,
                "report_generation": 50,
                "data_export": 25,
                "team_invite": 0,
            },
        },
        "team": {
            "name": "Team",
            "features": [
                "basic_reports",
                "basic_debugging",
                "community_support",
                "advanced_reports",
                "advanced_debugging",
                "performance_insights",
                "api_access",
                "priority_support",
                "team_collaboration",
                "advanced_analytics",
                "custom_integrations",
                "sso",
            ],
            "limits": {
                "monthly_scan": 500,
                "report_generation": None,
                "data_export": None,
                "team_invite": 5,
            },
        },
        "enterprise": {
            "name": "Enterprise",
            "features": [
                "basic_reports",
                "basic_debugging",
                "community_support",
                "advanced_reports",
                "advanced_debugging",
                "performance_insights",
                "api_access",
                "priority_support",
                "team_collaboration",
                "advanced_analytics",
                "custom_integrations",
                "sso",
                "on_premise",
                "sla_guarantees",
                "dedicated_support",
            ],
            "limits": {
                "monthly_scan": None,
                "report_generation": None,
                "data_export": None,
                "team_invite": None,
            },
        },
        "admin": {
            "name": "Admin",
            "features": [
                "basic_reports",
                "basic_debugging",
                "community_support",
                "advanced_reports",
                "advanced_debugging",
                "performance_insights",
                "api_access",
                "priority_support",
                "team_collaboration",
                "advanced_analytics",
                "custom_integrations",
                "sso",
                "on_premise",
                "sla_guarantees",
                "dedicated_support",
                "admin_console",
            ],
            "limits": {
                "monthly_scan": None,
                "report_generation": None,
                "data_export": None,
                "team_invite": None,
            },
        },
    }
}


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    name: str
    features: FrozenSet[str]
    limits: Mapping[str, Optional[int]]


def _limit_le(lower: Optional[int], higher: Optional[int]) -> bool:
    """Limit ordering where None (unlimited) dominates any finite value."""
    if higher is None:
        return True
    if lower is None:
        return False
    return lower <= higher


class TierCatalog:
    """Immutable, validated view of tiers, features and limits.

    Construction validates the whole catalog; an instance is always
    consistent, so lookups never re-check invariants.
    """

    def __init__(self, definitions: Mapping[Tier, TierDefinition]):
        self._definitions: Dict[Tier, TierDefinition] = dict(definitions)
        self._usage_types: Tuple[str, ...] = self._validate()

    def _validate(self) -> Tuple[str, ...]:
        problems: List[str] = []

        missing = [tier.value for tier in TIER_ORDER if tier not in self._definitions]
        if missing:
            raise MisconfiguredCatalog(f"Tier catalog is missing tiers: {', '.join(missing)}")

        usage_types = set()
        for definition in self._definitions.values():
            usage_types.update(definition.limits.keys())

        for tier in TIER_ORDER:
            definition = self._definitions[tier]
            undeclared = sorted(usage_types - set(definition.limits.keys()))
            if undeclared:
                problems.append(f"{tier.value} does not declare limits for {', '.join(undeclared)}")
            for usage_type, limit in definition.limits.items():
                if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
                    problems.append(f"{tier.value}.{usage_type} limit must be a non-negative integer or null")

        if problems:
            raise MisconfiguredCatalog("Tier catalog failed validation: " + "; ".join(problems))

        for lower, higher in zip(TIER_ORDER, TIER_ORDER[1:]):
            low_def = self._definitions[lower]
            high_def = self._definitions[higher]
            dropped = sorted(low_def.features - high_def.features)
            if dropped:
                problems.append(
                    f"features {', '.join(dropped)} enabled at {lower.value} but not at {higher.value}"
                )
            for usage_type in sorted(usage_types):
                low_limit = low_def.limits[usage_type]
                high_limit = high_def.limits[usage_type]
                if not _limit_le(low_limit, high_limit):
                    problems.append(
                        f"{usage_type} limit at {lower.value} ({low_limit}) exceeds {higher.value} ({high_limit})"
                    )

        if problems:
            raise MisconfiguredCatalog("Tier catalog failed validation: " + "; ".join(problems))

        return tuple(sorted(usage_types))

    # Ordering

    @property
    def tiers(self) -> Tuple[Tier, ...]:
        return TIER_ORDER

    def resolve(self, tier: TierLike) -> Tier:
        resolved = Tier.parse(tier)
        if resolved not in self._definitions:
            raise UnknownTier(f"Tier {resolved.value!r} is not configured")
        return resolved

    def compare_tiers(self, a: TierLike, b: TierLike) -> int:
        """Total order comparison: -1, 0 or 1."""
        rank_a = self.resolve(a).rank
        rank_b = self.resolve(b).rank
        return (rank_a > rank_b) - (rank_a < rank_b)

    def at_least(self, tier: TierLike, required: TierLike) -> bool:
        return self.compare_tiers(tier, required) >= 0

    # Features

    def has_feature(self, tier: TierLike, feature_flag: str) -> bool:
        # Flags are monotonic, so the tier's own set is authoritative
        return feature_flag in self._definitions[self.resolve(tier)].features

    def features_for(self, tier: TierLike) -> FrozenSet[str]:
        return self._definitions[self.resolve(tier)].features

    def minimum_tier_for(self, feature_flag: str) -> Optional[Tier]:
        """Cheapest tier that enables the flag, or None if no tier does."""
        for tier in TIER_ORDER:
            if feature_flag in self._definitions[tier].features:
                return tier
        return None

    # Limits

    @property
    def usage_types(self) -> Tuple[str, ...]:
        return self._usage_types

    def limit_for(self, tier: TierLike, usage_type: str) -> Optional[int]:
        """Monthly limit for the usage type; None means unlimited."""
        limits = self._definitions[self.resolve(tier)].limits
        if usage_type not in limits:
            raise UnknownUsageType(f"Unknown usage type: {usage_type!r}")
        return limits[usage_type]

    def limits_for(self, tier: TierLike) -> List[UsageLimit]:
        resolved = self.resolve(tier)
        limits = self._definitions[resolved].limits
        return [
            UsageLimit(tier=resolved, usage_type=usage_type, monthly_limit=limits[usage_type])
            for usage_type in self._usage_types
        ]

    def display_name(self, tier: TierLike) -> str:
        return self._definitions[self.resolve(tier)].name

    def describe(self) -> List[Dict[str, Any]]:
        """Ordered, JSON-friendly view of the catalog."""
        return [
            {
                "tier": tier.value,
                "name": self.display_name(tier),
                "rank": tier.rank,
                "features": sorted(self._definitions[tier].features),
                "limits": {usage_type: self._definitions[tier].limits[usage_type] for usage_type in self._usage_types},
            }
            for tier in TIER_ORDER
        ]


def load_catalog(raw: Mapping[str, Any]) -> TierCatalog:
    """
    Build a validated TierCatalog from a mapping.

    Expected shape:
        {"tiers": {"free": {"name": ..., "features": [...], "limits": {...}}, ...}}

    Raises:
        MisconfiguredCatalog: on any structural or monotonicity problem
    """
    tiers = raw.get("tiers") if isinstance(raw, Mapping) else None
    if not isinstance(tiers, Mapping) or not tiers:
        raise MisconfiguredCatalog("Tier catalog must define a non-empty 'tiers' mapping")

    definitions: Dict[Tier, TierDefinition] = {}
    for name, body in tiers.items():
        try:
            tier = Tier.parse(name)
        except UnknownTier as exc:
            raise MisconfiguredCatalog(f"Tier catalog declares an unknown tier: {name!r}") from exc
        if tier in definitions:
            raise MisconfiguredCatalog(f"Tier {tier.value!r} is declared more than once")
        if not isinstance(body, Mapping):
            raise MisconfiguredCatalog(f"Tier {tier.value!r} must be a mapping")

        features = body.get("features", [])
        limits = body.get("limits", {})
        if not isinstance(features, (list, tuple, set, frozenset)) or not all(isinstance(f, str) for f in features):
            raise MisconfiguredCatalog(f"Tier {tier.value!r} features must be a list of strings")
        if not isinstance(limits, Mapping):
            raise MisconfiguredCatalog(f"Tier {tier.value!r} limits must be a mapping")

        definitions[tier] = TierDefinition(
            tier=tier,
            name=str(body.get("name") or tier.value.title()),
            features=frozenset(features),
            limits=MappingProxyType(dict(limits)),
        )

    catalog = TierCatalog(definitions)
    logger.info(
        "[catalog] tier catalog loaded",
        extra={"event_type": "catalog.loaded", "usage_types": ",".join(catalog.usage_types)},
    )
    return catalog


def load_catalog_file(path: str) -> TierCatalog:
    """Load and validate a JSON tier catalog file."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise MisconfiguredCatalog(f"Could not read tier catalog {path}: {exc}") from exc
    return load_catalog(raw)


def default_catalog() -> TierCatalog:
    return load_catalog(DEFAULT_CATALOG)
