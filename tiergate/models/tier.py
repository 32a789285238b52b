"""
tiergate/models/tier.py

Subscription tiers and their total order.

free < user < team < enterprise < admin. The order is fixed at deployment
time; per-tier features and limits live in the tier catalog.
"""

from enum import Enum
from typing import Union

from tiergate.core.errors import UnknownTier


class Tier(str, Enum):
    FREE = "free"
    USER = "user"
    TEAM = "team"
    ENTERPRISE = "enterprise"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value: Union["Tier", str]) -> "Tier":
        """Resolve a tier name, raising UnknownTier for anything unconfigured."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise UnknownTier(f"Unknown tier: {value!r}")


TIER_ORDER = (Tier.FREE, Tier.USER, Tier.TEAM, Tier.ENTERPRISE, Tier.ADMIN)

# Tiers on custom contractual pricing; never offered discounts
DISCOUNT_EXEMPT_TIERS = frozenset({Tier.ENTERPRISE, Tier.ADMIN})
