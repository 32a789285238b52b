"""
tiergate/models/usage.py

Usage accounting models.

Counters are owned by the scan/audit execution service; the engine only
reads them (plus the grace-period anchor on the current period).
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tiergate.models.tier import Tier


UsageLevel = Literal["ok", "warning", "critical", "unknown"]


class UsageCounter(BaseModel):
    """
    One counter per (user, usage type, billing period).

    Usage types (default catalog):
    - monthly_scan: website scan/triage session
    - report_generation: generated triage report
    - data_export: exported report data
    - team_invite: invited team member
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    usage_type: str
    period_start: datetime
    count: int = 0
    limit_reached_at: Optional[datetime] = None


class UsageLimit(BaseModel):
    """Monthly limit for a tier; None = unlimited."""
    model_config = ConfigDict(frozen=True)

    tier: Tier
    usage_type: str
    monthly_limit: Optional[int] = None


class UsageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    used: int
    period_start: datetime
    limit_reached_at: Optional[datetime] = None


class UsageStatus(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    usage_type: str
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    percentage_used: float = 0.0
    level: UsageLevel = "ok"
    exhausted: bool = False
    period_start: Optional[datetime] = None
    limit_reached_at: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        return self.limit is None and self.level != "unknown"


class UsageAlert(BaseModel):
    """Summary of a usage type at or beyond the warning threshold."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    usage_type: str
    level: Literal["warning", "critical", "exceeded"]
    used: int
    limit: int
    percentage_used: float
    upgrade_required: bool = False
