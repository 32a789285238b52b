"""
tiergate/models/prompt.py

Upgrade prompt models: variant catalog entries, the rendered prompt and the
interaction record used for anti-annoyance throttling.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tiergate.models.tier import Tier
from tiergate.models.usage import UsageLevel


PromptOutcome = Literal["clicked", "dismissed", "snoozed"]
PromptStyle = Literal["urgent", "friendly", "professional", "playful"]
PromptPosition = Literal[
    "banner_top",
    "banner_bottom",
    "modal_center",
    "slide_up",
    "tooltip",
    "inline",
    "fullscreen",
]

# Trigger types produced from access decisions
TRIGGER_FEATURE_LOCKED = "feature_locked"
TRIGGER_USAGE_LIMIT = "usage_limit"
TRIGGER_GRACE_PERIOD = "grace_period"
TRIGGER_USAGE_WARNING = "usage_warning"


class PromptVariant(BaseModel):
    """One presentation of an upgrade prompt.

    `tiers` and `alert_levels` narrow where the variant applies; empty means
    the trigger's own targeting decides.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    weight: int = Field(default=1, gt=0)
    title: str
    message: str
    cta_text: str
    secondary_cta_text: Optional[str] = None
    style: PromptStyle = "friendly"
    position: PromptPosition = "modal_center"
    discount_percentage: Optional[int] = Field(default=None, gt=0, le=100)
    urgency_timer: bool = False
    tiers: List[Tier] = Field(default_factory=list)
    alert_levels: List[UsageLevel] = Field(default_factory=list)


class FrequencyCap(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_per_day: Optional[int] = Field(default=None, gt=0)
    max_per_week: Optional[int] = Field(default=None, gt=0)
    max_lifetime: Optional[int] = Field(default=None, gt=0)


class HourWindow(BaseModel):
    """Inclusive UTC hour range; start > end wraps past midnight."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=23)

    def contains(self, hour: int) -> bool:
        if self.start <= self.end:
            return self.start <= hour <= self.end
        return hour >= self.start or hour <= self.end


class TriggerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    trigger_type: str
    target_tiers: List[Tier]
    exclude_tiers: List[Tier] = Field(default_factory=list)
    variants: List[PromptVariant]
    cooldown_hours: Optional[float] = Field(default=None, ge=0)
    frequency: FrequencyCap = Field(default_factory=FrequencyCap)
    # Schedule, evaluated in UTC; days are 0 = Sunday .. 6 = Saturday
    active_hours: Optional[HourWindow] = None
    active_days: List[int] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("active_days")
    @classmethod
    def _check_days(cls, days: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in days):
            raise ValueError("active_days must be between 0 (Sunday) and 6 (Saturday)")
        return days

    def targets(self, tier: Tier) -> bool:
        return tier in self.target_tiers and tier not in self.exclude_tiers

    def is_scheduled(self, now: datetime) -> bool:
        if self.active_hours is not None and not self.active_hours.contains(now.hour):
            return False
        if self.active_days and now.isoweekday() % 7 not in self.active_days:
            return False
        return True


class PromptSpec(BaseModel):
    """Rendered prompt handed to the UI layer."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    variant_id: str
    trigger_type: str
    title: str
    message: str
    cta_text: str
    secondary_cta_text: Optional[str] = None
    style: PromptStyle
    position: PromptPosition
    discount_percentage: Optional[int] = None
    urgency_timer: bool = False


class PromptInteraction(BaseModel):
    """
    Created when a prompt is shown; resolved once when the user responds.

    Superseded by the next interaction for the same (user, trigger).
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    trigger_type: str
    variant_id: str
    shown_at: datetime
    user_tier: Optional[Tier] = None
    outcome: Optional[PromptOutcome] = None
    resolved_at: Optional[datetime] = None
    snooze_until: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not None


class PromptResult(BaseModel):
    """Outcome of a prompt evaluation: show a prompt or suppress."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    action: Literal["show", "suppress"]
    reason: Optional[str] = None
    trigger_type: Optional[str] = None
    interaction_id: Optional[str] = None
    prompt: Optional[PromptSpec] = None

    @property
    def shown(self) -> bool:
        return self.action == "show"

    @classmethod
    def suppress(cls, reason: str, trigger_type: Optional[str] = None) -> "PromptResult":
        return cls(action="suppress", reason=reason, trigger_type=trigger_type)


class PromptOptOut(BaseModel):
    """A user's request to stop seeing upgrade prompts; no end date means until re-enabled."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    disabled_at: datetime
    disabled_until: Optional[datetime] = None
    reason: Optional[str] = None

    def active(self, now: datetime) -> bool:
        return self.disabled_until is None or now < self.disabled_until


class VariantAnalytics(BaseModel):
    """Outcome counts for one variant of a trigger."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    trigger_type: str
    variant_id: str
    impressions: int = 0
    clicked: int = 0
    dismissed: int = 0
    snoozed: int = 0
    pending: int = 0
    click_through_rate: float = 0.0
