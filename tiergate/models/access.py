"""
tiergate/models/access.py

Feature requirements and access decisions.

A FeatureRequirement is declared by the caller per gated feature and is not
persisted. An AccessDecision is computed fresh for every evaluation.
"""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from tiergate.models.tier import Tier
from tiergate.models.usage import UsageStatus


AccessReason = Literal["tier", "usage_limit", "grace_period", "fallback"]


class FeatureRequirement(BaseModel):
    """What a caller wants to do.

    Examples:
    - FeatureRequirement(required_tier="user") gates a paid feature.
    - FeatureRequirement(required_tier="free", usage_type="monthly_scan",
      check_usage_limit=True, grace_period_days=3) gates scans on quota.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    required_tier: Tier
    usage_type: Optional[str] = None
    check_usage_limit: bool = False
    grace_period_days: Optional[float] = Field(default=None, ge=0)
    soft_limit: bool = False

    @model_validator(mode="after")
    def _usage_type_required_for_limits(self) -> "FeatureRequirement":
        if self.check_usage_limit and not self.usage_type:
            raise ValueError("usage_type is required when check_usage_limit is true")
        return self


class AccessDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[AccessReason] = None
    details: Optional[Union[UsageStatus, Dict[str, Any]]] = None

    @property
    def usage(self) -> Optional[UsageStatus]:
        if isinstance(self.details, UsageStatus):
            return self.details
        if isinstance(self.details, dict) and isinstance(self.details.get("usage"), UsageStatus):
            return self.details["usage"]
        return None

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape: {allowed, reason, details} with camelCase usage fields."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def allow(cls, reason: Optional[AccessReason] = None, details=None) -> "AccessDecision":
        return cls(allowed=True, reason=reason, details=details)

    @classmethod
    def deny(cls, reason: AccessReason, details=None) -> "AccessDecision":
        return cls(allowed=False, reason=reason, details=details)

    @classmethod
    def fallback(cls, **extra: Any) -> "AccessDecision":
        details: Dict[str, Any] = {"fallbackAccess": True}
        details.update(extra)
        return cls(allowed=True, reason="fallback", details=details)
