"""Access check endpoint: tier gating and usage enforcement for one request."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tiergate.core.container import ServiceContainer, get_container
from tiergate.core.errors import UnknownUsageType, ValidationError
from tiergate.models.access import FeatureRequirement
from tiergate.models.tier import Tier

router = APIRouter(prefix="/v1", tags=["access"])


class AccessCheckRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    required_tier: str
    usage_type: Optional[str] = None
    check_usage_limit: bool = False
    grace_period_days: Optional[float] = Field(default=None, ge=0)
    soft_limit: bool = False
    user_tier: Optional[str] = None
    include_prompt: bool = False

    @field_validator("user_id", "usage_type", "user_tier")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


@router.post("/access-check")
def access_check(body: AccessCheckRequest, container: ServiceContainer = Depends(get_container)):
    required = Tier.parse(body.required_tier)
    if body.check_usage_limit:
        if not body.usage_type:
            raise ValidationError("usageType is required when checkUsageLimit is true")
        if body.usage_type not in container.catalog.usage_types:
            raise UnknownUsageType(f"Unknown usage type: {body.usage_type!r}")

    requirement = FeatureRequirement(
        required_tier=required,
        usage_type=body.usage_type,
        check_usage_limit=body.check_usage_limit,
        grace_period_days=body.grace_period_days,
        soft_limit=body.soft_limit,
    )

    if body.user_tier:
        user_tier = Tier.parse(body.user_tier)
    elif body.user_id:
        user_tier = container.directory.get_tier(body.user_id)
    else:
        user_tier = None

    decision = container.engine.check_access(body.user_id, user_tier, requirement)
    payload = decision.to_payload()

    if body.include_prompt and body.user_id and user_tier is not None:
        result = container.prompts.evaluate_decision(body.user_id, user_tier, decision)
        payload["prompt"] = result.model_dump(mode="json", by_alias=True)

    return payload
