"""Usage status and alert endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from tiergate.core.container import ServiceContainer, get_container
from tiergate.core.errors import NotFoundError, UnknownUsageType
from tiergate.models.tier import Tier

router = APIRouter(prefix="/v1/usage", tags=["usage"])


def _tier_for(container: ServiceContainer, user_id: str, tier: Optional[str]) -> Tier:
    if tier:
        return Tier.parse(tier)
    resolved = container.directory.get_tier(user_id)
    if resolved is None:
        raise NotFoundError(f"No tier on record for user {user_id}")
    return resolved


@router.get("/{user_id}/alerts")
def usage_alerts(
    user_id: str,
    tier: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
):
    user_tier = _tier_for(container, user_id, tier)
    alerts = container.tracker.usage_alerts(user_id, user_tier, container.catalog)
    return {
        "userId": user_id,
        "tier": user_tier.value,
        "alerts": [alert.model_dump(mode="json", by_alias=True) for alert in alerts],
    }


@router.get("/{user_id}/{usage_type}")
def usage_status(
    user_id: str,
    usage_type: str,
    tier: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
):
    if usage_type not in container.catalog.usage_types:
        raise UnknownUsageType(f"Unknown usage type: {usage_type!r}")
    user_tier = _tier_for(container, user_id, tier)
    limit = container.catalog.limit_for(user_tier, usage_type)
    status = container.tracker.evaluate(user_id, usage_type, limit)
    return {
        "userId": user_id,
        "tier": user_tier.value,
        "usage": status.model_dump(mode="json", by_alias=True),
    }
