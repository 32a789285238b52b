"""Tier-change events from the identity/billing provider."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tiergate.core.container import ServiceContainer, get_container
from tiergate.models.tier import Tier

router = APIRouter(prefix="/v1/identity", tags=["identity"])


class TierChangeRequest(BaseModel):
    tier: str


@router.put("/{user_id}/tier")
def set_user_tier(user_id: str, body: TierChangeRequest, container: ServiceContainer = Depends(get_container)):
    tier = container.directory.set_tier(user_id, Tier.parse(body.tier))
    return {"userId": user_id, "tier": tier.value}


@router.get("/{user_id}/tier")
def get_user_tier(user_id: str, container: ServiceContainer = Depends(get_container)):
    tier = container.directory.get_tier(user_id)
    return {"userId": user_id, "tier": tier.value if tier else None}
