"""Tier catalog endpoints."""
from fastapi import APIRouter, Depends

from tiergate.core.container import ServiceContainer, get_container

router = APIRouter(prefix="/v1/tiers", tags=["tiers"])


@router.get("")
def list_tiers(container: ServiceContainer = Depends(get_container)):
    """Tiers in ascending order with their features and monthly limits."""
    return {"tiers": container.catalog.describe()}


@router.get("/features/{feature_flag}")
def feature_minimum_tier(feature_flag: str, container: ServiceContainer = Depends(get_container)):
    tier = container.catalog.minimum_tier_for(feature_flag)
    return {"feature": feature_flag, "minimumTier": tier.value if tier else None}
