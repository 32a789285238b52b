"""Upgrade prompt endpoints."""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiergate.core.container import ServiceContainer, get_container
from tiergate.models.prompt import PromptResult
from tiergate.models.tier import Tier

router = APIRouter(prefix="/v1/prompts", tags=["prompts"])


class PromptEvaluateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str = Field(min_length=1)
    trigger_type: str = Field(min_length=1)
    user_tier: Optional[str] = None
    usage_alert: Optional[str] = None
    variant_override: Optional[str] = None


class ResolveRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    outcome: Literal["clicked", "dismissed", "snoozed"]
    snooze_hours: Optional[float] = Field(default=None, ge=0)


class OptOutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    hours: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


@router.post("/evaluate")
def evaluate_prompt(body: PromptEvaluateRequest, container: ServiceContainer = Depends(get_container)):
    if body.user_tier:
        tier = Tier.parse(body.user_tier)
    else:
        tier = container.directory.get_tier(body.user_id)
    if tier is None:
        result = PromptResult.suppress("unknown_user", body.trigger_type)
    else:
        result = container.prompts.evaluate(
            body.user_id,
            body.trigger_type,
            tier,
            usage_alert=body.usage_alert,
            variant_override=body.variant_override,
        )
    return result.model_dump(mode="json", by_alias=True)


@router.post("/interactions/{interaction_id}/resolve")
def resolve_interaction(
    interaction_id: str,
    body: ResolveRequest,
    container: ServiceContainer = Depends(get_container),
):
    interaction = container.prompts.resolve_interaction(
        interaction_id, body.outcome, snooze_hours=body.snooze_hours
    )
    return interaction.model_dump(mode="json", by_alias=True)


@router.get("/{user_id}/history")
def prompt_history(user_id: str, container: ServiceContainer = Depends(get_container)):
    interactions = container.prompts.history(user_id)
    return {
        "userId": user_id,
        "interactions": [item.model_dump(mode="json", by_alias=True) for item in interactions],
    }


@router.put("/{user_id}/opt-out")
def disable_prompts(user_id: str, body: OptOutRequest, container: ServiceContainer = Depends(get_container)):
    opt_out = container.prompts.disable_for_user(user_id, body.hours, body.reason)
    return opt_out.model_dump(mode="json", by_alias=True)


@router.delete("/{user_id}/opt-out")
def enable_prompts(user_id: str, container: ServiceContainer = Depends(get_container)):
    return {"userId": user_id, "removed": container.prompts.enable_for_user(user_id)}


@router.get("/analytics")
def prompt_analytics(
    trigger_type: Optional[str] = Query(default=None, alias="triggerType"),
    container: ServiceContainer = Depends(get_container),
):
    rows = container.prompts.analytics(trigger_type)
    return {"variants": [row.model_dump(mode="json", by_alias=True) for row in rows]}
