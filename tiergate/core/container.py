"""
Service wiring.

Builds the catalog, stores and services once at startup and hands them to the
API through app.state. Storage is SQL when DATABASE_URL is configured and
in-memory otherwise.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from starlette.requests import Request

from tiergate.core.config import Settings, settings as default_settings
from tiergate.core.database import create_all_tables, get_database_url, init_engine
from tiergate.features.access.service import AccessDecisionEngine
from tiergate.features.catalog.service import TierCatalog, default_catalog, load_catalog_file
from tiergate.features.identity.service import InMemoryTierDirectory, SqlTierDirectory, TierDirectory
from tiergate.features.prompts.catalog import VariantCatalog, default_variant_catalog, load_variant_catalog_file
from tiergate.features.prompts.service import PromptOrchestrator
from tiergate.features.prompts.store import InMemoryInteractionStore, SqlInteractionStore
from tiergate.features.usage.service import QuotaTracker
from tiergate.features.usage.store import CounterStore, InMemoryCounterStore, SqlCounterStore


logger = logging.getLogger("tiergate")


@dataclass
class ServiceContainer:
    catalog: TierCatalog
    counters: CounterStore
    tracker: QuotaTracker
    engine: AccessDecisionEngine
    directory: TierDirectory
    variants: VariantCatalog
    prompts: PromptOrchestrator
    storage: str = "memory"


def build_container(cfg: Optional[Settings] = None, *, database_url: Optional[str] = None) -> ServiceContainer:
    """
    Assemble services from settings.

    Raises:
        MisconfiguredCatalog: if either catalog fails validation
    """
    cfg = cfg or default_settings
    catalog = load_catalog_file(cfg.TIER_CATALOG_PATH) if cfg.TIER_CATALOG_PATH else default_catalog()
    variants = (
        load_variant_catalog_file(cfg.PROMPT_CATALOG_PATH) if cfg.PROMPT_CATALOG_PATH else default_variant_catalog()
    )

    url = database_url or get_database_url(cfg)
    if url:
        init_engine(url)
        create_all_tables()
        counters = SqlCounterStore()
        directory = SqlTierDirectory()
        interactions = SqlInteractionStore()
        storage = "sql"
    else:
        counters = InMemoryCounterStore()
        directory = InMemoryTierDirectory()
        interactions = InMemoryInteractionStore()
        storage = "memory"

    tracker = QuotaTracker(
        counters,
        warning_threshold=cfg.USAGE_WARNING_THRESHOLD,
        critical_threshold=cfg.USAGE_CRITICAL_THRESHOLD,
    )
    prompts = PromptOrchestrator(
        variants,
        interactions,
        dismiss_cooldown=timedelta(hours=cfg.PROMPT_DISMISS_COOLDOWN_HOURS),
        pending_ttl=timedelta(minutes=cfg.PROMPT_PENDING_TTL_MINUTES),
        default_snooze=timedelta(hours=cfg.PROMPT_DEFAULT_SNOOZE_HOURS),
        enabled=cfg.PROMPTS_ENABLED,
    )

    logger.info("[container] services ready", extra={"event_type": "container.ready", "storage": storage})
    return ServiceContainer(
        catalog=catalog,
        counters=counters,
        tracker=tracker,
        engine=AccessDecisionEngine(catalog, tracker),
        directory=directory,
        variants=variants,
        prompts=prompts,
        storage=storage,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container built at startup."""
    return request.app.state.container
