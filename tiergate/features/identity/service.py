"""
tiergate/features/identity/service.py

Tier directory: point-in-time tier facts mirrored from the identity/billing
provider. Tier-change events overwrite the stored tier; decisions always read
the latest value.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Optional, Protocol, Union

from sqlalchemy import insert, select, update

from tiergate.core.database import get_db_session, user_tiers
from tiergate.core.timeutil import normalize_now
from tiergate.models.tier import Tier


logger = logging.getLogger("tiergate")


class TierDirectory(Protocol):
    def get_tier(self, user_id: str) -> Optional[Tier]:
        ...

    def set_tier(self, user_id: str, tier: Union[Tier, str], *, at: Optional[datetime] = None) -> Tier:
        ...


def _log_change(user_id: str, previous: Optional[Tier], tier: Tier) -> None:
    logger.info(
        "[identity] tier changed",
        extra={
            "user_id": user_id,
            "tier": tier.value,
            "event_type": "identity.tier_changed",
            "previous_tier": previous.value if previous else None,
        },
    )


class InMemoryTierDirectory:
    def __init__(self):
        self._tiers: Dict[str, Tier] = {}
        self._lock = threading.Lock()

    def get_tier(self, user_id: str) -> Optional[Tier]:
        with self._lock:
            return self._tiers.get(user_id)

    def set_tier(self, user_id: str, tier: Union[Tier, str], *, at: Optional[datetime] = None) -> Tier:
        resolved = Tier.parse(tier)
        with self._lock:
            previous = self._tiers.get(user_id)
            self._tiers[user_id] = resolved
        _log_change(user_id, previous, resolved)
        return resolved


class SqlTierDirectory:
    """Tier facts in the user_tiers table."""

    def get_tier(self, user_id: str) -> Optional[Tier]:
        with get_db_session() as session:
            row = session.execute(
                select(user_tiers.c.tier).where(user_tiers.c.user_id == user_id)
            ).first()
        if row is None:
            return None
        return Tier.parse(row.tier)

    def set_tier(self, user_id: str, tier: Union[Tier, str], *, at: Optional[datetime] = None) -> Tier:
        resolved = Tier.parse(tier)
        changed_at = normalize_now(at)
        with get_db_session() as session:
            row = session.execute(
                select(user_tiers.c.tier).where(user_tiers.c.user_id == user_id)
            ).first()
            if row is None:
                session.execute(
                    insert(user_tiers).values(user_id=user_id, tier=resolved.value, updated_at=changed_at)
                )
                previous = None
            else:
                session.execute(
                    update(user_tiers)
                    .where(user_tiers.c.user_id == user_id)
                    .values(tier=resolved.value, updated_at=changed_at)
                )
                previous = Tier.parse(row.tier)
        _log_change(user_id, previous, resolved)
        return resolved
