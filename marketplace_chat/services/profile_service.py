from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_chat.core.settings import get_settings
from marketplace_chat.models import Profile

logger = logging.getLogger(__name__)


def fetch_profiles_by_ids(db: Session, user_ids: Iterable[str]) -> dict[str, Profile]:
    normalized_ids = [user_id.strip() for user_id in user_ids if isinstance(user_id, str) and user_id.strip()]
    if not normalized_ids:
        return {}

    deduped_ids = list(dict.fromkeys(normalized_ids))
    rows = db.scalars(select(Profile).where(Profile.id.in_(deduped_ids))).all()
    logger.debug("Fetched profiles requested=%s returned=%s", len(deduped_ids), len(rows))
    return {row.id: row for row in rows}


def missing_profile_ids(db: Session, user_ids: Iterable[str]) -> list[str]:
    requested = list(dict.fromkeys(user_ids))
    found = fetch_profiles_by_ids(db, requested)
    return [user_id for user_id in requested if user_id not in found]


def display_name(profile: Profile | None) -> str:
    if profile is not None and profile.full_name and profile.full_name.strip():
        return profile.full_name.strip()
    return get_settings().unknown_user_display_name


def serialize_profile_public(user_id: str, profile: Profile | None) -> dict[str, object]:
    return {"id": user_id, "display_name": display_name(profile)}
