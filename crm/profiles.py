"""Sender profiles: batch lookup for the delivery loop, bootstrap on first use."""

from __future__ import annotations

import re
from typing import Dict, Iterable, Optional, Tuple

from crm.datastore import Datastore, eq, in_
from crm.models import AuthUser, Profile
from crm.runtime import get_logger

logger = get_logger("profiles")

_LOCAL_PART_SPLIT = re.compile(r"[._\-+]+")


def load_profiles(store: Datastore, owner_ids: Iterable[str]) -> Dict[str, Profile]:
    """One query for every owner in the batch."""
    ids = sorted({i for i in owner_ids if i})
    if not ids:
        return {}
    rows = store.profiles.select([in_("id", ids)])
    out: Dict[str, Profile] = {}
    for row in rows:
        profile = Profile.from_record(row)
        out[profile.id] = profile
    return out


def names_from_user(user: AuthUser) -> Tuple[str, str]:
    """Best guess at (first, last) from auth metadata, else from the email local part."""
    meta = user.metadata or {}
    first = str(meta.get("first_name") or "").strip()
    last = str(meta.get("last_name") or "").strip()
    if first or last:
        return first, last

    full = str(meta.get("full_name") or meta.get("name") or "").strip()
    if full:
        head, _, tail = full.partition(" ")
        return head, tail.strip()

    local = (user.email or "").split("@", 1)[0]
    parts = [p for p in _LOCAL_PART_SPLIT.split(local) if p]
    if not parts:
        return "", ""
    return parts[0].title(), " ".join(p.title() for p in parts[1:])


def get_profile(store: Datastore, user_id: str) -> Optional[Profile]:
    row = store.profiles.first([eq("id", user_id)])
    return Profile.from_record(row) if row else None


def ensure_profile(store: Datastore, user: AuthUser) -> Profile:
    """Return the stored profile, creating it from account data the first time."""
    existing = get_profile(store, user.id)
    if existing and (existing.first_name or existing.last_name):
        return existing

    first, last = names_from_user(user)
    store.profiles.upsert([{"id": user.id, "first_name": first, "last_name": last}], key_fields=["id"])
    logger.info("Bootstrapped sender profile for user=%s", user.id)
    return Profile(id=user.id, first_name=first or None, last_name=last or None)
