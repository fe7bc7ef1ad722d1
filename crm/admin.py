"""
Admin account purge.

Every step runs even when an earlier one fails; the caller gets a per-step
``cleanup`` report. The auth account goes last.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List

from crm.auth import AuthClient
from crm.datastore import Datastore, eq
from crm.errors import CRMError, DependencyError
from crm.runtime import get_logger

logger = get_logger("admin")


def _step(cleanup: List[Dict[str, Any]], name: str, fn: Callable[[], int]) -> None:
    try:
        count = fn()
        cleanup.append({"step": name, "ok": True, "count": count})
    except CRMError as exc:
        logger.error("Purge step %r failed: %s", name, exc)
        cleanup.append({"step": name, "ok": False, "detail": str(exc)})


def purge_user(store: Datastore, auth: AuthClient, user_id: str) -> Dict[str, Any]:
    owned = [eq("owner_user_id", user_id)]
    cleanup: List[Dict[str, Any]] = []

    _step(cleanup, "delete messages", lambda: store.messages.delete_where(owned))
    _step(cleanup, "delete follow_ups", lambda: store.follow_ups.delete_where(owned))
    _step(cleanup, "delete inbox_reads", lambda: store.inbox_reads.delete_where(owned))
    _step(cleanup, "delete recruits", lambda: store.recruits.delete_where(owned))
    _step(cleanup, "delete stage_sequences", lambda: store.sequences.delete_where(owned))
    _step(cleanup, "delete message_templates", lambda: store.templates.delete_where(owned))
    _step(cleanup, "delete stages", lambda: store.stages.delete_where(owned))
    _step(cleanup, "delete profile", lambda: store.profiles.delete_where([eq("id", user_id)]))

    try:
        auth.delete_user(user_id)
    except CRMError as exc:
        raise DependencyError("Failed deleting auth user", user_id=user_id, cleanup=cleanup, detail=str(exc)) from exc

    logger.info("Purged user %s: %s", user_id, cleanup)
    return {"ok": True, "userId": user_id, "cleanup": cleanup}
