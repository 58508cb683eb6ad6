"""Expiry arithmetic and the auto-delete transition.

Every function that changes a record expects the caller to hold that
record's lock (``UploadRecordStore.transaction``).
"""

import logging
from typing import Dict, Optional, Tuple

from .storage import (
    GRACE_PERIOD_MS,
    MAX_DURATION_MS,
    MS_PER_DAY,
    MS_PER_HOUR,
    MediaStorage,
    now_ms,
)

ALLOWED_EXTENSION_INCREMENTS_MS = frozenset(
    {
        1 * MS_PER_HOUR,
        2 * MS_PER_HOUR,
        6 * MS_PER_HOUR,
        12 * MS_PER_HOUR,
        1 * MS_PER_DAY,
        3 * MS_PER_DAY,
        7 * MS_PER_DAY,
        30 * MS_PER_DAY,
    }
)

DELETED_MANUAL = "manual"
DELETED_AUTO = "auto"

logger = logging.getLogger("fadedrop.lifecycle")


def _as_instant(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def expires_at_ms(record: Dict[str, object]) -> Optional[int]:
    expiration = record.get("expiration") or {}
    instant = _as_instant(expiration.get("expires_at"))
    if instant is None:
        instant = _as_instant(record.get("created_at"))
    return instant


def auto_delete_at_ms(record: Dict[str, object], grace_period_ms: int = GRACE_PERIOD_MS) -> Optional[int]:
    expiration = record.get("expiration") or {}
    instant = _as_instant(expiration.get("auto_delete_at"))
    if instant is not None:
        return instant
    expires_at = expires_at_ms(record)
    if expires_at is None:
        return None
    return expires_at + grace_period_ms


def is_expired(record: Dict[str, object], now: int) -> bool:
    expires_at = expires_at_ms(record)
    return expires_at is not None and now >= expires_at


def is_past_auto_delete(record: Dict[str, object], now: int) -> bool:
    auto_delete_at = auto_delete_at_ms(record)
    return auto_delete_at is not None and now >= auto_delete_at


def mark_deleted(
    record: Dict[str, object],
    reason: str,
    now: int,
    media_storage: Optional[MediaStorage],
) -> None:
    """Terminal transition shared by manual and automatic deletion."""

    if media_storage is not None:
        try:
            media_storage.delete_files(record.get("files") or [])
        except Exception:
            logger.exception("media_delete_schedule_failed upload_id=%s", record.get("id"))

    record["deleted"] = True
    record["deleted_reason"] = reason
    record["deleted_at"] = now
    # Once deleted, password and view limits are irrelevant.
    record["password"] = None
    record["password_version"] = None
    record["max_views"] = None


def reconcile(
    record: Optional[Dict[str, object]],
    now: int,
    media_storage: Optional[MediaStorage],
) -> bool:
    """Apply auto-delete if it is due. Returns whether a transition happened."""

    if not record or record.get("deleted"):
        return False
    if not is_past_auto_delete(record, now):
        return False

    logger.info("upload_auto_deleted upload_id=%s at=%d", record.get("id"), now)
    mark_deleted(record, DELETED_AUTO, now, media_storage)
    return True


def extend(record: Dict[str, object], increment_ms, now: int) -> Tuple[bool, Optional[str]]:
    if record.get("deleted"):
        return False, "deleted"

    if (
        isinstance(increment_ms, bool)
        or not isinstance(increment_ms, int)
        or increment_ms not in ALLOWED_EXTENSION_INCREMENTS_MS
    ):
        return False, "invalid"

    current = expires_at_ms(record)
    # An expired link restarts from now rather than from its stale expiry.
    base = max(current, now) if current is not None else now
    new_expires_at = base + increment_ms
    if new_expires_at > now + MAX_DURATION_MS:
        return False, "tooFar"

    expiration = record.get("expiration")
    if not isinstance(expiration, dict):
        expiration = {}
        record["expiration"] = expiration
    expiration["expires_at"] = new_expires_at
    expiration["auto_delete_at"] = new_expires_at + GRACE_PERIOD_MS
    created_at = _as_instant(record.get("created_at"))
    if created_at is not None:
        expiration["duration_ms"] = new_expires_at - created_at
    record["deleted"] = False
    return True, None


def sweep(store, media_storage: Optional[MediaStorage], now: Optional[int] = None) -> int:
    """Reconcile every record in *store*; returns the number auto-deleted."""

    now = now_ms() if now is None else now
    due_ids = getattr(store, "iter_due_ids", None)
    candidate_ids = due_ids(now) if due_ids is not None else store.iter_ids()

    removed = 0
    for upload_id in candidate_ids:
        try:
            with store.transaction(upload_id) as record:
                if reconcile(record, now, media_storage):
                    removed += 1
        except Exception:
            logger.exception("sweep_record_failed upload_id=%s", upload_id)
    if removed:
        logger.info("sweep_completed removed=%d", removed)
    return removed
