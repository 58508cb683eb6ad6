import copy
import logging
import os
import re
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from werkzeug.datastructures import FileStorage

from .expiration import (
    DELETED_AUTO,
    DELETED_MANUAL,
    extend,
    is_expired,
    mark_deleted,
    reconcile,
)
from .records import UploadRecordStore
from .security import (
    authorize_dashboard,
    authorize_viewer,
    generate_dashboard_key,
    generate_id,
    generate_password_version,
    hash_password,
    issue_viewer_token,
    verify_password,
    verify_viewer_password,
    viewer_cookie_max_age,
)
from .storage import (
    BYTES_PER_MB,
    GRACE_PERIOD_MS,
    MAX_DURATION_MS,
    MIN_DURATION_MS,
    MINUTES_UNIT_ENABLED,
    MS_PER_DAY,
    MS_PER_HOUR,
    MS_PER_MINUTE,
    MediaStorage,
    isoformat_utc,
    now_ms,
)

MAX_VIEW_LIMIT = 100_000

MEDIA_RULES: Dict[str, Dict[str, object]] = {
    "images": {
        "min_files": 1,
        "max_files": 10,
        "max_bytes": 15 * BYTES_PER_MB,
        "mime_types": {
            "image/jpeg",
            "image/png",
            "image/gif",
            "image/webp",
            "image/avif",
            "image/heic",
            "image/heif",
            "image/bmp",
        },
        "extensions": {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".heic", ".heif", ".bmp"},
    },
    "video": {
        "min_files": 1,
        "max_files": 1,
        "max_bytes": 500 * BYTES_PER_MB,
        "mime_types": {
            "video/mp4",
            "video/webm",
            "video/quicktime",
            "video/ogg",
            "video/x-matroska",
            "video/x-m4v",
        },
        "extensions": {".mp4", ".webm", ".mov", ".ogv", ".mkv", ".m4v"},
    },
    "audio": {
        "min_files": 1,
        "max_files": 2,
        "max_bytes": 50 * BYTES_PER_MB,
        "mime_types": {
            "audio/mpeg",
            "audio/mp3",
            "audio/wav",
            "audio/x-wav",
            "audio/wave",
            "audio/ogg",
            "audio/aac",
            "audio/flac",
            "audio/x-flac",
            "audio/mp4",
            "audio/x-m4a",
            "audio/webm",
        },
        "extensions": {".mp3", ".wav", ".ogg", ".oga", ".aac", ".flac", ".m4a", ".webm", ".weba"},
    },
}

MEDIA_TYPES = tuple(MEDIA_RULES.keys())
GENERIC_MIME_TYPES = {"", "application/octet-stream"}

DURATION_UNITS_MS = {
    "minutes": MS_PER_MINUTE,
    "hours": MS_PER_HOUR,
    "days": MS_PER_DAY,
}

STATUS_ACTIVE = "Active"
STATUS_EXPIRED = "Expired"
STATUS_VIEW_LIMIT = "View limit reached"
STATUS_AUTO_DELETED = "Automatically deleted"
STATUS_MANUAL_DELETED = "Deleted by uploader"

logger = logging.getLogger("fadedrop.lifecycle")


class UploadValidationError(ValueError):
    """Raised when an upload request is rejected before a record exists."""

    def __init__(self, title: str, message: str, reason: str = "invalid") -> None:
        super().__init__(message)
        self.title = title
        self.reason = reason

    def to_payload(self) -> dict:
        return {"error": str(self), "title": self.title, "reason": self.reason}


class ViewOutcome(NamedTuple):
    status: str
    record: Optional[Dict[str, object]] = None
    files: Tuple[Dict[str, object], ...] = ()


_WHOLE_NUMBER_PATTERN = re.compile(r"[0-9]+")


def is_whole_number(raw: str) -> bool:
    """True for plain ASCII digits; ``str.isdigit`` also matches superscripts."""

    return _WHOLE_NUMBER_PATTERN.fullmatch(raw) is not None


def parse_duration(
    expires_value,
    expires_unit,
    *,
    minutes_enabled: bool = MINUTES_UNIT_ENABLED,
    min_duration_ms: int = MIN_DURATION_MS,
) -> Tuple[int, str, int]:
    """Validate a value/unit pair and return ``(value, unit, duration_ms)``."""

    unit = str(expires_unit or "").strip().lower()
    if unit not in DURATION_UNITS_MS or (unit == "minutes" and not minutes_enabled):
        raise UploadValidationError(
            "Invalid expiration",
            f"Unsupported expiration unit: {unit or 'missing'}.",
            reason="expiration_unit",
        )

    raw_value = str(expires_value if expires_value is not None else "").strip()
    if not is_whole_number(raw_value):
        raise UploadValidationError(
            "Invalid expiration",
            "Expiration must be a positive whole number.",
            reason="expiration_value",
        )
    value = int(raw_value)
    duration_ms = value * DURATION_UNITS_MS[unit]
    if value < 1 or not (min_duration_ms <= duration_ms <= MAX_DURATION_MS):
        raise UploadValidationError(
            "Invalid expiration",
            "Expiration must be between the minimum duration and 30 days.",
            reason="expiration_range",
        )
    return value, unit, duration_ms


def file_matches_rules(filename: str, mime_type: Optional[str], rules: Mapping[str, object]) -> bool:
    """Extension must be allow-listed; the declared type must agree or be generic."""

    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in rules["extensions"]:
        return False
    declared = (mime_type or "").split(";", 1)[0].strip().lower()
    return declared in GENERIC_MIME_TYPES or declared in rules["mime_types"]


def status_label(record: Dict[str, object], now: int) -> str:
    if record.get("deleted"):
        if record.get("deleted_reason") == DELETED_AUTO:
            return STATUS_AUTO_DELETED
        return STATUS_MANUAL_DELETED
    if is_expired(record, now):
        return STATUS_EXPIRED
    if view_limit_reached(record):
        return STATUS_VIEW_LIMIT
    return STATUS_ACTIVE


def view_limit_reached(record: Dict[str, object]) -> bool:
    max_views = record.get("max_views")
    if not isinstance(max_views, int) or max_views <= 0:
        return False
    return int(record.get("view_count") or 0) >= max_views


def files_for_display(record: Dict[str, object]) -> Tuple[Dict[str, object], ...]:
    media_type = record.get("media_type")
    return tuple(meta for meta in record.get("files") or [] if meta.get("field_name") == media_type)


class UploadLifecycle:
    """Creates upload records and applies every state transition to them."""

    def __init__(
        self,
        store: UploadRecordStore,
        media_storage: MediaStorage,
        *,
        minutes_enabled: bool = MINUTES_UNIT_ENABLED,
        min_duration_ms: int = MIN_DURATION_MS,
        clock=now_ms,
    ) -> None:
        self.store = store
        self.media_storage = media_storage
        self.minutes_enabled = minutes_enabled
        self.min_duration_ms = min_duration_ms
        self.clock = clock

    def _now(self, now: Optional[int]) -> int:
        return self.clock() if now is None else now

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_upload(
        self,
        uploads: Mapping[str, Iterable[FileStorage]],
        media_type: Optional[str],
        expires_value,
        expires_unit,
        password: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Dict[str, object]:
        selected: Dict[str, List[FileStorage]] = {}
        for field_name, storages in (uploads or {}).items():
            picked = [item for item in storages or [] if item and item.filename]
            if picked:
                selected[field_name] = picked

        stored: List[Dict[str, object]] = []
        try:
            media_type = (media_type or "images").strip()
            rules = MEDIA_RULES.get(media_type)
            if rules is None:
                raise UploadValidationError(
                    "Unsupported media type",
                    "Choose images, video, or audio.",
                    reason="media_type",
                )

            files = selected.get(media_type, [])
            if not selected:
                raise UploadValidationError(
                    "No files selected",
                    "Please choose at least one file to upload.",
                    reason="no_files",
                )
            if set(selected) - {media_type}:
                raise UploadValidationError(
                    "Mixed media types",
                    f"Only {media_type} files can be uploaded with this link.",
                    reason="mixed_media",
                )
            if not (rules["min_files"] <= len(files) <= rules["max_files"]):
                raise UploadValidationError(
                    "Too many files",
                    f"{media_type.capitalize()} uploads accept {rules['min_files']} to {rules['max_files']} file(s).",
                    reason="file_count",
                )

            value, unit, duration_ms = parse_duration(
                expires_value,
                expires_unit,
                minutes_enabled=self.minutes_enabled,
                min_duration_ms=self.min_duration_ms,
            )

            for upload in files:
                if not file_matches_rules(upload.filename, upload.mimetype, rules):
                    raise UploadValidationError(
                        "Unsupported file type",
                        f"{upload.filename} is not an accepted {media_type} file.",
                        reason="file_type",
                    )

            max_bytes = int(rules["max_bytes"])
            for upload in files:
                meta = self.media_storage.save(media_type, upload, max_bytes=max_bytes)
                stored.append(meta)
                if int(meta["size"]) > max_bytes:
                    raise UploadValidationError(
                        "File too large",
                        f"{upload.filename} exceeds the {max_bytes // BYTES_PER_MB} MB limit.",
                        reason="file_size",
                    )
                if int(meta["size"]) == 0:
                    raise UploadValidationError(
                        "Empty file",
                        f"{upload.filename} is empty.",
                        reason="file_size",
                    )

            trimmed_password = (password or "").strip()
            created_at = self._now(now)
            expires_at = created_at + duration_ms
            record: Dict[str, object] = {
                "id": generate_id(),
                "dashboard_key": generate_dashboard_key(),
                "media_type": media_type,
                "files": stored,
                "expiration": {
                    "value": value,
                    "unit": unit,
                    "duration_ms": duration_ms,
                    "expires_at": expires_at,
                    "auto_delete_at": expires_at + GRACE_PERIOD_MS,
                },
                "password": hash_password(trimmed_password) if trimmed_password else None,
                "password_version": generate_password_version() if trimmed_password else None,
                "created_at": created_at,
                "countdown_visible": False,
                "view_count": 0,
                "max_views": None,
                "deleted": False,
                "deleted_at": None,
                "deleted_reason": None,
            }
            self.store.insert(record)
        except UploadValidationError as error:
            logger.warning(
                "upload_rejected reason=%s media_type=%s stored_files=%d",
                error.reason,
                media_type,
                len(stored),
            )
            self.media_storage.delete_files(stored)
            raise
        except Exception:
            logger.exception("upload_create_failed stored_files=%d", len(stored))
            self.media_storage.delete_files(stored)
            raise

        logger.info(
            "upload_created upload_id=%s media_type=%s files=%d duration_ms=%d expires_at=%s protected=%s",
            record["id"],
            media_type,
            len(stored),
            duration_ms,
            isoformat_utc(expires_at),
            bool(record["password"]),
        )
        return copy.deepcopy(record)

    # ------------------------------------------------------------------
    # Viewer side
    # ------------------------------------------------------------------

    def record_view(self, upload_id: str, viewer_token: Optional[str] = None, now: Optional[int] = None) -> ViewOutcome:
        now = self._now(now)
        with self.store.transaction(upload_id) as record:
            if record is None:
                return ViewOutcome("not_found")
            reconcile(record, now, self.media_storage)

            if record.get("deleted"):
                status = "deleted"
            elif is_expired(record, now):
                status = "expired"
            elif view_limit_reached(record):
                status = "view_limit"
            elif not authorize_viewer(record, viewer_token):
                status = "password_required"
            else:
                record["view_count"] = int(record.get("view_count") or 0) + 1
                status = "ok"
            snapshot = copy.deepcopy(record)

        if status == "ok":
            logger.info("upload_viewed upload_id=%s view_count=%d", upload_id, snapshot["view_count"])
            return ViewOutcome(status, snapshot, files_for_display(snapshot))
        logger.info("upload_view_denied upload_id=%s status=%s", upload_id, status)
        return ViewOutcome(status, snapshot)

    def unlock_view(
        self, upload_id: str, plaintext: Optional[str], now: Optional[int] = None
    ) -> Tuple[bool, Optional[str], Optional[str], int]:
        """Check a viewer password; returns ``(ok, error, cookie_value, max_age)``."""

        now = self._now(now)
        with self.store.transaction(upload_id) as record:
            if record is None:
                return False, "not_found", None, 0
            reconcile(record, now, self.media_storage)
            if record.get("deleted"):
                return False, "deleted", None, 0
            if not record.get("password"):
                return True, None, None, 0

            ok, error = verify_viewer_password(record, plaintext)
            if not ok:
                logger.warning("viewer_password_invalid upload_id=%s at=%s", upload_id, isoformat_utc(now))
                return False, error, None, 0
            return True, None, issue_viewer_token(record), viewer_cookie_max_age(record, now)

    def media_for_viewer(
        self,
        upload_id: str,
        stored_filename: str,
        viewer_token: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Optional[Dict[str, object]]:
        """FileMeta for a media request, or ``None`` if the viewer may not fetch it.

        Media fetches never count as views and are not gated by the view
        limit, since they follow the page render that consumed the view.
        """

        now = self._now(now)
        with self.store.transaction(upload_id) as record:
            if record is None:
                return None
            reconcile(record, now, self.media_storage)
            if record.get("deleted") or is_expired(record, now):
                return None
            if not authorize_viewer(record, viewer_token):
                return None
            for meta in files_for_display(record):
                if meta.get("stored_filename") == stored_filename:
                    return dict(meta)
        return None

    # ------------------------------------------------------------------
    # Dashboard side
    # ------------------------------------------------------------------

    @contextmanager
    def _authorized(
        self, upload_id: str, key: Optional[str], action: str, now: int
    ) -> Generator[Optional[Dict[str, object]], None, None]:
        with self.store.transaction(upload_id) as record:
            if not authorize_dashboard(record, key):
                # Unknown ids and wrong keys are indistinguishable to the caller.
                logger.warning(
                    "dashboard_unauthorized upload_id=%s action=%s known=%s at=%s",
                    upload_id,
                    action,
                    record is not None,
                    isoformat_utc(now),
                )
                yield None
                return
            reconcile(record, now, self.media_storage)
            yield record

    def dashboard_snapshot(self, upload_id: str, key: Optional[str], now: Optional[int] = None) -> Optional[Dict[str, object]]:
        now = self._now(now)
        with self._authorized(upload_id, key, "view", now) as record:
            if record is None:
                return None
            snapshot = copy.deepcopy(record)
        snapshot["status"] = status_label(snapshot, now)
        return snapshot

    def extend_expiration(self, upload_id: str, key: Optional[str], extend_by, now: Optional[int] = None) -> Tuple[bool, str]:
        now = self._now(now)
        raw = str(extend_by if extend_by is not None else "").strip()
        increment_ms = int(raw) if is_whole_number(raw) else None
        with self._authorized(upload_id, key, "expiration", now) as record:
            if record is None:
                return False, "unauthorized"
            ok, error = extend(record, increment_ms, now)
            if not ok:
                return False, error
            new_expires_at = record["expiration"]["expires_at"]
        logger.info(
            "upload_extended upload_id=%s increment_ms=%d expires_at=%s",
            upload_id,
            increment_ms,
            isoformat_utc(new_expires_at),
        )
        return True, "extended"

    def set_max_views(self, upload_id: str, key: Optional[str], mode: Optional[str], value=None, now: Optional[int] = None) -> Tuple[bool, str]:
        now = self._now(now)
        mode = (mode or "set").strip()
        with self._authorized(upload_id, key, "views", now) as record:
            if record is None:
                return False, "unauthorized"
            if record.get("deleted"):
                return False, "deleted"
            if mode == "remove":
                record["max_views"] = None
                logger.info("upload_view_limit_removed upload_id=%s", upload_id)
                return True, "removed"
            if mode != "set":
                return False, "invalid"

            raw = str(value if value is not None else "").strip()
            if not is_whole_number(raw) or not (1 <= int(raw) <= MAX_VIEW_LIMIT):
                return False, "invalid"
            record["max_views"] = int(raw)
        logger.info("upload_view_limit_set upload_id=%s max_views=%s", upload_id, raw)
        return True, "updated"

    def set_password(
        self,
        upload_id: str,
        key: Optional[str],
        mode: Optional[str],
        new_plaintext: Optional[str] = None,
        current_plaintext: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Tuple[bool, str]:
        now = self._now(now)
        mode = (mode or "set").strip()
        if mode not in {"set", "change", "remove"}:
            return False, "invalid"

        with self._authorized(upload_id, key, "password", now) as record:
            if record is None:
                return False, "unauthorized"
            if record.get("deleted"):
                return False, "deleted"

            trimmed_new = (new_plaintext or "").strip()
            if mode != "remove" and not trimmed_new:
                return False, "empty"

            # Replacing or removing an existing password needs the current one.
            if record.get("password"):
                trimmed_current = (current_plaintext or "").strip()
                if not trimmed_current:
                    return False, "current_required"
                if not verify_password(trimmed_current, record["password"]):
                    logger.warning(
                        "dashboard_current_password_invalid upload_id=%s at=%s",
                        upload_id,
                        isoformat_utc(now),
                    )
                    return False, "current_invalid"

            if mode == "remove":
                record["password"] = None
                record["password_version"] = None
                logger.info("upload_password_removed upload_id=%s", upload_id)
                return True, "removed"

            record["password"] = hash_password(trimmed_new)
            # Rotating the version invalidates every viewer cookie issued so far.
            record["password_version"] = generate_password_version()
        logger.info("upload_password_updated upload_id=%s mode=%s", upload_id, mode)
        return True, "updated"

    def set_countdown_visibility(self, upload_id: str, key: Optional[str], mode: Optional[str], now: Optional[int] = None) -> Tuple[bool, str]:
        now = self._now(now)
        mode = (mode or "").strip()
        with self._authorized(upload_id, key, "countdown", now) as record:
            if record is None:
                return False, "unauthorized"
            if record.get("deleted"):
                return False, "deleted"
            if mode not in {"show", "hide"}:
                return False, "invalid"
            record["countdown_visible"] = mode == "show"
        logger.info("upload_countdown_updated upload_id=%s mode=%s", upload_id, mode)
        return True, "updated"

    def manual_delete(self, upload_id: str, key: Optional[str], now: Optional[int] = None) -> Tuple[bool, str]:
        now = self._now(now)
        with self._authorized(upload_id, key, "delete", now) as record:
            if record is None:
                return False, "unauthorized"
            if record.get("deleted"):
                return True, "alreadyDeleted"
            logger.info("upload_deleted_manual upload_id=%s at=%s", upload_id, isoformat_utc(now))
            mark_deleted(record, DELETED_MANUAL, now, self.media_storage)
        return True, "deleted"
