import logging
import os
import sqlite3
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("fadedrop.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _bool_env(env_key: str, default: bool) -> bool:
    value = _get_optional_bool_env(env_key)
    return default if value is None else value


STORAGE_ROOT = _resolve_env_path("FADEDROP_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FADEDROP_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("FADEDROP_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FADEDROP_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "uploads.db"

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR
MAX_DURATION_MS = 30 * MS_PER_DAY

GRACE_PERIOD_MS = _safe_int_env("FADEDROP_GRACE_PERIOD_MS", MS_PER_DAY, min_value=0)
MINUTES_UNIT_ENABLED = _bool_env("FADEDROP_ENABLE_MINUTES_UNIT", False)
MIN_DURATION_MS = min(
    _safe_int_env("FADEDROP_MIN_DURATION_MS", MS_PER_MINUTE), MAX_DURATION_MS
)
SWEEP_INTERVAL_SECONDS = _safe_int_env("FADEDROP_SWEEP_INTERVAL_SECONDS", 30)
SCHEDULER_ENABLED = _bool_env("FADEDROP_SCHEDULER_ENABLED", True)
RECORD_STORE_BACKEND = (os.environ.get("FADEDROP_RECORD_STORE") or "sqlite").strip().lower()
RATELIMIT_ENABLED = _bool_env("FADEDROP_RATELIMIT_ENABLED", True)
RATELIMIT_STORAGE_URI = os.environ.get("FADEDROP_RATELIMIT_STORAGE", "memory://")
LISTEN_PORT = _safe_int_env("PORT", 3000)

# Stored files are partitioned by media type.
MEDIA_DIRECTORIES = {
    "images": "images",
    "video": "videos",
    "audio": "audio",
}


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""

    return int(time.time() * 1000)


def isoformat_utc(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def settings_summary() -> Dict[str, object]:
    return {
        "grace_period_ms": GRACE_PERIOD_MS,
        "minutes_unit_enabled": MINUTES_UNIT_ENABLED,
        "min_duration_ms": MIN_DURATION_MS,
        "max_duration_ms": MAX_DURATION_MS,
        "sweep_interval_seconds": SWEEP_INTERVAL_SECONDS,
        "scheduler_enabled": SCHEDULER_ENABLED,
        "record_store": RECORD_STORE_BACKEND,
        "ratelimit_enabled": RATELIMIT_ENABLED,
        "port": LISTEN_PORT,
    }


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    for directory in MEDIA_DIRECTORIES.values():
        (UPLOADS_DIR / directory).mkdir(parents=True, exist_ok=True)


@contextmanager
def get_db(path: Optional[Path] = None) -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(path or DB_PATH, timeout=30.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def media_directory(media_type: str) -> Path:
    try:
        return UPLOADS_DIR / MEDIA_DIRECTORIES[media_type]
    except KeyError:
        raise ValueError(f"Unknown media type: {media_type}") from None


def build_stored_filename(original_name: str) -> str:
    """Return a collision-resistant name that keeps the original extension."""

    sanitized = secure_filename(original_name or "")
    ext = os.path.splitext(sanitized)[1].lower()
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:24]}{ext}"


def resolve_stored_path(media_type: str, stored_filename: str) -> Optional[Path]:
    """Map a stored filename back to its path, refusing anything outside the media directory."""

    if not stored_filename or stored_filename != secure_filename(stored_filename):
        return None
    directory = media_directory(media_type).resolve()
    candidate = (directory / stored_filename).resolve()
    if candidate.parent != directory:
        return None
    return candidate


class MediaStorage:
    """File storage port for uploaded media.

    Saving is synchronous so the caller can validate sizes. Deletion is
    best-effort: it is queued on a single worker thread, errors are logged
    and never raised to the caller.
    """

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="media-delete"
        )
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def save(self, field_name: str, upload: FileStorage, max_bytes: Optional[int] = None) -> Dict[str, object]:
        """Persist an uploaded file and return its FileMeta dict.

        The stream is copied in chunks; if *max_bytes* is exceeded the copy
        stops early and ``size`` reports ``max_bytes + 1`` so the caller can
        reject the file.
        """

        ensure_directories()
        original_name = upload.filename or ""
        stored_filename = build_stored_filename(original_name)
        target = media_directory(field_name) / stored_filename
        temp_path = target.with_name(f"{target.name}.tmp")

        written = 0
        too_large = False
        try:
            with temp_path.open("wb") as destination:
                while True:
                    chunk = upload.stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    if max_bytes is not None and written + len(chunk) > max_bytes:
                        too_large = True
                        break
                    destination.write(chunk)
                    written += len(chunk)
            temp_path.replace(target)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        size = max_bytes + 1 if too_large and max_bytes is not None else written
        logger.info(
            "media_saved field=%s stored_name=%s size=%d",
            field_name,
            stored_filename,
            written,
        )
        return {
            "field_name": field_name,
            "stored_filename": stored_filename,
            "stored_path": str(target),
            "original_filename": original_name,
            "mime_type": (upload.mimetype or "").lower(),
            "size": size,
        }

    def delete_files(self, files: Iterable[Dict[str, object]]) -> None:
        paths = [str(meta.get("stored_path")) for meta in files or [] if meta.get("stored_path")]
        if not paths:
            return
        future = self._executor.submit(_unlink_paths, paths)
        with self._lock:
            self._pending = [item for item in self._pending if not item.done()]
            self._pending.append(future)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until queued deletions have finished."""

        with self._lock:
            pending = list(self._pending)
            self._pending = []
        for future in pending:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


def _unlink_paths(paths: Iterable[str]) -> int:
    removed = 0
    for raw_path in paths:
        path = Path(raw_path)
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            logger.info("media_delete_missing path=%s", path)
        except OSError as error:
            logger.warning("media_delete_failed path=%s error=%s", path, error)
    if removed:
        logger.info("media_deleted count=%d", removed)
    return removed


logger = logging.getLogger("fadedrop.storage")

ensure_directories()
