import copy
import json
import logging
import sqlite3
import threading
import zlib
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

from .storage import DB_PATH, get_db


logger = logging.getLogger("fadedrop.records")


class DuplicateUploadError(RuntimeError):
    """Raised when inserting a record whose id is already taken."""


LOCK_STRIPES = 64


class _RecordLocks:
    """Map upload ids onto a fixed pool of re-entrant locks.

    Ids sharing a stripe serialize against each other. The pool size is fixed.
    """

    def __init__(self, stripes: int = LOCK_STRIPES) -> None:
        self._locks: Tuple[threading.RLock, ...] = tuple(threading.RLock() for _ in range(stripes))

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, upload_id: str) -> threading.RLock:
        return self._locks[zlib.crc32(str(upload_id).encode("utf-8")) % len(self._locks)]


class UploadRecordStore:
    """Collection of upload records keyed by id.

    ``transaction`` is the only way to mutate a record. It holds the
    record's lock for the duration of the block and persists the yielded
    dict on a clean exit, so every lifecycle operation is atomic per record.
    """

    def __init__(self) -> None:
        self._locks = _RecordLocks()

    def lock_for(self, upload_id: str) -> threading.RLock:
        return self._locks.get(upload_id)

    def insert(self, record: Dict[str, object]) -> None:
        raise NotImplementedError

    def find_by_id(self, upload_id: str) -> Optional[Dict[str, object]]:
        raise NotImplementedError

    def iter_ids(self) -> List[str]:
        raise NotImplementedError

    def count(self) -> int:
        return len(self.iter_ids())

    def transaction(self, upload_id: str):
        raise NotImplementedError


class InMemoryRecordStore(UploadRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[str, Dict[str, object]] = {}
        self._guard = threading.RLock()

    def insert(self, record: Dict[str, object]) -> None:
        upload_id = str(record["id"])
        with self._guard:
            if upload_id in self._records:
                raise DuplicateUploadError(upload_id)
            self._records[upload_id] = copy.deepcopy(record)

    def find_by_id(self, upload_id: str) -> Optional[Dict[str, object]]:
        with self.lock_for(upload_id):
            record = self._records.get(upload_id)
            return copy.deepcopy(record) if record is not None else None

    def iter_ids(self) -> List[str]:
        with self._guard:
            return list(self._records.keys())

    @contextmanager
    def transaction(self, upload_id: str) -> Generator[Optional[Dict[str, object]], None, None]:
        with self.lock_for(upload_id):
            with self._guard:
                record = self._records.get(upload_id)
            working = copy.deepcopy(record) if record is not None else None
            yield working
            if working is not None:
                with self._guard:
                    self._records[upload_id] = working


class SqliteRecordStore(UploadRecordStore):
    """Durable store keeping each record as a JSON document in SQLite."""

    def __init__(self, path: Optional[Path] = None) -> None:
        super().__init__()
        self.path = path or DB_PATH
        self.init_db()

    def init_db(self) -> None:
        with get_db(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS uploads (
                    id TEXT PRIMARY KEY,
                    created_at INTEGER NOT NULL,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    auto_delete_at INTEGER,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_uploads_cleanup ON uploads(deleted, auto_delete_at)"
            )

    @staticmethod
    def _columns(record: Dict[str, object]) -> tuple:
        expiration = record.get("expiration") or {}
        auto_delete_at = expiration.get("auto_delete_at") if isinstance(expiration, dict) else None
        if not isinstance(auto_delete_at, int):
            auto_delete_at = None
        return (
            int(record.get("created_at") or 0),
            1 if record.get("deleted") else 0,
            auto_delete_at,
            json.dumps(record, separators=(",", ":")),
        )

    @staticmethod
    def _load(row: Optional[sqlite3.Row]) -> Optional[Dict[str, object]]:
        if row is None:
            return None
        try:
            parsed = json.loads(row["payload"])
        except (json.JSONDecodeError, TypeError):
            logger.error("record_payload_corrupt upload_id=%s", row["id"])
            return None
        return parsed if isinstance(parsed, dict) else None

    def insert(self, record: Dict[str, object]) -> None:
        upload_id = str(record["id"])
        try:
            with get_db(self.path) as conn:
                conn.execute(
                    "INSERT INTO uploads (id, created_at, deleted, auto_delete_at, payload) VALUES (?, ?, ?, ?, ?)",
                    (upload_id,) + self._columns(record),
                )
        except sqlite3.IntegrityError as error:
            raise DuplicateUploadError(upload_id) from error

    def find_by_id(self, upload_id: str) -> Optional[Dict[str, object]]:
        with get_db(self.path) as conn:
            row = conn.execute(
                "SELECT id, payload FROM uploads WHERE id = ?", (upload_id,)
            ).fetchone()
        return self._load(row)

    def iter_ids(self) -> List[str]:
        with get_db(self.path) as conn:
            rows = conn.execute("SELECT id FROM uploads ORDER BY created_at").fetchall()
        return [row["id"] for row in rows]

    def iter_due_ids(self, now: int) -> List[str]:
        """Ids of live records whose auto-delete instant has passed (or is unknown)."""

        with get_db(self.path) as conn:
            rows = conn.execute(
                """
                SELECT id FROM uploads
                WHERE deleted = 0 AND (auto_delete_at IS NULL OR auto_delete_at <= ?)
                ORDER BY created_at
                """,
                (now,),
            ).fetchall()
        return [row["id"] for row in rows]

    def count(self) -> int:
        with get_db(self.path) as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM uploads").fetchone()
        return int(row["count"] if row and row["count"] is not None else 0)

    @contextmanager
    def transaction(self, upload_id: str) -> Generator[Optional[Dict[str, object]], None, None]:
        with self.lock_for(upload_id):
            with get_db(self.path) as conn:
                # Serialises writers across processes sharing the database file.
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT id, payload FROM uploads WHERE id = ?", (upload_id,)
                ).fetchone()
                record = self._load(row)
                yield record
                if record is not None:
                    conn.execute(
                        "UPDATE uploads SET created_at = ?, deleted = ?, auto_delete_at = ?, payload = ? WHERE id = ?",
                        self._columns(record) + (upload_id,),
                    )
                conn.commit()


def create_record_store(backend: str) -> UploadRecordStore:
    if backend == "memory":
        return InMemoryRecordStore()
    if backend != "sqlite":
        logger.warning("unknown_record_store backend=%s fallback=sqlite", backend)
    return SqliteRecordStore()
