"""
Local Cache Store - Last known verdict per account, on this host.

SQLite file via the standard library. Reads and writes are single-row and
atomic. Failures are logged and reported as a miss; the cache never raises
into the reconciliation engine.
"""

import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from structlog import get_logger

from entitlements.models.domain import CacheRecord, PlanType

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entitlement_cache (
    account_id   TEXT PRIMARY KEY,
    is_entitled  INTEGER NOT NULL,
    plan_type    TEXT,
    last_updated TEXT NOT NULL
)
"""


class LocalCacheStore:
    """Durable key/value store of CacheRecord by account id."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            self.db_path, check_same_thread=False
        )
        with self._lock:
            self._conn.execute(_SCHEMA)
            self._conn.commit()
        logger.info("local_cache_opened", path=self.db_path)

    def get(self, account_id: str) -> CacheRecord | None:
        """Return the stored record, or None on a miss or a read failure."""
        if self._conn is None:
            return None
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT is_entitled, plan_type, last_updated "
                    "FROM entitlement_cache WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.error("local_cache_read_failed", account_id=account_id, error=str(exc))
            return None

        if row is None:
            return None

        is_entitled, plan_type, last_updated = row
        try:
            updated_at = datetime.fromisoformat(last_updated)
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=UTC)
            plan = PlanType(plan_type) if plan_type else None
        except ValueError as exc:
            logger.warning("local_cache_record_corrupt", account_id=account_id, error=str(exc))
            return None

        return CacheRecord(
            is_entitled=bool(is_entitled),
            plan_type=plan if is_entitled else None,
            last_updated=updated_at,
        )

    def put(self, account_id: str, record: CacheRecord) -> None:
        """Overwrite the account's record. Failures are logged."""
        if self._conn is None:
            return
        plan = record.plan_type.value if record.is_entitled and record.plan_type else None
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT INTO entitlement_cache (account_id, is_entitled, plan_type, last_updated) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(account_id) DO UPDATE SET "
                    "is_entitled = excluded.is_entitled, "
                    "plan_type = excluded.plan_type, "
                    "last_updated = excluded.last_updated",
                    (
                        account_id,
                        1 if record.is_entitled else 0,
                        plan,
                        record.last_updated.isoformat(),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            logger.error("local_cache_write_failed", account_id=account_id, error=str(exc))

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        logger.info("local_cache_closed", path=self.db_path)
