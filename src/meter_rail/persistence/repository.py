"""
Repository Layer for Meter Rail

SQL access for dedupe stamps and usage events.
"""

from datetime import datetime
from typing import List, Optional
import structlog

from ..core.dedupe import DedupeKey
from .database import Database
from .models import DedupeStampRecord, UsageEventRecord, format_timestamp

logger = structlog.get_logger()


class DedupeRepository:
    """Repository for dedupe stamps."""

    # One statement: insert when absent, refresh only when the stored stamp
    # has expired. A live stamp leaves the row untouched (0 changes).
    STAMP_SQL = """INSERT INTO dedupe_stamps
               (dedupe_key, tenant_id, request_id, idempotency_key, endpoint,
                stamped_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(dedupe_key) DO UPDATE SET
                   stamped_at = excluded.stamped_at,
                   expires_at = excluded.expires_at
               WHERE dedupe_stamps.expires_at <= excluded.stamped_at"""

    def __init__(self, db: Database):
        self.db = db

    def try_stamp(self, key: DedupeKey, now: datetime, expires_at: datetime) -> bool:
        """Install or refresh a stamp. True if this call won the identity."""
        record = DedupeStampRecord.from_key(key, now, expires_at)
        changed = self.db.execute_write(self.STAMP_SQL, record.to_db_tuple())
        return changed == 1

    def get(self, key: DedupeKey) -> Optional[DedupeStampRecord]:
        results = self.db.execute(
            "SELECT * FROM dedupe_stamps WHERE dedupe_key = ?",
            (key.as_string(),)
        )
        return DedupeStampRecord.from_row(results[0]) if results else None

    def release(self, key: DedupeKey, expires_at: Optional[datetime] = None) -> bool:
        """
        Delete a stamp.

        With `expires_at` the row is deleted only while it still holds that
        expiry, so a stamp installed by a later caller is left alone.
        """
        if expires_at is None:
            changed = self.db.execute_write(
                "DELETE FROM dedupe_stamps WHERE dedupe_key = ?",
                (key.as_string(),)
            )
        else:
            changed = self.db.execute_write(
                "DELETE FROM dedupe_stamps WHERE dedupe_key = ? AND expires_at = ?",
                (key.as_string(), format_timestamp(expires_at))
            )
        return changed > 0

    def purge_expired(self, now: datetime) -> int:
        """Delete stamps whose expiry is not in the future."""
        removed = self.db.execute_write(
            "DELETE FROM dedupe_stamps WHERE expires_at <= ?",
            (format_timestamp(now),)
        )
        logger.info("dedupe_stamps_purged", count=removed)
        return removed

    def count(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM dedupe_stamps")
        return results[0]["cnt"] if results else 0


class UsageEventRepository:
    """Repository for usage events."""

    INSERT_SQL = """INSERT INTO usage_events
               (event_id, tenant_id, endpoint, units, occurred_at, request_id,
                idempotency_key, rule_id, status_code, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

    def __init__(self, db: Database):
        self.db = db

    def create_many(self, records: List[UsageEventRecord]) -> int:
        """Insert a batch of events in a single transaction."""
        if not records:
            return 0
        self.db.execute_many(self.INSERT_SQL, [r.to_db_tuple() for r in records])
        logger.debug("usage_events_inserted", count=len(records))
        return len(records)

    def get(self, event_id: str) -> Optional[UsageEventRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_events WHERE event_id = ?",
            (event_id,)
        )
        return UsageEventRecord.from_row(results[0]) if results else None

    def get_by_tenant(self, tenant_id: str, limit: int = 1000) -> List[UsageEventRecord]:
        """Get events for a tenant, newest first."""
        results = self.db.execute(
            "SELECT * FROM usage_events WHERE tenant_id = ? ORDER BY occurred_at DESC, event_id LIMIT ?",
            (tenant_id, limit)
        )
        return [UsageEventRecord.from_row(r) for r in results]

    def count(self, tenant_id: Optional[str] = None) -> int:
        if tenant_id is None:
            results = self.db.execute("SELECT COUNT(*) as cnt FROM usage_events")
        else:
            results = self.db.execute(
                "SELECT COUNT(*) as cnt FROM usage_events WHERE tenant_id = ?",
                (tenant_id,)
            )
        return results[0]["cnt"] if results else 0
