"""
Database-backed Dedupe Store and Usage Sink

Adapt the repositories to the async collaborator protocols used by the
usage meter. Blocking SQLite calls run on a worker thread; driver errors
surface as metering errors so callers can tell infrastructure faults apart.
"""

import asyncio
import sqlite3
from datetime import timedelta
from typing import Optional, Sequence
import structlog

from ..core.clock import Clock, SystemClock
from ..core.dedupe import DedupeKeyPolicy, DedupeStamp
from ..core.errors import DedupeStoreUnavailableError, SinkWriteError
from ..core.types import EndpointKey, IdempotencyKey, RequestId, TenantId, UsageEvent
from .database import Database
from .models import UsageEventRecord
from .repository import DedupeRepository, UsageEventRepository

logger = structlog.get_logger()


class DatabaseDedupeStore:
    """Dedupe store backed by the `dedupe_stamps` table."""

    def __init__(
        self,
        db: Database,
        clock: Optional[Clock] = None,
        policy: Optional[DedupeKeyPolicy] = None,
    ):
        self.repository = DedupeRepository(db)
        self.clock = clock or SystemClock()
        self.policy = policy or DedupeKeyPolicy()

    async def try_stamp(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        ttl: timedelta,
        endpoint: Optional[EndpointKey] = None,
    ) -> bool:
        stamp = await self.acquire(tenant, request_id, idempotency_key, ttl, endpoint=endpoint)
        return stamp is not None

    async def acquire(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        ttl: timedelta,
        endpoint: Optional[EndpointKey] = None,
    ) -> Optional[DedupeStamp]:
        key = self.policy.build(tenant, request_id, idempotency_key, endpoint)
        now = self.clock.now()
        expires_at = now + ttl
        try:
            won = await asyncio.to_thread(self.repository.try_stamp, key, now, expires_at)
        except sqlite3.Error as e:
            raise DedupeStoreUnavailableError(f"Failed to stamp {key.as_string()}: {e}") from e
        return DedupeStamp(key=key, expires_at=expires_at) if won else None

    async def release(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        endpoint: Optional[EndpointKey] = None,
    ) -> None:
        key = self.policy.build(tenant, request_id, idempotency_key, endpoint)
        try:
            released = await asyncio.to_thread(self.repository.release, key)
        except sqlite3.Error as e:
            raise DedupeStoreUnavailableError(f"Failed to release {key.as_string()}: {e}") from e
        if released:
            logger.debug("dedupe_stamp_released", tenant_id=key.tenant, request_id=key.request_id)

    async def release_stamp(self, stamp: DedupeStamp) -> bool:
        key = stamp.key
        try:
            released = await asyncio.to_thread(self.repository.release, key, stamp.expires_at)
        except sqlite3.Error as e:
            raise DedupeStoreUnavailableError(f"Failed to release {key.as_string()}: {e}") from e
        if released:
            logger.debug("dedupe_stamp_released", tenant_id=key.tenant, request_id=key.request_id)
        else:
            logger.info("dedupe_stamp_superseded", tenant_id=key.tenant, request_id=key.request_id)
        return released

    def purge_expired(self) -> int:
        return self.repository.purge_expired(self.clock.now())


class DatabaseUsageSink:
    """Usage sink writing each batch to `usage_events` in one transaction."""

    def __init__(self, db: Database):
        self.repository = UsageEventRepository(db)

    async def write(self, events: Sequence[UsageEvent]) -> None:
        if not events:
            return
        records = [UsageEventRecord.from_event(e) for e in events]
        try:
            await asyncio.to_thread(self.repository.create_many, records)
        except sqlite3.Error as e:
            raise SinkWriteError(f"Failed to persist {len(records)} usage events: {e}") from e
