"""
Deduplication Store

Stamps a (tenant, request) identity as seen for a TTL window. The first
caller in a window gets True, everyone else gets False until the stamp
expires. The check-and-set is one read-modify-write under the lock of the
shard that owns the identity, so concurrent duplicates can never both win.

Whether the endpoint is part of the identity is a configuration decision,
made once through DedupeKeyPolicy.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Dict, List, Optional, Protocol
import json
import structlog

from .clock import Clock, SystemClock
from .types import EndpointKey, IdempotencyKey, RequestId, TenantId

logger = structlog.get_logger()


class DedupeScope(Enum):
    """Which fields make up a dedupe identity."""
    REQUEST = "request"  # (tenant, request id, idempotency key)
    ENDPOINT = "endpoint"  # (tenant, endpoint, request id, idempotency key)


@dataclass(frozen=True)
class DedupeKey:
    """Hashable dedupe identity."""
    tenant: str
    request_id: str
    idempotency_key: Optional[str] = None
    endpoint: Optional[str] = None

    def as_string(self) -> str:
        """Collision-free text form for keyed storage."""
        return json.dumps(
            [self.tenant, self.endpoint, self.request_id, self.idempotency_key],
            separators=(",", ":"),
        )


class DedupeKeyPolicy:
    """Builds dedupe identities according to the configured scope."""

    def __init__(self, scope: DedupeScope = DedupeScope.REQUEST):
        self.scope = scope

    def build(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        endpoint: Optional[EndpointKey] = None,
    ) -> DedupeKey:
        endpoint_value = None
        if self.scope is DedupeScope.ENDPOINT:
            if endpoint is None:
                raise ValueError("Endpoint-scoped deduplication requires an endpoint key")
            endpoint_value = endpoint.value

        return DedupeKey(
            tenant=tenant.value,
            request_id=request_id.value,
            idempotency_key=idempotency_key.value if idempotency_key else None,
            endpoint=endpoint_value,
        )


@dataclass(frozen=True)
class DedupeStamp:
    """
    A stamp installed by one successful acquire.

    `expires_at` identifies this particular stamp: a later caller that
    re-stamps the identity after expiry always installs a later expiry.
    """
    key: DedupeKey
    expires_at: datetime


class DedupeStore(Protocol):
    """Atomic first-seen check with per-call TTL."""

    policy: DedupeKeyPolicy

    async def try_stamp(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        ttl: timedelta,
        endpoint: Optional[EndpointKey] = None,
    ) -> bool:
        """Return True if the identity is first-seen in its TTL window."""
        ...

    async def acquire(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        ttl: timedelta,
        endpoint: Optional[EndpointKey] = None,
    ) -> Optional[DedupeStamp]:
        """Like try_stamp, but return the installed stamp (None on duplicate)."""
        ...

    async def release(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        endpoint: Optional[EndpointKey] = None,
    ) -> None:
        """Drop a stamp so the identity counts as unseen again."""
        ...

    async def release_stamp(self, stamp: DedupeStamp) -> bool:
        """Drop `stamp` only if it is still the current one. True if dropped."""
        ...


class _Shard:
    __slots__ = ("lock", "expirations", "stamps_since_sweep")

    def __init__(self):
        self.lock = Lock()
        self.expirations: Dict[DedupeKey, datetime] = {}
        self.stamps_since_sweep = 0


class InMemoryDedupeStore:
    """
    Sharded in-process dedupe store.

    Each shard owns a lock and a key -> expiry map. Expired entries are
    reclaimed lazily: a shard sweeps itself every `sweep_every` stamps, and
    `purge_expired()` sweeps everything on demand.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        policy: Optional[DedupeKeyPolicy] = None,
        shards: int = 16,
        sweep_every: int = 1024,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.clock = clock or SystemClock()
        self.policy = policy or DedupeKeyPolicy()
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._sweep_every = sweep_every

    def _shard_for(self, key: DedupeKey) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def acquire_key(self, key: DedupeKey, ttl: timedelta) -> Optional[DedupeStamp]:
        """Synchronous check-and-set on a prebuilt key."""
        now = self.clock.now()
        shard = self._shard_for(key)

        with shard.lock:
            current = shard.expirations.get(key)
            if current is not None and current > now:
                return None

            expires_at = now + ttl
            shard.expirations[key] = expires_at

            shard.stamps_since_sweep += 1
            if shard.stamps_since_sweep >= self._sweep_every:
                self._sweep_locked(shard, now)

        return DedupeStamp(key=key, expires_at=expires_at)

    def stamp(self, key: DedupeKey, ttl: timedelta) -> bool:
        return self.acquire_key(key, ttl) is not None

    def unstamp(self, key: DedupeKey, expires_at: Optional[datetime] = None) -> bool:
        """Remove a stamp; with `expires_at`, only if it is still that stamp."""
        shard = self._shard_for(key)
        with shard.lock:
            current = shard.expirations.get(key)
            if current is None:
                return False
            if expires_at is not None and current != expires_at:
                return False
            del shard.expirations[key]
            return True

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
        return self.acquire_key(key, ttl)

    async def release(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        endpoint: Optional[EndpointKey] = None,
    ) -> None:
        key = self.policy.build(tenant, request_id, idempotency_key, endpoint)
        if self.unstamp(key):
            logger.debug("dedupe_stamp_released", tenant_id=key.tenant, request_id=key.request_id)

    async def release_stamp(self, stamp: DedupeStamp) -> bool:
        released = self.unstamp(stamp.key, expires_at=stamp.expires_at)
        if released:
            logger.debug("dedupe_stamp_released", tenant_id=stamp.key.tenant, request_id=stamp.key.request_id)
        else:
            logger.info("dedupe_stamp_superseded", tenant_id=stamp.key.tenant, request_id=stamp.key.request_id)
        return released

    def purge_expired(self) -> int:
        """Remove every expired stamp. Returns the number removed."""
        now = self.clock.now()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                removed += self._sweep_locked(shard, now)
        return removed

    @staticmethod
    def _sweep_locked(shard: _Shard, now: datetime) -> int:
        expired = [k for k, expires_at in shard.expirations.items() if expires_at <= now]
        for key in expired:
            del shard.expirations[key]
        shard.stamps_since_sweep = 0
        return len(expired)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.expirations)
        return total
