"""
Data Models for Persistence Layer

Row-shaped mirrors of the core records. Units are stored as decimal text
and timestamps as fixed-width UTC text so SQL comparisons order correctly.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import json

from ..core.dedupe import DedupeKey
from ..core.types import EndpointKey, IdempotencyKey, RequestId, TenantId, UsageEvent

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text; lexical order equals time order."""
    if value.tzinfo is None:
        raise ValueError("Timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class DedupeStampRecord:
    """Persisted dedupe stamp."""
    dedupe_key: str
    tenant_id: str
    request_id: str
    stamped_at: str
    expires_at: str
    idempotency_key: Optional[str] = None
    endpoint: Optional[str] = None

    @classmethod
    def from_key(cls, key: DedupeKey, now: datetime, expires_at: datetime) -> "DedupeStampRecord":
        return cls(
            dedupe_key=key.as_string(),
            tenant_id=key.tenant,
            request_id=key.request_id,
            idempotency_key=key.idempotency_key,
            endpoint=key.endpoint,
            stamped_at=format_timestamp(now),
            expires_at=format_timestamp(expires_at),
        )

    def to_db_tuple(self) -> tuple:
        return (
            self.dedupe_key,
            self.tenant_id,
            self.request_id,
            self.idempotency_key,
            self.endpoint,
            self.stamped_at,
            self.expires_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DedupeStampRecord":
        return cls(
            dedupe_key=row["dedupe_key"],
            tenant_id=row["tenant_id"],
            request_id=row["request_id"],
            idempotency_key=row.get("idempotency_key"),
            endpoint=row.get("endpoint"),
            stamped_at=row["stamped_at"],
            expires_at=row["expires_at"],
        )


@dataclass
class UsageEventRecord:
    """Persisted usage event."""
    event_id: str
    tenant_id: str
    endpoint: str
    units: str
    occurred_at: str
    request_id: str
    idempotency_key: Optional[str] = None
    rule_id: Optional[str] = None
    status_code: Optional[int] = None
    metadata: Optional[Dict[str, str]] = None

    @classmethod
    def from_event(cls, event: UsageEvent) -> "UsageEventRecord":
        return cls(
            event_id=event.event_id,
            tenant_id=event.tenant.value,
            endpoint=event.endpoint.value,
            units=str(event.units),
            occurred_at=format_timestamp(event.occurred_at),
            request_id=event.request_id.value,
            idempotency_key=event.idempotency_key.value if event.idempotency_key else None,
            rule_id=event.rule_id,
            status_code=event.status_code,
            metadata=dict(event.metadata) if event.metadata is not None else None,
        )

    def to_event(self) -> UsageEvent:
        return UsageEvent(
            event_id=self.event_id,
            tenant=TenantId(self.tenant_id),
            endpoint=EndpointKey(self.endpoint),
            units=Decimal(self.units),
            occurred_at=parse_timestamp(self.occurred_at),
            request_id=RequestId(self.request_id),
            idempotency_key=IdempotencyKey(self.idempotency_key) if self.idempotency_key else None,
            rule_id=self.rule_id,
            status_code=self.status_code,
            metadata=self.metadata,
        )

    def to_db_tuple(self) -> tuple:
        return (
            self.event_id,
            self.tenant_id,
            self.endpoint,
            self.units,
            self.occurred_at,
            self.request_id,
            self.idempotency_key,
            self.rule_id,
            self.status_code,
            json.dumps(self.metadata) if self.metadata is not None else None,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageEventRecord":
        metadata = row.get("metadata")
        if isinstance(metadata, str) and metadata:
            metadata = json.loads(metadata)

        return cls(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            endpoint=row["endpoint"],
            units=row["units"],
            occurred_at=row["occurred_at"],
            request_id=row["request_id"],
            idempotency_key=row.get("idempotency_key"),
            rule_id=row.get("rule_id"),
            status_code=row.get("status_code"),
            metadata=metadata,
        )
