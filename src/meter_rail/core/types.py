"""
Value Objects and Records for the Metering Pipeline

Identifiers are small immutable wrappers so a tenant id can never be passed
where a request id is expected. Records are frozen once built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
import uuid


class HeaderNames:
    """HTTP headers carrying idempotency and metering hints."""
    IDEMPOTENCY_KEY = "Idempotency-Key"
    REQUEST_ID = "X-Request-Id"
    USAGE_UNITS = "X-Usage-Units"


@dataclass(frozen=True)
class TenantId:
    """Billing-isolated customer scope."""
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class EndpointKey:
    """Stable logical key for an API action (not necessarily the route)."""
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class IdempotencyKey:
    """Client-supplied token marking retries of one logical request."""
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RequestId:
    """Request identifier, unique per tenant per logical request."""
    value: str

    def __str__(self) -> str:
        return self.value


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class RequestInfo:
    """
    Snapshot of a handled request, used only for unit calculation.

    `items` carries per-item billing inputs (counts, sizes) keyed by name.
    Values are whatever the API layer put there; the calculator decides
    what it can use.
    """
    method: str
    path: str
    timestamp: datetime
    endpoint: EndpointKey
    status_code: int = 200
    items: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "items", _freeze(self.items))


@dataclass(frozen=True)
class UnitsResult:
    """Computed units plus the reason and the rule that produced them."""
    units: Decimal
    reason: str
    rule_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.rule_id is not None


@dataclass(frozen=True)
class UsageEvent:
    """
    Immutable usage record, emitted once per first-seen billable request.

    `occurred_at` comes from the meter's clock, never from the request.
    """
    event_id: str
    tenant: TenantId
    endpoint: EndpointKey
    units: Decimal
    occurred_at: datetime
    request_id: RequestId
    idempotency_key: Optional[IdempotencyKey] = None
    rule_id: Optional[str] = None
    status_code: Optional[int] = None
    metadata: Optional[Mapping[str, str]] = None

    def __post_init__(self):
        if self.metadata is not None:
            object.__setattr__(self, "metadata", _freeze(self.metadata))

    @staticmethod
    def new_event_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant.value,
            "endpoint": self.endpoint.value,
            "units": str(self.units),
            "occurred_at": self.occurred_at.isoformat(),
            "request_id": self.request_id.value,
            "idempotency_key": self.idempotency_key.value if self.idempotency_key else None,
            "rule_id": self.rule_id,
            "status_code": self.status_code,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
        }


@dataclass(frozen=True)
class UsageBatchItem:
    """One entry of a batch recording call for a single tenant."""
    request: RequestInfo
    request_id: RequestId
    idempotency_key: Optional[IdempotencyKey] = None
    metadata: Optional[Mapping[str, str]] = None
