"""
METER RAIL - Core Module

Value types, clocks, errors and the deduplication store shared by the
metering pipeline.
"""

from .types import (
    HeaderNames,
    TenantId,
    EndpointKey,
    IdempotencyKey,
    RequestId,
    RequestInfo,
    UnitsResult,
    UsageEvent,
    UsageBatchItem,
)
from .clock import Clock, SystemClock, ManualClock
from .errors import MeteringError, DedupeStoreUnavailableError, SinkWriteError, RuleConfigError
from .dedupe import DedupeScope, DedupeKey, DedupeKeyPolicy, DedupeStamp, DedupeStore, InMemoryDedupeStore

__all__ = [
    "HeaderNames",
    "TenantId",
    "EndpointKey",
    "IdempotencyKey",
    "RequestId",
    "RequestInfo",
    "UnitsResult",
    "UsageEvent",
    "UsageBatchItem",
    "Clock",
    "SystemClock",
    "ManualClock",
    "MeteringError",
    "DedupeStoreUnavailableError",
    "SinkWriteError",
    "RuleConfigError",
    "DedupeScope",
    "DedupeKey",
    "DedupeKeyPolicy",
    "DedupeStamp",
    "DedupeStore",
    "InMemoryDedupeStore",
]
