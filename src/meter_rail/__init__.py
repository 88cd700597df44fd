"""
METER RAIL
Exactly-once usage metering for multi-tenant APIs.

Every handled request is stamped in a dedupe store, priced by
longest-prefix unit rules, and written once to a durable usage sink.
"""

from .core import (
    HeaderNames,
    TenantId,
    EndpointKey,
    IdempotencyKey,
    RequestId,
    RequestInfo,
    UnitsResult,
    UsageEvent,
    UsageBatchItem,
    SystemClock,
    ManualClock,
    MeteringError,
    DedupeStoreUnavailableError,
    SinkWriteError,
    RuleConfigError,
    DedupeScope,
    DedupeKeyPolicy,
    InMemoryDedupeStore,
)
from .billing import (
    UnitRule,
    PrefixRuleResolver,
    RuleBasedUnitCalculator,
    CollectingUsageSink,
    FileUsageSink,
    UsageMeter,
)

__version__ = "1.0.0"

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
    "SystemClock",
    "ManualClock",
    "MeteringError",
    "DedupeStoreUnavailableError",
    "SinkWriteError",
    "RuleConfigError",
    "DedupeScope",
    "DedupeKeyPolicy",
    "InMemoryDedupeStore",
    "UnitRule",
    "PrefixRuleResolver",
    "RuleBasedUnitCalculator",
    "CollectingUsageSink",
    "FileUsageSink",
    "UsageMeter",
]
