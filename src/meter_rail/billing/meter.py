"""
Usage Meter

Orchestrates one metering pass per request:

1. Stamp the identity in the dedupe store
2. Stop on a duplicate (no calculation, no write)
3. Calculate units
4. Build the event (fresh id, clock time)
5. Write to the sink
6. Return the event

Duplicates never reach calculation or the sink. No lock is held across the
awaits.

If anything fails after a successful stamp (sink error, cancellation), the
meter releases the stamps it took before surfacing the failure, so a retry
of the same call is recorded instead of being dropped as a duplicate. A
cancellation that lands while the stamp call is still in flight waits for
that call and releases whatever it installed. Releases only remove the stamp
this call installed, never a newer one taken after expiry.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence
import structlog

from ..core.clock import Clock, SystemClock
from ..core.dedupe import DedupeStamp, DedupeStore
from ..core.errors import DedupeStoreUnavailableError, MeteringError, SinkWriteError
from ..core.types import (
    EndpointKey,
    IdempotencyKey,
    RequestId,
    RequestInfo,
    TenantId,
    UsageBatchItem,
    UsageEvent,
)
from .calculator import UnitCalculator
from .sinks import UsageSink

logger = structlog.get_logger()

DEFAULT_DEDUPE_TTL = timedelta(hours=24)


class UsageMeter:
    """Dedupe-then-calculate-then-write usage recorder."""

    def __init__(
        self,
        calculator: UnitCalculator,
        dedupe_store: DedupeStore,
        sink: UsageSink,
        clock: Optional[Clock] = None,
        ttl: timedelta = DEFAULT_DEDUPE_TTL,
    ):
        self.calculator = calculator
        self.dedupe_store = dedupe_store
        self.sink = sink
        self.clock = clock or SystemClock()
        self.ttl = ttl

        self._metrics_lock = Lock()
        self._metrics: Dict[str, Any] = {
            "recorded": 0,
            "duplicates": 0,
            "sink_failures": 0,
            "cancelled": 0,
            "last_recorded_at": None,
        }

    async def try_record(
        self,
        tenant: TenantId,
        request: RequestInfo,
        idempotency_key: Optional[IdempotencyKey],
        request_id: RequestId,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> Optional[UsageEvent]:
        """
        Record usage for one request.

        Returns the event when the identity is first-seen, or None for a
        duplicate. Raises DedupeStoreUnavailableError when the stamp could
        not be taken and SinkWriteError when the write failed.
        """
        stamp = await self._acquire(tenant, request_id, idempotency_key, request.endpoint)
        if stamp is None:
            self._bump("duplicates")
            logger.info(
                "usage_duplicate_suppressed",
                tenant_id=tenant.value,
                request_id=request_id.value,
                endpoint=request.endpoint.value,
            )
            return None

        stamps = [stamp]
        try:
            event = self._build_event(tenant, request, request_id, idempotency_key, metadata)
        except Exception:
            await self._release_all(tenant, stamps)
            raise

        await self._write_or_compensate(tenant, [event], stamps)

        logger.info(
            "usage_recorded",
            event_id=event.event_id,
            tenant_id=tenant.value,
            request_id=request_id.value,
            endpoint=event.endpoint.value,
            units=str(event.units),
            rule_id=event.rule_id,
        )
        return event

    async def try_record_batch(
        self,
        tenant: TenantId,
        items: Sequence[UsageBatchItem],
    ) -> List[UsageEvent]:
        """
        Record a batch of requests for one tenant.

        Duplicates are left out of both the result and the sink write. All
        new events go to the sink in a single write; nothing is written when
        every item is a duplicate.
        """
        stamps: List[DedupeStamp] = []
        events: List[UsageEvent] = []
        duplicates = 0

        try:
            for item in items:
                stamp = await self._acquire(
                    tenant, item.request_id, item.idempotency_key, item.request.endpoint
                )
                if stamp is None:
                    duplicates += 1
                    continue

                stamps.append(stamp)
                events.append(self._build_event(
                    tenant, item.request, item.request_id, item.idempotency_key, item.metadata
                ))
        except BaseException:
            # Stamps taken for earlier items would otherwise block their retry
            await self._release_all(tenant, stamps)
            raise

        if duplicates:
            self._bump("duplicates", duplicates)
            logger.info("usage_batch_duplicates_suppressed", tenant_id=tenant.value, count=duplicates)

        if not events:
            return []

        await self._write_or_compensate(tenant, events, stamps)

        logger.info(
            "usage_batch_recorded",
            tenant_id=tenant.value,
            count=len(events),
            units=str(sum((e.units for e in events), Decimal("0"))),
        )
        return events

    def get_metrics(self) -> Dict[str, Any]:
        """Counters since this meter was created."""
        with self._metrics_lock:
            return self._metrics.copy()

    async def _acquire(
        self,
        tenant: TenantId,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        endpoint: EndpointKey,
    ) -> Optional[DedupeStamp]:
        pending = asyncio.ensure_future(self.dedupe_store.acquire(
            tenant, request_id, idempotency_key, self.ttl, endpoint=endpoint
        ))
        try:
            # The store call may finish on a worker thread after we are cancelled
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            self._bump("cancelled")
            stamp = await self._settle(pending)
            if stamp is not None:
                await self._release_all(tenant, [stamp])
            logger.warning(
                "usage_stamp_cancelled",
                tenant_id=tenant.value,
                request_id=request_id.value,
                stamp_taken=stamp is not None,
            )
            raise
        except MeteringError:
            raise
        except Exception as e:
            logger.error(
                "dedupe_store_unavailable",
                tenant_id=tenant.value,
                request_id=request_id.value,
                error=str(e),
            )
            raise DedupeStoreUnavailableError(f"Dedupe store unavailable: {e}") from e

    def _build_event(
        self,
        tenant: TenantId,
        request: RequestInfo,
        request_id: RequestId,
        idempotency_key: Optional[IdempotencyKey],
        metadata: Optional[Mapping[str, str]],
    ) -> UsageEvent:
        result = self.calculator.calculate(request)
        return UsageEvent(
            event_id=UsageEvent.new_event_id(),
            tenant=tenant,
            endpoint=request.endpoint,
            units=result.units,
            occurred_at=self.clock.now(),
            request_id=request_id,
            idempotency_key=idempotency_key,
            rule_id=result.rule_id,
            status_code=request.status_code,
            metadata=metadata,
        )

    async def _write_or_compensate(
        self,
        tenant: TenantId,
        events: List[UsageEvent],
        stamps: List[DedupeStamp],
    ) -> None:
        try:
            await self.sink.write(events)
        except asyncio.CancelledError:
            self._bump("cancelled")
            await self._release_all(tenant, stamps)
            logger.warning("usage_write_cancelled", tenant_id=tenant.value, count=len(events))
            raise
        except Exception as e:
            self._bump("sink_failures")
            released = await self._release_all(tenant, stamps)
            logger.error(
                "usage_sink_write_failed",
                tenant_id=tenant.value,
                count=len(events),
                stamps_released=released,
                error=str(e),
            )
            raise SinkWriteError(f"Usage sink write failed: {e}", released=released) from e

        self._bump("recorded", len(events))
        with self._metrics_lock:
            self._metrics["last_recorded_at"] = events[-1].occurred_at.isoformat()

    @staticmethod
    async def _settle(pending: "asyncio.Future[Optional[DedupeStamp]]") -> Optional[DedupeStamp]:
        """Wait out an abandoned acquire; a failed one stamped nothing."""
        try:
            return await pending
        except Exception:
            return None

    async def _release_all(self, tenant: TenantId, stamps: List[DedupeStamp]) -> bool:
        """
        Best-effort unstamp of the stamps this call installed.

        A stamp already replaced by a later caller is left in place. Returns
        False if any release failed.
        """
        all_released = True
        for stamp in stamps:
            try:
                await self.dedupe_store.release_stamp(stamp)
            except Exception as e:
                all_released = False
                logger.error(
                    "dedupe_release_failed",
                    tenant_id=tenant.value,
                    request_id=stamp.key.request_id,
                    error=str(e),
                )
        return all_released

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._metrics_lock:
            self._metrics[name] += amount
