"""
METER RAIL - FastAPI Server

HTTP surface for the metering pipeline.

Endpoints:
- GET  /health                     - Liveness and configuration summary
- POST /usage/{tenant_id}          - Meter one handled request
- POST /usage/{tenant_id}/batch    - Meter a batch of handled requests
- GET  /usage/{tenant_id}/events   - Recorded events for a tenant
- POST /units/quote                - Calculate units without recording
- GET  /metrics                    - Meter counters

`X-Request-Id` is required on metering calls and `Idempotency-Key` is
optional. Recorded units are echoed back in `X-Usage-Units`.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..billing.calculator import RuleBasedUnitCalculator
from ..billing.meter import UsageMeter
from ..billing.rules import PrefixRuleResolver, load_rules
from ..config import MeterSettings
from ..core.clock import Clock, SystemClock
from ..core.dedupe import DedupeKeyPolicy
from ..core.errors import DedupeStoreUnavailableError, SinkWriteError
from ..core.types import (
    EndpointKey,
    HeaderNames,
    IdempotencyKey,
    RequestId,
    RequestInfo,
    TenantId,
    UsageBatchItem,
    UsageEvent,
)
from ..persistence.adapters import DatabaseDedupeStore, DatabaseUsageSink
from ..persistence.database import Database
from ..persistence.repository import UsageEventRepository

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class MeteredRequest(BaseModel):
    """Facts about a handled request."""
    method: str = Field(default="POST", description="HTTP method of the handled request")
    path: str = Field(..., description="Raw request path")
    endpoint: str = Field(..., description="Logical endpoint key, e.g. Loans.Amortize")
    status_code: int = Field(default=200)
    timestamp: Optional[datetime] = Field(None, description="When the request was handled (UTC)")
    items: Dict[str, Any] = Field(default_factory=dict, description="Per-item billing inputs")


class RecordUsageRequest(MeteredRequest):
    """Request body for metering a single request."""
    metadata: Optional[Dict[str, str]] = None


class BatchItem(MeteredRequest):
    """One entry of a batch; identity travels in the body."""
    request_id: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


class BatchRequest(BaseModel):
    items: List[BatchItem] = Field(..., max_length=1000)


class UsageEventResponse(BaseModel):
    event_id: str
    tenant_id: str
    endpoint: str
    units: str
    occurred_at: str
    request_id: str
    idempotency_key: Optional[str]
    rule_id: Optional[str]
    status_code: Optional[int]
    metadata: Optional[Dict[str, str]]


class RecordUsageResponse(BaseModel):
    recorded: bool
    event: Optional[UsageEventResponse] = None


class BatchResponse(BaseModel):
    recorded: int
    events: List[UsageEventResponse]


class QuoteResponse(BaseModel):
    units: str
    reason: str
    rule_id: Optional[str]


class HealthResponse(BaseModel):
    status: str
    version: str
    dedupe_scope: str
    rules_loaded: int
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Wires the metering pipeline from settings."""

    def __init__(self, settings: MeterSettings, clock: Optional[Clock] = None):
        self.settings = settings
        self.clock = clock or SystemClock()

        self.db = Database(settings.database_url)
        self.db.initialize()

        rules = load_rules(settings.rules_path) if settings.rules_path else []
        self.resolver = PrefixRuleResolver(rules)
        self.calculator = RuleBasedUnitCalculator(self.resolver)

        self.dedupe_store = DatabaseDedupeStore(
            self.db,
            clock=self.clock,
            policy=DedupeKeyPolicy(settings.dedupe_scope),
        )
        self.sink = DatabaseUsageSink(self.db)
        self.events = UsageEventRepository(self.db)
        self.meter = UsageMeter(
            calculator=self.calculator,
            dedupe_store=self.dedupe_store,
            sink=self.sink,
            clock=self.clock,
            ttl=settings.dedupe_ttl,
        )
        self.start_time = datetime.now(timezone.utc)

    def close(self) -> None:
        self.db.close()


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "meter_state", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    request: Request,
    x_api_key: str = Header(..., alias="X-API-Key"),
) -> str:
    """Verify API key."""
    state = get_state(request)
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def _to_request_info(body: MeteredRequest, state: AppState) -> RequestInfo:
    timestamp = body.timestamp or state.clock.now()
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return RequestInfo(
        method=body.method.upper(),
        path=body.path,
        timestamp=timestamp,
        endpoint=EndpointKey(body.endpoint),
        status_code=body.status_code,
        items=body.items,
    )


def _event_response(event: UsageEvent) -> UsageEventResponse:
    return UsageEventResponse(**event.to_dict())


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        dedupe_scope=state.settings.dedupe_scope.value,
        rules_loaded=len(state.resolver.rules),
        uptime_seconds=uptime,
    )


@router.post("/usage/{tenant_id}", response_model=RecordUsageResponse, tags=["Metering"])
async def record_usage(
    tenant_id: str,
    body: RecordUsageRequest,
    response: Response,
    request_id: str = Header(..., alias=HeaderNames.REQUEST_ID, min_length=1),
    idempotency_key: Optional[str] = Header(None, alias=HeaderNames.IDEMPOTENCY_KEY),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Meter one handled request.

    201 with the event when first seen, 200 with `recorded: false` for a
    duplicate delivery.
    """
    event = await state.meter.try_record(
        tenant=TenantId(tenant_id),
        request=_to_request_info(body, state),
        idempotency_key=IdempotencyKey(idempotency_key) if idempotency_key else None,
        request_id=RequestId(request_id),
        metadata=body.metadata,
    )

    if event is None:
        return RecordUsageResponse(recorded=False)

    response.status_code = 201
    response.headers[HeaderNames.USAGE_UNITS] = str(event.units)
    return RecordUsageResponse(recorded=True, event=_event_response(event))


@router.post("/usage/{tenant_id}/batch", response_model=BatchResponse, tags=["Metering"])
async def record_usage_batch(
    tenant_id: str,
    body: BatchRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Meter a batch; duplicates are left out of the response."""
    items = [
        UsageBatchItem(
            request=_to_request_info(item, state),
            request_id=RequestId(item.request_id),
            idempotency_key=IdempotencyKey(item.idempotency_key) if item.idempotency_key else None,
            metadata=item.metadata,
        )
        for item in body.items
    ]

    events = await state.meter.try_record_batch(TenantId(tenant_id), items)
    return BatchResponse(recorded=len(events), events=[_event_response(e) for e in events])


@router.get("/usage/{tenant_id}/events", tags=["Metering"])
async def list_usage_events(
    tenant_id: str,
    limit: int = 100,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Recorded usage events for a tenant, newest first."""
    if limit < 1 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")

    records = state.events.get_by_tenant(tenant_id, limit=limit)
    return {
        "tenant_id": tenant_id,
        "total": len(records),
        "events": [r.to_event().to_dict() for r in records],
    }


@router.post("/units/quote", response_model=QuoteResponse, tags=["Metering"])
async def quote_units(
    body: MeteredRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Calculate units for a request without stamping or recording it."""
    result = state.calculator.calculate(_to_request_info(body, state))
    return QuoteResponse(units=str(result.units), reason=result.reason, rule_id=result.rule_id)


@router.get("/metrics", tags=["Monitoring"])
async def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Meter counters since startup."""
    return {
        "meter": state.meter.get_metrics(),
        "events": {"total": state.events.count()},
    }


# ============================================================================
# Application Factory
# ============================================================================

async def _dedupe_unavailable_handler(request: Request, exc: DedupeStoreUnavailableError):
    logger.error("request_failed_dedupe_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Dedupe store unavailable; retry the request"})


async def _sink_write_handler(request: Request, exc: SinkWriteError):
    logger.error("request_failed_sink_write", path=request.url.path, error=str(exc), released=exc.released)
    return JSONResponse(status_code=502, content={"detail": "Usage sink write failed", "retry_safe": exc.released})


def create_app(
    settings: Optional[MeterSettings] = None,
    state: Optional[AppState] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    With `state` the pipeline is used as given; otherwise it is built from
    `settings` (or the environment) when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "meter_state", None) is None:
            app.state.meter_state = AppState(settings or MeterSettings.from_env())
            owned = True
        logger.info("meter_rail_starting", version=VERSION)
        yield
        logger.info("meter_rail_stopping")
        if owned:
            app.state.meter_state.close()
            app.state.meter_state = None

    application = FastAPI(
        title="Meter Rail",
        description="Exactly-once usage metering for multi-tenant APIs.",
        version=VERSION,
        lifespan=lifespan,
    )
    application.state.meter_state = state
    application.include_router(router)
    application.add_exception_handler(DedupeStoreUnavailableError, _dedupe_unavailable_handler)
    application.add_exception_handler(SinkWriteError, _sink_write_handler)
    return application


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "meter_rail.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
