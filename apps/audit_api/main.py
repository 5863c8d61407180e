"""Main FastAPI application for the audit trail browser.

This module provides a read-only REST API over the per-entity-type audit
logs: paginated browsing per data source, request correlation and actor
timelines across entity types.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from packages.actor_heuristic import SystemActorHeuristic
from packages.audit_config import AuditSettings, get_settings
from packages.audit_query import (
    AuditDataSource,
    AuditDataSourceFactory,
    DataFormatError,
    FilterCompiler,
    parse_bound,
)
from packages.audit_query.compiler import parse_flag
from packages.audit_store import (
    AuditDatabase,
    AuditLogRegistry,
    AuditRecord,
    RequestIdMiddleware,
    StoreUnavailableError,
    short_entity_name,
)
from packages.change_classifier import create_preview, detailed_structure
from packages.correlation import CorrelationEngine, CorrelationResult, merge_timeline, timeline_facets
from packages.snapshot import TypeMismatchError
from packages.structured_logging import get_logger, get_request_id, setup_logging

logger = get_logger(__name__)

NO_MATCHES_MESSAGE = "No matching records"
SERVICE_NAME = "Audit Trail API"
VERSION = "0.1.0"

# Global audit database instance
database: AuditDatabase | None = None

# Global registry of per-entity-type logs
registry: AuditLogRegistry | None = None

# Global correlation engine instance
correlation: CorrelationEngine | None = None

# Global data source factory instance
data_sources: AuditDataSourceFactory | None = None

# Global settings instance
settings: AuditSettings | None = None


class DataSourceInfo(BaseModel):
    """One browsable audit data source."""

    identifier: str
    entity_type: str
    short_name: str
    label: str
    default_sort_by: str
    default_sort_direction: str
    default_page_size: int


class RecordView(BaseModel):
    """Audit record with its change preview."""

    record: dict[str, Any]
    short_name: str
    preview: dict[str, Any]


class RecordDetail(RecordView):
    """Audit record with preview and detailed change breakdown."""

    details: dict[str, Any]


class EntriesResponse(BaseModel):
    """One page of a data source's records."""

    identifier: str
    items: list[RecordView] = Field(default_factory=list)
    total_items: int
    current_page: int
    page_size: int
    total_pages: int
    message: str | None = None


class CorrelationGroup(BaseModel):
    """Records of one entity type matched by a scatter-gather query."""

    entity_type: str
    short_name: str
    records: list[RecordView]


class CorrelationResponse(BaseModel):
    """Records of every entity type written for one request."""

    request_id: str
    total_records: int
    groups: list[CorrelationGroup] = Field(default_factory=list)
    message: str | None = None


class TimelineResponse(BaseModel):
    """Narrative cross-type timeline of one actor."""

    actor: str | None
    date_from: datetime
    date_to: datetime
    include_system: bool
    entries: list[RecordView] = Field(default_factory=list)
    entity_types: dict[str, str] = Field(default_factory=dict)
    change_kinds: list[str] = Field(default_factory=list)
    message: str | None = None


def configure(audit_settings: AuditSettings, audit_database: AuditDatabase | None = None) -> None:
    """
    Build the audit services from settings.

    Args:
        audit_settings: Settings to build from
        audit_database: Database to serve (opened from settings.db_path when None)
    """
    global database, registry, correlation, data_sources, settings

    settings = audit_settings
    database = audit_database or AuditDatabase(
        audit_settings.db_path,
        actor_search=audit_settings.actor_search_enabled,
        context_lookup=audit_settings.context_lookup_enabled,
    )
    registry = database.registry()
    correlation = CorrelationEngine(registry, max_workers=audit_settings.correlation_max_workers)
    compiler = FilterCompiler(
        heuristic=SystemActorHeuristic(audit_settings.system_actor_ids),
        correlation=correlation,
        tz=audit_settings.tzinfo,
        text_search_enabled=audit_settings.text_search_enabled,
    )
    data_sources = AuditDataSourceFactory(
        registry, compiler, default_page_size=audit_settings.default_page_size
    )

    logger.info("audit_api_configured", entity_types=len(registry), **audit_settings.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan management."""
    audit_settings = get_settings()
    setup_logging(level=audit_settings.log_level, json_output=audit_settings.log_json)
    configure(audit_settings)

    yield


# Create FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Read-only browsing, correlation and timelines over per-entity audit logs",
    version=VERSION,
    lifespan=lifespan,
)

# Add request ID middleware
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(DataFormatError)
@app.exception_handler(TypeMismatchError)
async def bad_input_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle malformed caller input."""
    logger.info("audit_request_rejected", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "request_id": get_request_id()},
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Handle an unreadable audit log in single-type operations."""
    logger.error(
        "audit_log_unavailable",
        path=request.url.path,
        entity_type=exc.entity_type,
        error=str(exc),
    )
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "request_id": get_request_id()},
    )


def _sync_registry() -> None:
    """Register logs of entity types first audited after startup."""
    if database is None or registry is None:
        return
    added = [t for t in database.entity_types() if t not in registry]
    if not added:
        return
    for entity_type in added:
        registry.register(database.log(entity_type))
    if data_sources is not None:
        data_sources.clear_cache()
    logger.info("audit_entity_types_discovered", entity_types=added)


def _require_data_sources() -> AuditDataSourceFactory:
    if data_sources is None:
        raise HTTPException(status_code=500, detail="Audit data sources not initialized")
    _sync_registry()
    return data_sources


def _require_correlation() -> CorrelationEngine:
    if correlation is None:
        raise HTTPException(status_code=500, detail="Correlation engine not initialized")
    _sync_registry()
    return correlation


def _get_data_source(identifier: str) -> AuditDataSource:
    data_source = _require_data_sources().get(identifier)
    if data_source is None:
        raise HTTPException(status_code=404, detail=f"Unknown data source: {identifier}")
    return data_source


def _tz():
    return settings.tzinfo if settings else timezone.utc


def _record_view(record: AuditRecord) -> RecordView:
    return RecordView(
        record=record.model_dump(mode="json"),
        short_name=short_entity_name(record.entity_type),
        preview=create_preview(record.change_set),
    )


def _timeline_response(
    result: CorrelationResult,
    actor: str | None,
    date_from: datetime,
    date_to: datetime,
    include_system: bool,
    entities: list[str] | None = None,
    actions: list[str] | None = None,
) -> TimelineResponse:
    entries = merge_timeline(result, entity_types=entities, change_kinds=actions)
    facets = timeline_facets(result)
    return TimelineResponse(
        actor=actor,
        date_from=date_from,
        date_to=date_to,
        include_system=include_system,
        entries=[_record_view(entry.record) for entry in entries],
        entity_types=facets.entity_types,
        change_kinds=facets.change_kinds,
        message=None if entries else NO_MATCHES_MESSAGE,
    )


@app.get("/")
async def root() -> dict:
    """Service info endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "healthy",
    }


@app.get("/api/v1/health")
async def health_check() -> dict:
    """Health check of the audit database.

    Returns:
        dict: Health status with component details
    """
    health: dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": get_request_id() or "none",
        "components": {},
    }

    if database is None:
        health["status"] = "degraded"
        health["components"]["audit_database"] = {"status": "not_initialized"}
        return health

    try:
        entity_types = database.entity_types()
        health["components"]["audit_database"] = {
            "status": "connected",
            "entity_types": len(entity_types),
        }
    except StoreUnavailableError as e:
        health["status"] = "unhealthy"
        health["components"]["audit_database"] = {"status": "error", "error": str(e)}

    return health


@app.get("/api/v1/audit/sources", response_model=list[DataSourceInfo])
async def list_sources() -> list[DataSourceInfo]:
    """List the browsable audit data sources, one per audited entity type."""
    return [
        DataSourceInfo(
            identifier=data_source.identifier,
            entity_type=data_source.entity_type,
            short_name=data_source.short_name,
            label=data_source.label,
            default_sort_by=data_source.default_sort_by,
            default_sort_direction=data_source.default_sort_direction,
            default_page_size=data_source.default_page_size,
        )
        for data_source in _require_data_sources().create_all()
    ]


@app.get("/api/v1/audit/sources/{identifier}/entries", response_model=EntriesResponse)
async def list_entries(
    identifier: str,
    search: str = "",
    page: int = 1,
    page_size: int | None = None,
    sort_by: str | None = None,
    sort_direction: str | None = None,
    subject_id: str | None = None,
    change_kind: list[str] | None = Query(None),
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    correlation_hash: str | None = None,
    actor_label: str | None = None,
    hide_system: str | None = None,
    request_id: str | None = None,
) -> EntriesResponse:
    """Query one page of a data source's audit records.

    Raises:
        HTTPException: 404 for unknown data sources, 400 for malformed
            dates or page sizes, 503 if the log cannot be read
    """
    data_source = _get_data_source(identifier)

    filters: dict[str, Any] = {
        "subject_id": subject_id,
        "change_kind": change_kind,
        "correlation_hash": correlation_hash,
        "actor_label": actor_label,
        "hide_system": hide_system,
        "request_id": request_id,
    }
    if date_from or date_to:
        filters["occurred_at"] = {"from": date_from, "to": date_to}

    result = data_source.query(
        search=search,
        filters=filters,
        sort_by=sort_by,
        sort_direction=sort_direction,
        page=page,
        page_size=page_size,
    )

    return EntriesResponse(
        identifier=data_source.identifier,
        items=[_record_view(record) for record in result.items],
        total_items=result.total_items,
        current_page=result.current_page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        message=None if result.items else NO_MATCHES_MESSAGE,
    )


@app.get(
    "/api/v1/audit/sources/{identifier}/entries/{record_id}",
    response_model=RecordDetail,
)
async def get_entry(identifier: str, record_id: str) -> RecordDetail:
    """Show one audit record with its preview and detailed breakdown.

    Raises:
        HTTPException: 404 for unknown data sources or records
    """
    data_source = _get_data_source(identifier)
    record = data_source.find(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Record {record_id} not found")

    view = _record_view(record)
    return RecordDetail(
        record=view.record,
        short_name=view.short_name,
        preview=view.preview,
        details=detailed_structure(record.change_set),
    )


@app.get("/api/v1/audit/correlation/{request_id}", response_model=CorrelationResponse)
async def get_correlation(request_id: str) -> CorrelationResponse:
    """Find the records of every entity type written for one request."""
    result = _require_correlation().find_by_correlation_id(request_id)

    groups = [
        CorrelationGroup(
            entity_type=entity_type,
            short_name=short_entity_name(entity_type),
            records=[_record_view(record) for record in records],
        )
        for entity_type, records in result.items()
    ]
    total = sum(len(group.records) for group in groups)

    return CorrelationResponse(
        request_id=request_id,
        total_records=total,
        groups=groups,
        message=None if total else NO_MATCHES_MESSAGE,
    )


@app.get("/api/v1/audit/timeline", response_model=TimelineResponse)
async def get_global_timeline(
    user: str | None = None,
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    include_system: str | None = None,
    anchor_is_system: str | None = None,
    entities: list[str] | None = Query(None),
    actions: list[str] | None = Query(None),
) -> TimelineResponse:
    """Show an actor's changes across entity types within a date range.

    Defaults to the last 24 hours. System events are included by default
    when the anchor record was itself automated.
    """
    tz = _tz()
    now = datetime.now(tz)
    start = parse_bound(date_from, tz, end_of_day=False) if date_from else now - timedelta(days=1)
    end = parse_bound(date_to, tz, end_of_day=True) if date_to else now

    anchor_system = bool(parse_flag(anchor_is_system))
    flag = parse_flag(include_system) if include_system is not None else None
    include = anchor_system if flag is None else flag

    actor = (user or "").strip() or None
    result = _require_correlation().find_global_timeline(actor, start, end, include)
    return _timeline_response(result, actor, start, end, include, entities, actions)


@app.get("/api/v1/audit/actor-timeline", response_model=TimelineResponse)
async def get_actor_timeline(
    at: str,
    actor: str | None = None,
    window_minutes: int | None = None,
    include_system: str | None = None,
) -> TimelineResponse:
    """Show what an actor did around a point in time, across entity types."""
    tz = _tz()
    center = parse_bound(at, tz, end_of_day=False)
    window = window_minutes if window_minutes is not None else (
        settings.timeline_window_minutes if settings else 30
    )
    if window < 0:
        raise DataFormatError(f"window_minutes must not be negative, got {window}")
    include = bool(parse_flag(include_system))

    label = (actor or "").strip() or None
    result = _require_correlation().find_actor_timeline(label, center, window, include)
    delta = timedelta(minutes=window)
    return _timeline_response(result, label, center - delta, center + delta, include)
