"""
Audit store package for the per-entity-type change log.

This package provides the immutable AuditRecord model and an append-only
SQLite log per entity type, plus the registry that scatter-gather queries
fan out over.
"""

from .middleware import REQUEST_ID_HEADER, RequestIdMiddleware
from .models import (
    AuditRecord,
    ChangeKind,
    LogQuery,
    LogStats,
    SortDirection,
    ensure_aware,
    short_entity_name,
)
from .store import (
    SORTABLE_COLUMNS,
    AuditDatabase,
    AuditLog,
    AuditLogRegistry,
    EntityAuditLog,
    StoreUnavailableError,
    format_timestamp,
    generate_correlation_hash,
)

__all__ = [
    "AuditDatabase",
    "AuditLog",
    "AuditLogRegistry",
    "AuditRecord",
    "ChangeKind",
    "EntityAuditLog",
    "LogQuery",
    "LogStats",
    "REQUEST_ID_HEADER",
    "RequestIdMiddleware",
    "SORTABLE_COLUMNS",
    "SortDirection",
    "StoreUnavailableError",
    "ensure_aware",
    "format_timestamp",
    "generate_correlation_hash",
    "short_entity_name",
]
