"""
Audit query package: filtered, paginated browsing of audit logs.

This package compiles caller filters into native log queries plus in-memory
predicates, paginates consistently across both paths, and exposes one data
source per audited entity type.
"""

from .compiler import (
    AuditDataSource,
    CompiledQuery,
    FilterCompiler,
    namespace_to_param,
    normalize_sort,
    parse_bound,
)
from .factory import AuditDataSourceFactory
from .models import DataFormatError, PaginatedResult, RecordPredicate
from .pipeline import apply_predicates, clamp_page, paginate, run_pipeline
from .reader import AuditReader

__all__ = [
    "AuditDataSource",
    "AuditDataSourceFactory",
    "AuditReader",
    "CompiledQuery",
    "DataFormatError",
    "FilterCompiler",
    "PaginatedResult",
    "RecordPredicate",
    "apply_predicates",
    "clamp_page",
    "namespace_to_param",
    "normalize_sort",
    "paginate",
    "parse_bound",
    "run_pipeline",
]
