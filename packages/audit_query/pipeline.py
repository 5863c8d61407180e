"""
In-memory filtering and pagination pipeline.

Used when a query needs predicates the log cannot evaluate natively: the
full native-filtered candidate set is filtered here, counted, and only then
sliced into a page. Paginating natively first would produce wrong totals and
short pages.
"""

import math
from typing import Iterable, Sequence

from packages.audit_store import AuditRecord

from .models import PaginatedResult, RecordPredicate


def clamp_page(total: int, page: int, page_size: int) -> int:
    """
    Clamp a requested 1-based page into the valid range.

    Args:
        total: Number of matching records
        page: Requested page
        page_size: Records per page

    Returns:
        Page within [1, ceil(total / page_size)], or 1 when nothing matches
    """
    if total <= 0:
        return 1
    total_pages = math.ceil(total / page_size)
    return min(max(1, page), total_pages)


def apply_predicates(
    records: Iterable[AuditRecord], predicates: Sequence[RecordPredicate]
) -> list[AuditRecord]:
    """Keep records accepted by every predicate, preserving order."""
    return [record for record in records if all(check(record) for check in predicates)]


def paginate(records: Sequence[AuditRecord], page: int, page_size: int) -> PaginatedResult:
    """Slice an already filtered and ordered record list into one page."""
    total = len(records)
    current_page = clamp_page(total, page, page_size)
    offset = (current_page - 1) * page_size
    return PaginatedResult(
        items=list(records[offset : offset + page_size]) if total else [],
        total_items=total,
        current_page=current_page,
        page_size=page_size,
    )


def run_pipeline(
    candidates: Iterable[AuditRecord],
    predicates: Sequence[RecordPredicate],
    page: int,
    page_size: int,
) -> PaginatedResult:
    """Filter candidates, count them, then return the requested page."""
    return paginate(apply_predicates(candidates, predicates), page, page_size)
