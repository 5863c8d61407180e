"""
Query result models and errors for audit log browsing.
"""

import math
from typing import Any, Callable

from pydantic import BaseModel, Field

from packages.audit_store import AuditRecord

# Record -> keep?
RecordPredicate = Callable[[AuditRecord], bool]


class DataFormatError(ValueError):
    """Raised when caller input (dates, page size) cannot be interpreted."""
    pass


class PaginatedResult(BaseModel):
    """
    One page of audit records with the total number of matches.
    """

    items: list[AuditRecord] = Field(default_factory=list, description="Records on this page")
    total_items: int = Field(..., ge=0, description="Total matching records")
    current_page: int = Field(..., ge=1, description="1-based page actually returned")
    page_size: int = Field(..., ge=1, description="Requested page size")

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.page_size) if self.total_items else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "items": [item.model_dump(mode="json") for item in self.items],
            "total_items": self.total_items,
            "current_page": self.current_page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }
