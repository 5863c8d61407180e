"""
Entity-scoped audit reader for unpaginated lookups.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable

from packages.audit_store import (
    AuditLogRegistry,
    AuditRecord,
    ChangeKind,
    LogQuery,
    SortDirection,
)

FAR_FUTURE = timedelta(days=365 * 100 + 25)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

ORDER_FIELDS = {
    "id": "id",
    "occurred_at": "occurred_at",
    "created_at": "occurred_at",
    "createdAt": "occurred_at",
    "subject_id": "subject_id",
    "object_id": "subject_id",
    "entityId": "subject_id",
}


class AuditReader:
    """
    Simple audit queries for one entity type at a time.

    Usage:
        records = reader.find_by_subjects("App\\\\Entity\\\\Product", ["1", "2"], start, end, "update")
    """

    def __init__(self, registry: AuditLogRegistry) -> None:
        self.registry = registry

    def find_by_subjects(
        self,
        entity_type: str,
        subject_ids: Iterable[str | int] | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        change_kind: ChangeKind | str | None = None,
        order_by: str = "id",
        direction: str = "DESC",
    ) -> list[AuditRecord]:
        """
        Find records of an entity type, optionally for some subjects and a time range.

        Args:
            entity_type: Audited entity type
            subject_ids: Subjects to include (all when None or empty)
            date_from: Start of time range (inclusive)
            date_to: End of time range (inclusive)
            change_kind: Only records of this kind
            order_by: id, occurred_at or subject_id (unknown names sort by id)
            direction: ASC or DESC

        Returns:
            Matching records; empty when the entity type has no log

        Raises:
            ValueError: If change_kind names no change kind
            StoreUnavailableError: If the log cannot be read
        """
        log = self.registry.get(entity_type)
        if log is None:
            return []

        query = LogQuery(
            order_by=ORDER_FIELDS.get(order_by, "id"),
            direction=SortDirection.ASC if direction.upper() == "ASC" else SortDirection.DESC,
        )

        ids = [str(subject_id) for subject_id in subject_ids or []]
        if ids:
            query.subject_ids = ids

        if date_from is not None or date_to is not None:
            query.occurred_from = date_from or EPOCH
            query.occurred_to = date_to or datetime.now(timezone.utc) + FAR_FUTURE

        if change_kind is not None:
            query.change_kinds = [ChangeKind.parse(change_kind)]

        return log.query(query)
