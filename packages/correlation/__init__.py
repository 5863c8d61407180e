"""
Cross-entity-type correlation of audit records.

Each entity type keeps its own audit log, so related changes cannot be
joined in one query. The CorrelationEngine issues the same logical query
against every registered log (scatter) and merges the per-type results
(gather). A log that cannot be read is skipped: correlation is best-effort
discovery, so partial results are returned instead of an error.

Usage:
    engine = CorrelationEngine(registry)
    related = engine.find_by_correlation_id("c0ffee-request")
    timeline = merge_timeline(engine.find_global_timeline("ops@example.com", start, end))
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping

from packages.audit_store import (
    AuditLog,
    AuditLogRegistry,
    AuditRecord,
    ChangeKind,
    LogQuery,
    SortDirection,
    StoreUnavailableError,
    ensure_aware,
    short_entity_name,
)
from packages.structured_logging import get_logger

logger = get_logger(__name__)

CorrelationResult = dict[str, list[AuditRecord]]


@dataclass(frozen=True)
class TimelineEntry:
    """One record of a merged cross-type timeline."""

    entity_type: str
    record: AuditRecord

    @property
    def short_name(self) -> str:
        return short_entity_name(self.entity_type)


@dataclass
class TimelineFacets:
    """Entity types and change kinds present in a timeline, for filter choices.

    Attributes:
        entity_types: Entity type -> short name, ordered by short name
        change_kinds: Change kind wire values, sorted
    """
    entity_types: dict[str, str] = field(default_factory=dict)
    change_kinds: list[str] = field(default_factory=list)


def _actor_matcher(
    actor_label: str | None, include_system_events: bool
) -> Callable[[AuditRecord], bool]:
    """
    Build the timeline actor predicate.

    Labels compare case-insensitively. Records without an actor label are
    included only when system events are requested; an anonymous reference
    actor matches only records without an actor label.
    """
    target = (actor_label or "").strip().casefold()

    def matches(record: AuditRecord) -> bool:
        anonymous = not record.actor_label
        if not target:
            return anonymous
        if anonymous:
            return include_system_events
        return record.actor_label.strip().casefold() == target

    return matches


class CorrelationEngine:
    """Scatter-gather queries over every registered entity type's audit log."""

    def __init__(self, registry: AuditLogRegistry, max_workers: int = 1) -> None:
        """
        Initialize correlation engine.

        Args:
            registry: Per-entity-type audit logs to fan out over
            max_workers: Threads used for the fan-out (1 = sequential)
        """
        self.registry = registry
        self.max_workers = max(1, max_workers)

    def find_by_correlation_id(self, correlation_id: str) -> CorrelationResult:
        """
        Find records of every entity type written for one request.

        Matches the requestId the producer attached under @context.

        Args:
            correlation_id: Request/correlation identifier

        Returns:
            Entity type -> records (occurred_at desc, id desc); types without
            matches or whose log failed are omitted
        """
        correlation_id = (correlation_id or "").strip()
        if not correlation_id:
            return {}

        def fetch(log: AuditLog) -> list[AuditRecord]:
            if log.supports_context_lookup:
                return log.query(
                    LogQuery(
                        request_id=correlation_id,
                        order_by="occurred_at",
                        direction=SortDirection.DESC,
                    )
                )
            # No structured lookup: scan the log
            records = log.query(LogQuery(order_by="occurred_at", direction=SortDirection.DESC))
            return [record for record in records if record.request_id == correlation_id]

        return self._scatter("find_by_correlation_id", fetch)

    def find_actor_timeline(
        self,
        actor_label: str | None,
        occurred_at: datetime,
        window_minutes: int = 30,
        include_system_events: bool = False,
    ) -> CorrelationResult:
        """
        Find what an actor did around a point in time, across entity types.

        Args:
            actor_label: Reference actor label (None for an anonymous actor)
            occurred_at: Center of the window
            window_minutes: Minutes on either side of occurred_at
            include_system_events: Also include records without an actor

        Returns:
            Entity type -> records in narrative order (occurred_at asc, id asc)
        """
        center = ensure_aware(occurred_at)
        window = timedelta(minutes=max(0, window_minutes))
        return self._timeline(
            "find_actor_timeline",
            actor_label,
            center - window,
            center + window,
            include_system_events,
        )

    def find_global_timeline(
        self,
        actor_label: str | None,
        date_from: datetime,
        date_to: datetime,
        include_system_events: bool = False,
    ) -> CorrelationResult:
        """
        Find an actor's records across entity types within an absolute range.

        Returns:
            Entity type -> records in narrative order (occurred_at asc, id asc)
        """
        return self._timeline(
            "find_global_timeline",
            actor_label,
            ensure_aware(date_from),
            ensure_aware(date_to),
            include_system_events,
        )

    def _timeline(
        self,
        operation: str,
        actor_label: str | None,
        start: datetime,
        end: datetime,
        include_system_events: bool,
    ) -> CorrelationResult:
        matches = _actor_matcher(actor_label, include_system_events)
        window_query = LogQuery(
            occurred_from=start,
            occurred_to=end,
            order_by="occurred_at",
            direction=SortDirection.ASC,
        )

        def fetch(log: AuditLog) -> list[AuditRecord]:
            return [record for record in log.query(window_query) if matches(record)]

        return self._scatter(operation, fetch)

    def _scatter(
        self, operation: str, fetch: Callable[[AuditLog], list[AuditRecord]]
    ) -> CorrelationResult:
        logs = self.registry.logs()

        def safe_fetch(log: AuditLog) -> list[AuditRecord]:
            try:
                return fetch(log)
            except StoreUnavailableError as e:
                logger.warning(
                    "correlation_log_skipped",
                    operation=operation,
                    entity_type=log.entity_type,
                    error=str(e),
                )
                return []
            except Exception as e:
                # Registered logs need not be EntityAuditLog
                logger.error(
                    "correlation_log_failed",
                    operation=operation,
                    entity_type=log.entity_type,
                    error=str(e),
                    exc_info=True,
                )
                return []

        if self.max_workers > 1 and len(logs) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(logs))) as pool:
                gathered = list(pool.map(safe_fetch, logs))
        else:
            gathered = [safe_fetch(log) for log in logs]

        result: CorrelationResult = {
            log.entity_type: records for log, records in zip(logs, gathered) if records
        }

        logger.debug(
            "correlation_completed",
            operation=operation,
            entity_types=len(logs),
            matched_types=len(result),
            matched_records=sum(len(records) for records in result.values()),
        )
        return result


def merge_timeline(
    result: Mapping[str, Iterable[AuditRecord]],
    entity_types: Iterable[str] | None = None,
    change_kinds: Iterable[ChangeKind | str] | None = None,
) -> list[TimelineEntry]:
    """
    Flatten a per-type timeline into one narrative sequence.

    Args:
        result: Entity type -> records
        entity_types: Keep only these entity types (all when empty)
        change_kinds: Keep only these change kinds (all when empty)

    Returns:
        Entries sorted by (occurred_at, id) ascending
    """
    type_filter = set(entity_types or [])
    kind_filter: set[ChangeKind] = set()
    for kind in change_kinds or []:
        try:
            kind_filter.add(ChangeKind.parse(kind))
        except ValueError:
            logger.debug("timeline_change_kind_ignored", change_kind=str(kind))

    entries = [
        TimelineEntry(entity_type=entity_type, record=record)
        for entity_type, records in result.items()
        if not type_filter or entity_type in type_filter
        for record in records
        if not kind_filter or record.change_kind in kind_filter
    ]
    entries.sort(key=lambda entry: entry.record.sort_key)
    return entries


def timeline_facets(result: Mapping[str, Iterable[AuditRecord]]) -> TimelineFacets:
    """Collect the entity types and change kinds present in a timeline."""
    entity_types: dict[str, str] = {}
    change_kinds: set[str] = set()

    for entity_type, records in result.items():
        entity_types[entity_type] = short_entity_name(entity_type)
        change_kinds.update(record.change_kind.value for record in records)

    return TimelineFacets(
        entity_types=dict(sorted(entity_types.items(), key=lambda item: item[1])),
        change_kinds=sorted(change_kinds),
    )


__all__ = [
    "CorrelationEngine",
    "CorrelationResult",
    "TimelineEntry",
    "TimelineFacets",
    "merge_timeline",
    "timeline_facets",
]
