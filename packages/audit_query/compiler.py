"""
Filter compilation and paginated querying of one entity type's audit log.

Caller filters are split into the part the log evaluates natively (exact,
IN and range filters, ordering, limit/offset) and predicates that have to run
in memory (global search, request id, hiding automated changes and
case-insensitive actor search). When any in-memory predicate is needed the
whole native-filtered candidate set is fetched and paginated in memory.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Mapping

from packages.actor_heuristic import SystemActorHeuristic
from packages.audit_store import (
    SORTABLE_COLUMNS,
    AuditLog,
    AuditRecord,
    ChangeKind,
    LogQuery,
    SortDirection,
    short_entity_name,
)
from packages.correlation import CorrelationEngine
from packages.structured_logging import get_logger

from .models import DataFormatError, PaginatedResult, RecordPredicate
from .pipeline import clamp_page, run_pipeline

logger = get_logger(__name__)

DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
WILDCARD = "*"
FAR_FUTURE = timedelta(days=365 * 100 + 25)
EPOCH = date(1970, 1, 1)

DEFAULT_SORT_BY = "occurred_at"
DEFAULT_SORT_DIRECTION = SortDirection.DESC

# Accepted spellings of filter and sort keys
FILTER_ALIASES = {
    "subjectId": "subject_id",
    "object_id": "subject_id",
    "changeKind": "change_kind",
    "type": "change_kind",
    "occurredAt": "occurred_at",
    "created_at": "occurred_at",
    "correlationHash": "correlation_hash",
    "transaction_hash": "correlation_hash",
    "actorLabel": "actor_label",
    "blame_user": "actor_label",
    "hideSystem": "hide_system",
    "requestId": "request_id",
}
SORT_ALIASES = {
    "subjectId": "subject_id",
    "object_id": "subject_id",
    "changeKind": "change_kind",
    "type": "change_kind",
    "occurredAt": "occurred_at",
    "created_at": "occurred_at",
}

TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off", ""}


def parse_bound(value: Any, tz: tzinfo, end_of_day: bool) -> datetime:
    """
    Parse a date range bound.

    Date-only values expand to 00:00:00 (start) or 23:59:59 (end) in the
    given timezone; naive datetimes are interpreted in that timezone.

    Raises:
        DataFormatError: If the value is not a date or datetime
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=tz)
    if isinstance(value, date):
        return datetime.combine(value, time(23, 59, 59) if end_of_day else time.min, tzinfo=tz)

    text = str(value).strip()
    try:
        if DATE_ONLY.match(text):
            day = date.fromisoformat(text)
            return datetime.combine(day, time(23, 59, 59) if end_of_day else time.min, tzinfo=tz)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise DataFormatError(f"Invalid date format: {text!r}") from e

    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)


def parse_flag(value: Any) -> bool | None:
    """Interpret a boolean filter value; None when it cannot be interpreted."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
    return None


def normalize_sort(sort_by: str | None, sort_direction: str | None) -> tuple[str, SortDirection]:
    """Resolve sort field and direction against the allow-list, falling back to the default sort."""
    field_name = SORT_ALIASES.get(sort_by or "", sort_by or "")
    if field_name not in SORTABLE_COLUMNS:
        return DEFAULT_SORT_BY, DEFAULT_SORT_DIRECTION

    direction = (sort_direction or "").strip().upper()
    if direction not in (SortDirection.ASC.value, SortDirection.DESC.value):
        return field_name, DEFAULT_SORT_DIRECTION
    return field_name, SortDirection(direction)


def search_predicate(search: str) -> RecordPredicate:
    """Case-insensitive substring match over subject id, actor label and change set."""
    needle = search.casefold()

    def matches(record: AuditRecord) -> bool:
        haystacks = (
            record.subject_id,
            record.actor_label or "",
            json.dumps(record.change_set, default=str, ensure_ascii=False),
        )
        return any(needle in text.casefold() for text in haystacks)

    return matches


@dataclass
class CompiledQuery:
    """Native query plus the predicates left for in-memory evaluation."""

    native: LogQuery
    predicates: list[RecordPredicate] = field(default_factory=list)
    in_memory: bool = False


class FilterCompiler:
    """
    Compiles caller filters into a native log query and in-memory predicates.

    Unknown filter keys and uninterpretable values are ignored; only
    malformed dates are rejected.
    """

    def __init__(
        self,
        heuristic: SystemActorHeuristic | None = None,
        correlation: CorrelationEngine | None = None,
        tz: tzinfo = timezone.utc,
        text_search_enabled: bool = True,
    ) -> None:
        """
        Initialize filter compiler.

        Args:
            heuristic: Automated-actor classification for hide_system
            correlation: Engine resolving request_id filters across logs
            tz: Timezone for date-only and naive date bounds
            text_search_enabled: Evaluate global search in memory; when
                disabled search is an exact subject id filter
        """
        self.heuristic = heuristic or SystemActorHeuristic()
        self.correlation = correlation
        self.tz = tz
        self.text_search_enabled = text_search_enabled

    def compile(
        self,
        log: AuditLog,
        search: str = "",
        filters: Mapping[str, Any] | None = None,
        sort_by: str | None = None,
        sort_direction: str | None = None,
    ) -> CompiledQuery:
        """
        Compile search, filters and sort for one log.

        Args:
            log: Target audit log (its capabilities decide what runs natively)
            search: Global search text
            filters: Filter key -> value
            sort_by: Requested sort field
            sort_direction: ASC or DESC

        Returns:
            The compiled query

        Raises:
            DataFormatError: If a date bound cannot be parsed
        """
        order_by, direction = normalize_sort(sort_by, sort_direction)
        compiled = CompiledQuery(native=LogQuery(order_by=order_by, direction=direction))
        native = compiled.native

        normalized = {FILTER_ALIASES.get(key, key): value for key, value in (filters or {}).items()}

        for key, value in normalized.items():
            if value is None or value == "" or value == []:
                continue
            handler = getattr(self, f"_apply_{key}", None)
            if handler is None:
                logger.debug("audit_filter_ignored", filter=key, entity_type=log.entity_type)
                continue
            handler(compiled, log, value)

        search = (search or "").strip()
        if search:
            if self.text_search_enabled:
                compiled.predicates.append(search_predicate(search))
                compiled.in_memory = True
            else:
                native.subject_ids = (
                    [s for s in native.subject_ids if s == search]
                    if native.subject_ids is not None
                    else [search]
                )

        return compiled

    def _apply_subject_id(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        native = compiled.native
        if isinstance(value, (list, tuple, set)):
            native.subject_ids = [str(item) for item in value]
            return

        text = str(value).strip()
        if not text.endswith(WILDCARD):
            native.subject_ids = [text]
            return

        term = text.strip(WILDCARD)
        if not term:
            return
        if text.startswith(WILDCARD):
            native.subject_contains = term
        else:
            native.subject_prefix = term

    def _apply_change_kind(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        values = value if isinstance(value, (list, tuple, set)) else [value]
        kinds: list[ChangeKind] = []
        for item in values:
            try:
                kinds.append(ChangeKind.parse(item))
            except ValueError:
                logger.debug("audit_change_kind_ignored", change_kind=str(item))
        if kinds:
            compiled.native.change_kinds = kinds

    def _apply_occurred_at(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        if not isinstance(value, Mapping):
            return
        date_from = value.get("from")
        date_to = value.get("to")
        if not date_from and not date_to:
            return

        compiled.native.occurred_from = (
            parse_bound(date_from, self.tz, end_of_day=False)
            if date_from
            else datetime.combine(EPOCH, time.min, tzinfo=self.tz)
        )
        compiled.native.occurred_to = (
            parse_bound(date_to, self.tz, end_of_day=True)
            if date_to
            else datetime.now(self.tz) + FAR_FUTURE
        )

    def _apply_correlation_hash(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        compiled.native.correlation_hash = str(value).strip()

    def _apply_actor_label(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        label = str(value).strip()
        if not log.supports_actor_search:
            compiled.native.actor_label = label
            return

        needle = label.casefold()
        compiled.predicates.append(
            lambda record: needle in (record.actor_label or "").casefold()
        )
        compiled.in_memory = True

    def _apply_hide_system(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        if not parse_flag(value):
            return
        heuristic = self.heuristic
        compiled.predicates.append(lambda record: not heuristic.is_system_record(record))
        compiled.in_memory = True

    def _apply_request_id(self, compiled: CompiledQuery, log: AuditLog, value: Any) -> None:
        request_id = str(value).strip()
        compiled.in_memory = True

        if self.correlation is None:
            compiled.predicates.append(lambda record: record.request_id == request_id)
            return

        matches = self.correlation.find_by_correlation_id(request_id).get(log.entity_type, [])
        record_ids = {record.id for record in matches}
        compiled.native.record_ids = sorted(record_ids)
        compiled.predicates.append(lambda record: record.id in record_ids)


class AuditDataSource:
    """
    Paginated, filterable view over one entity type's audit log.

    Read-only: only index and show actions are supported.
    """

    default_sort_by = DEFAULT_SORT_BY
    default_sort_direction = DEFAULT_SORT_DIRECTION.value

    def __init__(
        self,
        log: AuditLog,
        compiler: FilterCompiler | None = None,
        default_page_size: int = 50,
    ) -> None:
        self.log = log
        self.compiler = compiler or FilterCompiler()
        self.default_page_size = default_page_size

    @property
    def entity_type(self) -> str:
        return self.log.entity_type

    @property
    def identifier(self) -> str:
        return "audit-" + namespace_to_param(self.entity_type)

    @property
    def short_name(self) -> str:
        return short_entity_name(self.entity_type)

    @property
    def label(self) -> str:
        return f"Audit: {self.short_name}"

    def supports_action(self, action: str) -> bool:
        return action in ("index", "show")

    def query(
        self,
        search: str = "",
        filters: Mapping[str, Any] | None = None,
        sort_by: str | None = None,
        sort_direction: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> PaginatedResult:
        """
        Query one page of audit records.

        Args:
            search: Global search text
            filters: Filter key -> value
            sort_by: Sort field (id, subject_id, change_kind, occurred_at)
            sort_direction: ASC or DESC
            page: Requested 1-based page (clamped to the valid range)
            page_size: Records per page (default page size when None)

        Returns:
            The page actually returned with the total number of matches

        Raises:
            DataFormatError: If page_size is below 1 or a date is malformed
            StoreUnavailableError: If the log cannot be read
        """
        page_size = self.default_page_size if page_size is None else page_size
        if page_size < 1:
            raise DataFormatError(f"page_size must be at least 1, got {page_size}")

        compiled = self.compiler.compile(self.log, search, filters, sort_by, sort_direction)

        if compiled.in_memory:
            candidates = self.log.query(compiled.native)
            result = run_pipeline(candidates, compiled.predicates, page, page_size)
        else:
            total = self.log.count(compiled.native)
            current_page = clamp_page(total, page, page_size)
            items: list[AuditRecord] = []
            if total:
                native = compiled.native.model_copy(
                    update={"limit": page_size, "offset": (current_page - 1) * page_size}
                )
                items = self.log.query(native)
            result = PaginatedResult(
                items=items, total_items=total, current_page=current_page, page_size=page_size
            )

        logger.info(
            "audit_query_executed",
            entity_type=self.entity_type,
            in_memory=compiled.in_memory,
            total=result.total_items,
            page=result.current_page,
        )
        return result

    def find(self, record_id: int | str) -> AuditRecord | None:
        """Find a record by id; None for unknown or malformed ids."""
        try:
            return self.log.get(int(record_id))
        except (TypeError, ValueError):
            return None


def namespace_to_param(entity_type: str) -> str:
    """Make an entity type URL-safe (App\\Entity\\Order -> App-Entity-Order)."""
    return entity_type.replace("\\", "-").replace(".", "-")
