"""
Audit record models for the per-entity-type change log.

This module provides the core data models of the audit trail: the immutable
AuditRecord read from an entity type's log, and the LogQuery describing the
filters, ordering and pagination a log can apply natively.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from packages.change_classifier import CONTEXT_KEY, EVENT_KEY, ChangeShape, classify


class ChangeKind(str, Enum):
    """Kinds of change recorded in an audit log (values are the wire format)."""

    CREATED = "insert"
    UPDATED = "update"
    REMOVED = "remove"
    ASSOCIATED = "associate"
    DISSOCIATED = "dissociate"
    DOMAIN_EVENT = "event"

    @classmethod
    def parse(cls, value: "str | ChangeKind") -> "ChangeKind":
        """
        Resolve a change kind from its wire value or enum name.

        Raises:
            ValueError: If the value names no change kind
        """
        if isinstance(value, ChangeKind):
            return value
        text = str(value).strip()
        for kind in cls:
            if text.lower() == kind.value or text.upper() == kind.name:
                return kind
        raise ValueError(f"Unknown change kind: {value!r}")


def short_entity_name(entity_type: str) -> str:
    """Last segment of a namespaced entity type (App\\Entity\\Order -> Order)."""
    for separator in ("\\", "."):
        entity_type = entity_type.rsplit(separator, 1)[-1]
    return entity_type


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuditRecord(BaseModel):
    """
    Immutable audit log entry for one subject at one point in time.

    The change set shape is classified once, when the record is built, and
    kept on the record as `shape`.
    """

    id: int = Field(..., ge=1, description="Monotonic, log-local record id")
    entity_type: str = Field(..., min_length=1, description="Audited entity type")
    subject_id: str = Field(..., description="Stable identity of the changed entity")
    change_kind: ChangeKind = Field(..., description="Kind of change")
    change_set: dict[str, Any] = Field(
        default_factory=dict, description="Change payload (shape depends on kind)"
    )
    correlation_hash: str = Field(
        "", description="Groups records written in one atomic write"
    )
    actor_id: str | None = Field(None, description="Actor identifier or automation sentinel")
    actor_label: str | None = Field(None, description="Email, username or automation name")
    source_address: str | None = Field(None, description="Client address of the change")
    occurred_at: datetime = Field(..., description="When the change happened (UTC)")
    shape: ChangeShape = Field(
        ChangeShape.UNKNOWN, description="Structural category of the change set"
    )

    model_config = {"frozen": True}  # Immutable

    @model_validator(mode="before")
    @classmethod
    def classify_change_set(cls, data: Any) -> Any:
        """Tag the record with its change set shape."""
        if isinstance(data, dict):
            data = dict(data)
            data["shape"] = classify(data.get("change_set") or {})
        return data

    @field_validator("subject_id", mode="before")
    @classmethod
    def coerce_subject_id(cls, v: Any) -> str:
        """Subject ids are compared as strings."""
        return str(v)

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v: datetime) -> datetime:
        """Store timestamps as aware UTC datetimes."""
        return ensure_aware(v)

    @property
    def context(self) -> dict[str, Any]:
        """The @context map attached by the producer (empty if absent)."""
        value = self.change_set.get(CONTEXT_KEY)
        return dict(value) if isinstance(value, dict) else {}

    @property
    def request_id(self) -> str | None:
        value = self.context.get("requestId")
        return str(value) if value not in (None, "") else None

    @property
    def note(self) -> str | None:
        return self.context.get("note")

    @property
    def reason(self) -> str | None:
        return self.context.get("reason")

    @property
    def event_name(self) -> str | None:
        """Domain event name for event records."""
        return self.change_set.get(EVENT_KEY)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Narrative ordering key (occurred_at, id)."""
        return (self.occurred_at, self.id)


class SortDirection(str, Enum):
    """Sort directions accepted by audit logs."""

    ASC = "ASC"
    DESC = "DESC"


class LogQuery(BaseModel):
    """
    Filters, ordering and pagination that an audit log applies natively.

    A None filter is not applied. Empty id lists match nothing.
    """

    record_ids: list[int] | None = Field(None, description="Filter by record ids (IN)")
    subject_ids: list[str] | None = Field(None, description="Filter by subject ids (IN)")
    subject_prefix: str | None = Field(None, description="Subject id starts with")
    subject_contains: str | None = Field(None, description="Subject id contains")
    change_kinds: list[ChangeKind] | None = Field(None, description="Filter by change kinds")
    occurred_from: datetime | None = Field(None, description="Start of time range (inclusive)")
    occurred_to: datetime | None = Field(None, description="End of time range (inclusive)")
    correlation_hash: str | None = Field(None, description="Filter by correlation hash")
    actor_label: str | None = Field(None, description="Filter by exact actor label")
    request_id: str | None = Field(
        None, description="Filter by @context requestId (context lookup capability)"
    )
    order_by: str = Field("occurred_at", description="Sort field")
    direction: SortDirection = Field(SortDirection.DESC, description="Sort direction")
    limit: int | None = Field(None, ge=0, description="Maximum results to return")
    offset: int = Field(0, ge=0, description="Offset for pagination")

    @field_validator("occurred_from", "occurred_to")
    @classmethod
    def normalize_bounds(cls, v: datetime | None) -> datetime | None:
        """Compare range bounds in UTC."""
        return ensure_aware(v) if v is not None else None


class LogStats(BaseModel):
    """
    Statistics about one entity type's audit log.
    """

    entity_type: str
    total_records: int = Field(..., description="Total number of records")
    change_kind_counts: dict[str, int] = Field(
        default_factory=dict, description="Count by change kind"
    )
    earliest_record: datetime | None = Field(None, description="Timestamp of earliest record")
    latest_record: datetime | None = Field(None, description="Timestamp of latest record")
