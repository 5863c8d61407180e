"""
Point-in-time reconstruction of entity field values.

Starts from the current field values and undoes every logged update between
the requested moment and now, newest first.

Collection fields are only partially reversible: members added after the
requested moment are removed again, but members removed after it cannot be
restored because the log keeps only their id and label, not the member
itself.
"""

import warnings
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from packages.audit_store import AuditLogRegistry, ChangeKind, LogQuery, SortDirection, ensure_aware
from packages.change_classifier import is_metadata_key
from packages.structured_logging import get_logger

from .accessor import AttributeAccessor, EntityAccessor, TypeDescriptor
from .coercion import coerce_value

logger = get_logger(__name__)

Snapshot = dict[str, dict[str, Any]]


class TypeMismatchError(ValueError):
    """Raised when a reconstruction batch mixes entity types."""
    pass


class UnknownFieldWarning(UserWarning):
    """A requested field has no declared type; its values pass through uncoerced."""
    pass


def _old_value(values: Any) -> tuple[bool, Any]:
    """Extract the pre-change value from {old, new} or legacy [old, new] diffs."""
    if isinstance(values, Mapping) and "old" in values:
        return True, values["old"]
    if isinstance(values, (list, tuple)) and len(values) == 2:
        return True, values[0]
    return False, None


class SnapshotReconstructor:
    """
    Reconstructs entity field values as they were at a past moment.

    Usage:
        reconstructor = SnapshotReconstructor(registry, accessor)
        reconstructor.reconstruct(orders, as_of, ["status", "total"])
        # {"7": {"status": "paid", "total": 120.0}}
    """

    def __init__(
        self,
        registry: AuditLogRegistry,
        accessor: EntityAccessor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize reconstructor.

        Args:
            registry: Per-entity-type audit logs
            accessor: Field access for the caller's entities
            clock: Source of "now" (UTC)
        """
        self.registry = registry
        self.accessor = accessor or AttributeAccessor()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def reconstruct(
        self,
        entities: Sequence[Any],
        as_of: datetime,
        fields: Iterable[str],
    ) -> Snapshot:
        """
        Get entity field values at a point in time.

        Args:
            entities: Entities of one entity type
            as_of: Moment to reconstruct
            fields: Field names to include

        Returns:
            Subject id -> field name -> value

        Raises:
            TypeMismatchError: If entities are of different types (raised
                before the log is read)
            StoreUnavailableError: If the log cannot be read
        """
        if not entities:
            return {}

        fields = list(dict.fromkeys(fields))
        entity_type = self._common_entity_type(entities)
        types = self._field_types(entity_type, fields)
        result = self._current_snapshot(entities, fields, types)

        now = ensure_aware(self.clock())
        as_of = ensure_aware(as_of)
        if as_of >= now:
            return result

        log = self.registry.get(entity_type)
        if log is None:
            logger.warning("snapshot_log_missing", entity_type=entity_type)
            return result

        records = log.query(
            LogQuery(
                subject_ids=list(result),
                change_kinds=[ChangeKind.UPDATED],
                occurred_from=as_of,
                occurred_to=now,
                order_by="occurred_at",
                direction=SortDirection.DESC,
            )
        )

        wanted = set(fields)
        for record in records:
            snapshot = result.get(record.subject_id)
            if snapshot is None:
                continue

            for field_name, values in record.change_set.items():
                if is_metadata_key(field_name) or field_name not in wanted:
                    continue

                descriptor = types[field_name]
                if descriptor is not None and descriptor.is_collection:
                    snapshot[field_name] = self._reverse_collection(snapshot[field_name], values)
                    continue

                found, old = _old_value(values)
                if found:
                    snapshot[field_name] = coerce_value(old, descriptor)

        logger.info(
            "snapshot_reconstructed",
            entity_type=entity_type,
            subjects=len(result),
            fields=len(fields),
            records_undone=len(records),
        )
        return result

    def _common_entity_type(self, entities: Sequence[Any]) -> str:
        expected = self.accessor.entity_type(entities[0])
        for entity in entities[1:]:
            actual = self.accessor.entity_type(entity)
            if actual != expected:
                raise TypeMismatchError(
                    f"All entities must be of the same type. Expected {expected} but got {actual}"
                )
        return expected

    def _field_types(
        self, entity_type: str, fields: list[str]
    ) -> dict[str, TypeDescriptor | None]:
        types: dict[str, TypeDescriptor | None] = {}
        for field_name in fields:
            descriptor = self.accessor.field_type(entity_type, field_name)
            if descriptor is None:
                logger.warning("snapshot_unknown_field", entity_type=entity_type, field=field_name)
                warnings.warn(
                    f"{entity_type}.{field_name} has no declared type; values pass through",
                    UnknownFieldWarning,
                    stacklevel=3,
                )
            types[field_name] = descriptor
        return types

    def _current_snapshot(
        self,
        entities: Sequence[Any],
        fields: list[str],
        types: Mapping[str, TypeDescriptor | None],
    ) -> Snapshot:
        result: Snapshot = {}
        for entity in entities:
            values: dict[str, Any] = {}
            for field_name in fields:
                value = self.accessor.get_field(entity, field_name)
                descriptor = types[field_name]
                if descriptor is not None and descriptor.is_collection:
                    value = list(value or [])
                values[field_name] = value
            result[self.accessor.subject_id(entity)] = values
        return result

    def _reverse_collection(self, members: Any, values: Any) -> list[Any]:
        """Undo a collection diff: drop members it added. Removed members are not restored."""
        members = list(members or [])
        if not isinstance(values, Mapping):
            return members

        added = values.get("added")
        if not isinstance(added, list):
            return members

        added_ids = {
            str(item["id"])
            for item in added
            if isinstance(item, Mapping) and item.get("id") is not None
        }
        return [member for member in members if self.accessor.member_id(member) not in added_ids]
