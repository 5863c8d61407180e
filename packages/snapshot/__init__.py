"""
Snapshot package: entity field values at a past point in time.

Reverses logged updates from now back to the requested moment. Field access
and declared types come from a caller-supplied EntityAccessor.
"""

from .accessor import (
    AttributeAccessor,
    EntityAccessor,
    FieldKind,
    TypeDescriptor,
    describe_annotation,
)
from .coercion import coerce_value
from .reconstructor import (
    Snapshot,
    SnapshotReconstructor,
    TypeMismatchError,
    UnknownFieldWarning,
)

__all__ = [
    "AttributeAccessor",
    "EntityAccessor",
    "FieldKind",
    "Snapshot",
    "SnapshotReconstructor",
    "TypeDescriptor",
    "TypeMismatchError",
    "UnknownFieldWarning",
    "coerce_value",
    "describe_annotation",
]
