"""
Entity field access for snapshot reconstruction.

The reconstructor never inspects entities itself: callers supply an
EntityAccessor that reads identities and field values and declares field
types. AttributeAccessor is a default implementation for dataclasses,
pydantic models and plain annotated classes.
"""

import typing
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from types import NoneType, UnionType
from typing import Any, Callable, Mapping, Protocol


class FieldKind(str, Enum):
    """Declared type of an entity field, as far as coercion cares."""

    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    STR = "str"
    ENUM = "enum"
    DATETIME = "datetime"
    DATE = "date"
    LIST = "list"  # list of plain values
    COLLECTION = "collection"  # collection of related entities
    ANY = "any"


@dataclass(frozen=True)
class TypeDescriptor:
    """Declared type of one field."""

    kind: FieldKind
    enum_type: type[Enum] | None = None

    @property
    def is_collection(self) -> bool:
        return self.kind is FieldKind.COLLECTION


class EntityAccessor(Protocol):
    """Capabilities the reconstructor needs from the caller's entities."""

    def entity_type(self, entity: Any) -> str: ...

    def subject_id(self, entity: Any) -> str: ...

    def get_field(self, entity: Any, name: str) -> Any: ...

    def field_type(self, entity_type: str, name: str) -> TypeDescriptor | None: ...

    def member_id(self, member: Any) -> str | None: ...


SCALAR_KINDS: dict[type, FieldKind] = {
    bool: FieldKind.BOOL,
    int: FieldKind.INT,
    float: FieldKind.FLOAT,
    str: FieldKind.STR,
    datetime: FieldKind.DATETIME,
    date: FieldKind.DATE,
}
SEQUENCE_ORIGINS = (list, tuple, set, frozenset)


def describe_annotation(annotation: Any) -> TypeDescriptor:
    """
    Map a type annotation to a TypeDescriptor.

    Optional[X] is described as X. Sequences of plain values are LIST,
    sequences of anything else are COLLECTION.
    """
    origin = typing.get_origin(annotation)

    if origin in (typing.Union, UnionType):
        args = [arg for arg in typing.get_args(annotation) if arg is not NoneType]
        if len(args) == 1:
            return describe_annotation(args[0])
        return TypeDescriptor(FieldKind.ANY)

    if annotation in SEQUENCE_ORIGINS or origin in SEQUENCE_ORIGINS:
        args = typing.get_args(annotation)
        if not args or args[0] in SCALAR_KINDS:
            return TypeDescriptor(FieldKind.LIST)
        return TypeDescriptor(FieldKind.COLLECTION)

    if origin is None and isinstance(annotation, type):
        if issubclass(annotation, Enum):
            return TypeDescriptor(FieldKind.ENUM, enum_type=annotation)
        # datetime is a date subclass; check the most specific type first
        for scalar in (bool, datetime, int, float, str, date):
            if issubclass(annotation, scalar):
                return TypeDescriptor(SCALAR_KINDS[scalar])

    return TypeDescriptor(FieldKind.ANY)


class AttributeAccessor:
    """
    Attribute-based accessor using the entity class's type hints.

    Entity types are class names unless an entity_type_of callable is given.
    Field types resolve against classes seen by entity_type() or registered
    explicitly.
    """

    def __init__(
        self,
        id_attribute: str = "id",
        entity_type_of: Callable[[Any], str] | None = None,
        classes: Mapping[str, type] | None = None,
    ) -> None:
        self.id_attribute = id_attribute
        self.entity_type_of = entity_type_of or (lambda entity: type(entity).__name__)
        self._classes: dict[str, type] = dict(classes or {})

    def register(self, entity_type: str, cls: type) -> None:
        self._classes[entity_type] = cls

    def entity_type(self, entity: Any) -> str:
        entity_type = self.entity_type_of(entity)
        self._classes.setdefault(entity_type, type(entity))
        return entity_type

    def subject_id(self, entity: Any) -> str:
        return str(getattr(entity, self.id_attribute))

    def get_field(self, entity: Any, name: str) -> Any:
        return getattr(entity, name, None)

    def field_type(self, entity_type: str, name: str) -> TypeDescriptor | None:
        cls = self._classes.get(entity_type)
        if cls is None:
            return None
        try:
            hints = typing.get_type_hints(cls)
        except (NameError, TypeError):
            hints = getattr(cls, "__annotations__", {})
        if name not in hints:
            return None
        return describe_annotation(hints[name])

    def member_id(self, member: Any) -> str | None:
        if isinstance(member, Mapping):
            value = member.get(self.id_attribute)
        else:
            value = getattr(member, self.id_attribute, None)
        return None if value is None else str(value)
