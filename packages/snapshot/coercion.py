"""
Coercion of logged values back to a field's declared type.

Change sets store values as JSON, so numbers may come back as strings,
booleans as "0"/"1", enums as their backing values and datetimes as ISO
strings. Values that cannot be converted are returned unchanged.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Any

from .accessor import FieldKind, TypeDescriptor

FALSE_STRINGS = {"", "0", "false", "no", "off", "null"}


def _to_int(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return int(float(text))
        except (ValueError, OverflowError):
            return value
    return value


def _to_float(value: Any) -> Any:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value
    return value


def _to_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return value


def _to_enum(value: Any, enum_type: type[Enum] | None) -> Any:
    if enum_type is None or isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        pass
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            try:
                return enum_type(int(text))
            except ValueError:
                pass
        if text in enum_type.__members__:
            return enum_type[text]
    return value


def _to_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _to_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return value
    return value


def _to_list(value: Any) -> Any:
    if isinstance(value, list):
        return value
    if isinstance(value, (tuple, set, frozenset)):
        return list(value)
    return [value]


def coerce_value(value: Any, descriptor: TypeDescriptor | None) -> Any:
    """
    Convert a logged value to the declared field type.

    Args:
        value: Value read from a change set
        descriptor: Declared field type (None for unknown fields)

    Returns:
        The converted value, or the raw value when no conversion applies
    """
    if value is None or descriptor is None:
        return value

    kind = descriptor.kind
    if kind is FieldKind.INT:
        return _to_int(value)
    if kind is FieldKind.FLOAT:
        return _to_float(value)
    if kind is FieldKind.BOOL:
        return _to_bool(value)
    if kind is FieldKind.STR:
        return value if isinstance(value, (dict, list)) else str(value)
    if kind is FieldKind.ENUM:
        return _to_enum(value, descriptor.enum_type)
    if kind is FieldKind.DATETIME:
        return _to_datetime(value)
    if kind is FieldKind.DATE:
        return _to_date(value)
    if kind is FieldKind.LIST:
        return _to_list(value)
    return value
