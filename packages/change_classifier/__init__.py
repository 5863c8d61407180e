"""
Change set classification and formatting.

Audit change sets are untagged structures whose shape depends on the kind of
change that produced them. This module decides the shape once, so consumers
can switch on a ChangeShape instead of re-inspecting the payload, and renders
change sets into preview and detailed breakdowns.
"""

import json
from enum import Enum
from typing import Any, Mapping

CONTEXT_KEY = "@context"
EVENT_KEY = "@event"
METADATA_PREFIX = "@"

PREVIEW_MAX_STRING = 50
PREVIEW_MAX_ITEMS = 3


class ChangeShape(str, Enum):
    """Structural category of a change set."""

    FIELD_UPDATE = "field_update"
    COLLECTION_CHANGE = "collection_change"
    ENTITY_SUMMARY = "entity_summary"
    ASSOCIATION_LINK = "association_link"
    UNKNOWN = "unknown"


def strip_context(change_set: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of the change set without the reserved @context key."""
    return {key: value for key, value in change_set.items() if key != CONTEXT_KEY}


def is_metadata_key(key: str) -> bool:
    """Check whether a change set key is reserved metadata (e.g. @context, @event)."""
    return key.startswith(METADATA_PREFIX)


def _is_field_update(value: Any) -> bool:
    return isinstance(value, Mapping) and "old" in value and "new" in value


def _is_collection_change(value: Any) -> bool:
    return isinstance(value, Mapping) and "removed" in value and "added" in value


def classify(change_set: Mapping[str, Any] | None) -> ChangeShape:
    """
    Classify a change set by its structure.

    The @context key is ignored. Rules are evaluated in order and the first
    match wins; the flat entity summary and association link checks run
    before the per-field checks so their nested maps are not mistaken for
    field diffs.

    Args:
        change_set: Raw change set payload

    Returns:
        The structural category of the payload
    """
    if not change_set:
        return ChangeShape.UNKNOWN

    payload = strip_context(change_set)
    if not payload:
        return ChangeShape.UNKNOWN

    if "class" in payload and "label" in payload:
        return ChangeShape.ENTITY_SUMMARY

    if "source" in payload and "target" in payload and "isOwningSide" in payload:
        return ChangeShape.ASSOCIATION_LINK

    values = list(payload.values())
    if any(_is_field_update(value) for value in values):
        return ChangeShape.FIELD_UPDATE
    if any(_is_collection_change(value) for value in values):
        return ChangeShape.COLLECTION_CHANGE

    return ChangeShape.UNKNOWN


def truncate_value(value: Any) -> Any:
    """Shorten a value for inline preview display."""
    if isinstance(value, str) and len(value) > PREVIEW_MAX_STRING:
        return value[: PREVIEW_MAX_STRING - 3] + "..."

    if isinstance(value, Mapping) and len(value) > PREVIEW_MAX_ITEMS:
        truncated = dict(list(value.items())[:PREVIEW_MAX_ITEMS])
        truncated["..."] = f"({len(value) - PREVIEW_MAX_ITEMS} more)"
        return truncated

    if isinstance(value, (list, tuple)) and len(value) > PREVIEW_MAX_ITEMS:
        return list(value[:PREVIEW_MAX_ITEMS]) + [
            f"({len(value) - PREVIEW_MAX_ITEMS} more)"
        ]

    return value


def create_preview(change_set: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Summarize a change set for table display.

    Only field updates and collection changes are listed; metadata keys and
    values of any other shape are left out.

    Args:
        change_set: Raw change set payload

    Returns:
        Dict with total_changes and a list of per-field change summaries
    """
    preview: dict[str, Any] = {"total_changes": 0, "changes": []}

    for key, value in (change_set or {}).items():
        if is_metadata_key(key) or not isinstance(value, Mapping):
            continue

        change = {
            "field": key,
            "type": "unknown",
            "old": None,
            "new": None,
            "removed_count": 0,
            "added_count": 0,
        }

        if _is_field_update(value):
            change["type"] = "update"
            change["old"] = truncate_value(value["old"])
            change["new"] = truncate_value(value["new"])
        elif _is_collection_change(value):
            change["type"] = "association"
            removed = value["removed"]
            added = value["added"]
            change["removed_count"] = len(removed) if isinstance(removed, list) else 0
            change["added_count"] = len(added) if isinstance(added, list) else 0

        if change["type"] != "unknown":
            preview["changes"].append(change)
            preview["total_changes"] += 1

    return preview


def detailed_structure(change_set: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Group a change set into updates, associations, other and metadata.

    Empty groups are dropped from the result.
    """
    result: dict[str, dict[str, Any]] = {
        "updates": {},
        "associations": {},
        "other": {},
        "metadata": {},
    }

    for key, value in (change_set or {}).items():
        if is_metadata_key(key):
            result["metadata"][key] = value
        elif _is_field_update(value):
            result["updates"][key] = {"old": value["old"], "new": value["new"]}
        elif _is_collection_change(value):
            result["associations"][key] = {
                "removed": value["removed"] or [],
                "added": value["added"] or [],
            }
        else:
            result["other"][key] = value

    return {bucket: items for bucket, items in result.items() if items}


def format_value(value: Any, max_length: int = 100) -> str:
    """Render a value as compact JSON, truncated to max_length characters."""
    try:
        rendered = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return "Error encoding value"

    if len(rendered) > max_length:
        return rendered[: max_length - 3] + "..."
    return rendered


__all__ = [
    "CONTEXT_KEY",
    "EVENT_KEY",
    "ChangeShape",
    "classify",
    "create_preview",
    "detailed_structure",
    "format_value",
    "is_metadata_key",
    "strip_context",
    "truncate_value",
]
