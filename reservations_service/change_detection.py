"""
Field-level change detection between a persisted reservation and new values.

Used for revision diffs and for the ``changes`` list in 409 conflict responses.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

TRACKED_FIELDS = [
    "title",
    "description",
    "start_datetime",
    "end_datetime",
    "setup_time_minutes",
    "teardown_time_minutes",
    "selected_rooms",
    "attendee_count",
    "status",
]

FIELD_LABELS = {
    "title": "Title",
    "description": "Description",
    "start_datetime": "Start Date/Time",
    "end_datetime": "End Date/Time",
    "setup_time_minutes": "Setup Time",
    "teardown_time_minutes": "Teardown Time",
    "selected_rooms": "Room(s)",
    "attendee_count": "Expected Attendees",
    "status": "Status",
}


def field_label(field: str) -> str:
    return FIELD_LABELS.get(field, field)


def _normalize_empty(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    if isinstance(value, (list, tuple, set)) and len(value) == 0:
        return None
    return value


def values_differ(old: Any, new: Any) -> bool:
    """
    Compare two field values the way a human reviewer would.

    None, blank strings and empty lists are all "not set"; lists compare
    order-insensitively; datetimes compare as instants; numbers compare
    numerically even when one side arrived as a string.
    """
    a = _normalize_empty(old)
    b = _normalize_empty(new)

    if a is None and b is None:
        return False
    if a is None or b is None:
        return True

    if isinstance(a, (list, tuple, set)) and isinstance(b, (list, tuple, set)):
        return sorted(str(v) for v in a) != sorted(str(v) for v in b)

    if isinstance(a, datetime) or isinstance(b, datetime):
        return to_jsonable(a) != to_jsonable(b)

    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        try:
            return float(a) != float(b)
        except (TypeError, ValueError):
            return True

    return str(getattr(a, "value", a)) != str(getattr(b, "value", b))


def to_jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return getattr(value, "value", value)


def detect_changes(
    original: Any,
    modified: Dict[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """
    List the tracked fields whose value in ``modified`` differs from ``original``.

    Parameters
    ----------
    original : Any
        Object (usually the ORM row) holding the current values as attributes.
    modified : Dict[str, Any]
        New values keyed by field name; absent keys are treated as untouched.
    fields : Optional[Iterable[str]]
        Restrict the comparison to these fields (default: TRACKED_FIELDS).

    Returns
    -------
    List[Dict[str, Any]]
        One ``{field, label, oldValue, newValue}`` entry per changed field,
        with JSON-serialisable values.
    """
    changes = []
    for field in fields or TRACKED_FIELDS:
        if field not in modified:
            continue
        old_value = getattr(original, field, None)
        new_value = modified[field]
        if values_differ(old_value, new_value):
            changes.append(
                {
                    "field": field,
                    "label": field_label(field),
                    "oldValue": to_jsonable(old_value),
                    "newValue": to_jsonable(new_value),
                }
            )
    return changes

