import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

TOKEN_LENGTH = 32


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def token_fields(reservation: Any) -> Dict[str, Any]:
    """
    Canonical, fixed-order projection of the fields a change key covers.

    Review-lock fields are deliberately absent: taking or releasing a hold
    must not invalidate a reviewer's token.
    """
    status = reservation.status
    return {
        "title": reservation.title,
        "start": _iso(reservation.start_datetime),
        "end": _iso(reservation.end_datetime),
        "rooms": sorted(int(r) for r in (reservation.selected_rooms or [])),
        "setup": int(reservation.setup_time_minutes or 0),
        "teardown": int(reservation.teardown_time_minutes or 0),
        "attendees": int(reservation.attendee_count or 0),
        "status": getattr(status, "value", status),
        "last_modified": _iso(reservation.last_modified),
    }


def compute_token(reservation: Any) -> str:
    """
    Compute the change key ("ETag") of a reservation.

    Parameters
    ----------
    reservation : Any
        Any object exposing the reservation's scheduling, content and
        ``last_modified`` attributes (ORM row or a plain namespace).

    Returns
    -------
    str
        Lower-case hex string of fixed length.

    Notes
    -----
    The caller must stamp ``last_modified`` before hashing so that two saves
    of textually identical data still yield different keys.
    """
    canonical = json.dumps(token_fields(reservation), separators=(",", ":"), sort_keys=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:TOKEN_LENGTH]


def validate_token(reservation: Any, supplied_token: Optional[str]) -> bool:
    if supplied_token is None:
        return False
    return (reservation.change_key or "").lower() == normalize_token(supplied_token)


def normalize_token(raw: str) -> str:
    """Strip ``W/`` prefixes and quotes from an If-Match/ETag style value."""
    value = raw.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"').lower()


def next_modified_stamp(previous: Optional[datetime], now: datetime) -> datetime:
    """
    Wall-clock stamp for the next save, strictly later than ``previous``.

    Guards against two saves landing in the same clock tick and producing the
    same key for the same field state.
    """
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now
