import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models
from .clock import as_utc_naive
from .errors import ValidationError
from .schemas import ConflictRead

logger = logging.getLogger(__name__)


def effective_window(
    start: datetime,
    end: datetime,
    setup_minutes: int = 0,
    teardown_minutes: int = 0,
) -> Tuple[datetime, datetime]:
    """
    Room-occupied range of a reservation, buffers included.

    Returns
    -------
    Tuple[datetime, datetime]
        ``(start - setup, end + teardown)``.
    """
    return (
        start - timedelta(minutes=setup_minutes or 0),
        end + timedelta(minutes=teardown_minutes or 0),
    )


def windows_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap test: touching endpoints do not overlap."""
    return a_start < b_end and a_end > b_start


def _validate_candidate(candidate: Any) -> None:
    missing = [
        field
        for field in ("start_datetime", "end_datetime", "selected_rooms")
        if getattr(candidate, field, None) is None
    ]
    if missing:
        raise ValidationError(
            "Reservation is missing scheduling fields required for conflict detection",
            {"missingFields": missing},
        )
    if candidate.end_datetime <= candidate.start_datetime:
        raise ValidationError("endDateTime must be after startDateTime")
    for field in ("setup_time_minutes", "teardown_time_minutes"):
        if (getattr(candidate, field, 0) or 0) < 0:
            raise ValidationError(f"{field} must not be negative")


def find_conflicts(
    db: Session,
    candidate: Any,
    exclude_id: Optional[int] = None,
) -> List[ConflictRead]:
    """
    Find active reservations whose effective window and room set collide with a candidate.

    Behavior
    --------
    - Only approved and pending reservations participate.
    - A broad date-range prefilter runs in SQL, widened by the largest
      buffers on record; the final decision uses the exact effective windows
      of both sides plus the room-set intersection.
    - A candidate with no rooms never conflicts.

    Parameters
    ----------
    db : Session
        Database session.
    candidate : Any
        Object exposing ``start_datetime``, ``end_datetime``,
        ``setup_time_minutes``, ``teardown_time_minutes`` and ``selected_rooms``.
    exclude_id : Optional[int]
        Reservation to leave out (the candidate itself when it is persisted).

    Returns
    -------
    List[ConflictRead]
        Conflicts ordered by effective start, then id.

    Raises
    ------
    ValidationError
        If the candidate lacks its window or room fields.
    """
    _validate_candidate(candidate)

    rooms = {int(r) for r in candidate.selected_rooms}
    if not rooms:
        return []

    cand_start, cand_end = effective_window(
        as_utc_naive(candidate.start_datetime),
        as_utc_naive(candidate.end_datetime),
        getattr(candidate, "setup_time_minutes", 0),
        getattr(candidate, "teardown_time_minutes", 0),
    )

    active = [s.value for s in models.ACTIVE_STATUSES]
    max_setup, max_teardown = (
        db.query(
            func.max(models.Reservation.setup_time_minutes),
            func.max(models.Reservation.teardown_time_minutes),
        )
        .filter(models.Reservation.status.in_(active))
        .one()
    )

    q = (
        db.query(models.Reservation)
        .filter(models.Reservation.status.in_(active))
        .filter(models.Reservation.start_datetime < cand_end + timedelta(minutes=max_setup or 0))
        .filter(models.Reservation.end_datetime > cand_start - timedelta(minutes=max_teardown or 0))
    )
    if exclude_id is not None:
        q = q.filter(models.Reservation.id != exclude_id)

    conflicts = []
    for other in q.all():
        shared = sorted(rooms.intersection(int(r) for r in (other.selected_rooms or [])))
        if not shared:
            continue
        other_start, other_end = effective_window(
            other.start_datetime,
            other.end_datetime,
            other.setup_time_minutes,
            other.teardown_time_minutes,
        )
        if not windows_overlap(cand_start, cand_end, other_start, other_end):
            continue
        conflicts.append(
            ConflictRead(
                id=other.id,
                title=other.title,
                status=other.status,
                start_date_time=other.start_datetime,
                end_date_time=other.end_datetime,
                setup_time_minutes=other.setup_time_minutes,
                teardown_time_minutes=other.teardown_time_minutes,
                effective_start=other_start,
                effective_end=other_end,
                overlapping_rooms=shared,
            )
        )

    conflicts.sort(key=lambda c: (c.effective_start, c.id))
    if conflicts:
        logger.info(
            "Found %d scheduling conflict(s) for window %s - %s in rooms %s",
            len(conflicts),
            cand_start.isoformat(),
            cand_end.isoformat(),
            sorted(rooms),
        )
    return conflicts


def conflicts_as_dicts(conflicts: List[ConflictRead]) -> List[dict]:
    """JSON-ready conflict entries (camelCase keys) for responses and audit storage."""
    return [c.model_dump(mode="json", by_alias=True) for c in conflicts]
