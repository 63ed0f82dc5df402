"""
Soft holds ("review locks") on reservations.

A hold is plain data on the reservation row, checked by comparing timestamps.
It is advisory and time-boxed: correctness never depends on it, it only keeps
two reviewers from editing the same record at once. Every write is a
conditional UPDATE keyed on the hold state the caller observed, so a sweep
racing an acquire cannot corrupt the row.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .errors import Forbidden, LockHeld, NotFound

logger = logging.getLogger(__name__)

HOLD_DURATION_MINUTES = 30
HOLD_DURATION = timedelta(minutes=HOLD_DURATION_MINUTES)
AUTO_TIMEOUT_ACTOR = "auto-timeout"

# Bounded retries when a concurrent writer changes the hold under us.
_MAX_ATTEMPTS = 3


@dataclass
class LockResult:
    granted: bool
    reviewing_by: Optional[str]
    started_at: Optional[datetime]
    expires_at: Optional[datetime]

    def minutes_remaining(self, now: datetime) -> int:
        if self.expires_at is None:
            return 0
        return max(0, math.ceil((self.expires_at - now).total_seconds() / 60))


def cleared_hold_values() -> dict:
    """Column values that put a reservation back to ``not_started`` with every hold field NULL."""
    return {
        "review_status": models.ReviewStatus.NOT_STARTED.value,
        "reviewing_by": None,
        "review_started_at": None,
        "review_expires_at": None,
    }


def hold_is_active(reservation: models.Reservation, now: datetime) -> bool:
    return (
        reservation.review_status == models.ReviewStatus.REVIEWING.value
        and reservation.reviewing_by is not None
        and reservation.review_expires_at is not None
        and reservation.review_expires_at > now
    )


def record_review(
    db: Session,
    reservation_id: int,
    reviewing_by: str,
    started_at: Optional[datetime],
    completed_at: datetime,
    released_by: str,
    outcome: models.ReviewOutcome,
) -> None:
    db.add(
        models.ReviewHistoryEntry(
            reservation_id=reservation_id,
            reviewing_by=reviewing_by,
            started_at=started_at,
            completed_at=completed_at,
            released_by=released_by,
            outcome=outcome.value,
        )
    )


def _observed_state_filter(q, reservation: models.Reservation):
    """Restrict an UPDATE to rows whose hold still looks exactly as we read it."""
    R = models.Reservation
    q = q.filter(R.id == reservation.id, R.review_status == reservation.review_status)
    if reservation.reviewing_by is None:
        q = q.filter(R.reviewing_by.is_(None))
    else:
        q = q.filter(R.reviewing_by == reservation.reviewing_by)
    if reservation.review_expires_at is None:
        q = q.filter(R.review_expires_at.is_(None))
    else:
        q = q.filter(R.review_expires_at == reservation.review_expires_at)
    return q


def _load(db: Session, reservation_id: int) -> models.Reservation:
    reservation = (
        db.query(models.Reservation).filter(models.Reservation.id == reservation_id).first()
    )
    if not reservation:
        raise NotFound("Reservation not found", {"reservationId": reservation_id})
    return reservation


def acquire(db: Session, reservation_id: int, actor: str, now: datetime) -> LockResult:
    """
    Take, renew, or take over the review hold on a reservation.

    Behavior
    --------
    - No hold, or an expired hold: granted to ``actor`` for 30 minutes.
      A stale hold left by someone else is recorded as ``expired``.
    - Hold already owned by ``actor``: renewed (start and expiry reset).
    - Hold owned by someone else and not expired: denied.

    Returns
    -------
    LockResult
        ``granted`` tells the caller which case happened; on denial the
        holder and expiry are reported.
    """
    for _ in range(_MAX_ATTEMPTS):
        reservation = _load(db, reservation_id)

        if hold_is_active(reservation, now) and reservation.reviewing_by != actor:
            logger.info(
                "Review hold on reservation %s denied to %s (held by %s until %s)",
                reservation_id,
                actor,
                reservation.reviewing_by,
                reservation.review_expires_at,
            )
            return LockResult(
                granted=False,
                reviewing_by=reservation.reviewing_by,
                started_at=reservation.review_started_at,
                expires_at=reservation.review_expires_at,
            )

        stale_holder = None
        if (
            reservation.review_status == models.ReviewStatus.REVIEWING.value
            and reservation.reviewing_by is not None
            and not hold_is_active(reservation, now)
        ):
            stale_holder = (reservation.reviewing_by, reservation.review_started_at)

        expires_at = now + HOLD_DURATION
        rows = _observed_state_filter(db.query(models.Reservation), reservation).update(
            {
                "review_status": models.ReviewStatus.REVIEWING.value,
                "reviewing_by": actor,
                "review_started_at": now,
                "review_expires_at": expires_at,
            },
            synchronize_session=False,
        )
        if rows == 1:
            if stale_holder is not None:
                record_review(
                    db,
                    reservation_id,
                    reviewing_by=stale_holder[0],
                    started_at=stale_holder[1],
                    completed_at=now,
                    released_by=AUTO_TIMEOUT_ACTOR,
                    outcome=models.ReviewOutcome.EXPIRED,
                )
            db.commit()
            logger.info(
                "Review hold on reservation %s granted to %s until %s",
                reservation_id,
                actor,
                expires_at.isoformat(),
            )
            return LockResult(granted=True, reviewing_by=actor, started_at=now, expires_at=expires_at)

        db.rollback()
        db.expire_all()

    # Lost every race: report whoever holds it now.
    reservation = _load(db, reservation_id)
    return LockResult(
        granted=False,
        reviewing_by=reservation.reviewing_by,
        started_at=reservation.review_started_at,
        expires_at=reservation.review_expires_at,
    )


def release(
    db: Session,
    reservation_id: int,
    actor: str,
    now: datetime,
    force: bool = False,
) -> bool:
    """
    Release a review hold.

    Parameters
    ----------
    force : bool
        Administrative override; releases a hold owned by someone else.

    Returns
    -------
    bool
        True if a hold was released, False if there was nothing to release
        (no hold, or it changed hands while we were releasing it).

    Raises
    ------
    Forbidden
        If ``actor`` does not hold the lock and ``force`` is not set.
    """
    reservation = _load(db, reservation_id)
    if reservation.review_status != models.ReviewStatus.REVIEWING.value or not reservation.reviewing_by:
        return False

    if reservation.reviewing_by != actor and not force:
        raise Forbidden(
            "Only the reviewer holding this reservation can release it",
            {
                "reviewingBy": reservation.reviewing_by,
                "reviewExpiresAt": reservation.review_expires_at.isoformat()
                if reservation.review_expires_at
                else None,
            },
        )

    holder = reservation.reviewing_by
    started_at = reservation.review_started_at
    rows = _observed_state_filter(db.query(models.Reservation), reservation).update(
        cleared_hold_values(), synchronize_session=False
    )
    if rows != 1:
        db.rollback()
        return False

    record_review(
        db,
        reservation_id,
        reviewing_by=holder,
        started_at=started_at,
        completed_at=now,
        released_by=actor,
        outcome=models.ReviewOutcome.ABANDONED,
    )
    db.commit()
    logger.info(
        "Review hold on reservation %s (held by %s) released by %s%s",
        reservation_id,
        holder,
        actor,
        " (forced)" if force and holder != actor else "",
    )
    return True


def sweep_expired(db: Session, now: datetime) -> int:
    """
    Release every hold whose expiry is in the past.

    Each hold is cleared with a conditional UPDATE keyed on the expiry we
    read, so a hold renewed between the read and the write is left alone.
    Running the sweep twice in a row releases nothing the second time.

    Returns
    -------
    int
        Number of holds released.
    """
    R = models.Reservation
    expired = (
        db.query(R)
        .filter(R.review_status == models.ReviewStatus.REVIEWING.value)
        .filter(R.review_expires_at < now)
        .all()
    )

    released = 0
    for reservation in expired:
        holder = reservation.reviewing_by
        started_at = reservation.review_started_at
        rows = _observed_state_filter(db.query(R), reservation).update(
            cleared_hold_values(), synchronize_session=False
        )
        if rows != 1:
            continue
        if holder:
            record_review(
                db,
                reservation.id,
                reviewing_by=holder,
                started_at=started_at,
                completed_at=now,
                released_by=AUTO_TIMEOUT_ACTOR,
                outcome=models.ReviewOutcome.EXPIRED,
            )
        released += 1

    db.commit()
    if released:
        logger.info("Released %d expired review hold(s)", released)
    return released


def ensure_not_held_by_other(reservation: models.Reservation, actor: str, now: datetime) -> None:
    """
    Refuse a mutation while someone else holds an active review hold.

    Raises
    ------
    LockHeld
        With the holder, hold window, and minutes remaining.
    """
    if not hold_is_active(reservation, now) or reservation.reviewing_by == actor:
        return
    result = LockResult(
        granted=False,
        reviewing_by=reservation.reviewing_by,
        started_at=reservation.review_started_at,
        expires_at=reservation.review_expires_at,
    )
    raise lock_held_error(result, now)


def lock_held_error(result: LockResult, now: datetime) -> LockHeld:
    minutes = result.minutes_remaining(now)
    return LockHeld(
        f"{result.reviewing_by} is reviewing this reservation; "
        f"the hold expires in {minutes} minute(s)",
        {
            "reviewingBy": result.reviewing_by,
            "reviewStartedAt": result.started_at.isoformat() if result.started_at else None,
            "reviewExpiresAt": result.expires_at.isoformat() if result.expires_at else None,
            "minutesRemaining": minutes,
        },
    )
