"""
Reservation workflow with optimistic concurrency.

Every mutation follows the same pattern: validate the caller's change key,
check the review hold, run conflict detection where the transition commits
a room/time, then write with a conditional UPDATE keyed on the expected
change key. Zero affected rows means someone else won the race, which is
reported exactly like a stale key.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import func
from sqlalchemy.orm import Session

from common.cache import delete_prefix

from . import models, review_lock, schemas
from .calendar_proxy import CalendarProxyClient, build_event_payload
from .change_detection import detect_changes, to_jsonable
from .clock import as_utc_naive, utcnow
from .conflicts import conflicts_as_dicts, find_conflicts
from .errors import (
    ExternalServiceError,
    Forbidden,
    InvalidTransition,
    NotFound,
    SchedulingConflict,
    ValidationError,
    VersionConflict,
)
from .notifications import NotificationDispatcher
from .version_token import compute_token, next_modified_stamp, normalize_token, validate_token

logger = logging.getLogger(__name__)

AVAILABILITY_CACHE_PREFIX = "reservations:availability:"

Status = models.ReservationStatus

SCHEDULE_FIELDS = (
    "start_datetime",
    "end_datetime",
    "setup_time_minutes",
    "teardown_time_minutes",
    "selected_rooms",
)

EDITABLE_FIELDS = SCHEDULE_FIELDS + ("title", "description", "attendee_count")

# Keys accepted in update and edit-request payloads, in either spelling.
_PATCH_KEYS = (
    set(EDITABLE_FIELDS)
    | {to_camel(f) for f in EDITABLE_FIELDS}
    | {"startDateTime", "endDateTime", "change_key", "changeKey"}
)

# Statuses restore never returns to.
_NON_RESTORABLE = {Status.DELETED.value, Status.CANCELLED.value}


@dataclass
class Outcome:
    reservation: models.Reservation
    warnings: List[str] = field(default_factory=list)


class ReservationService:
    """
    Orchestrates version tokens, review holds and conflict detection.

    Parameters
    ----------
    db : Session
        Database session for the current request.
    calendar : Optional[CalendarProxyClient]
        External calendar client; calendar sync is skipped when None.
    calendar_user_id : Optional[str]
        Mailbox/resource approved reservations are written to.
    notifier : Optional[NotificationDispatcher]
        Fire-and-forget dispatcher for decision notifications.
    clock : Callable[[], datetime]
        Source of "now" as naive UTC; injectable for tests.
    """

    def __init__(
        self,
        db: Session,
        calendar: Optional[CalendarProxyClient] = None,
        calendar_user_id: Optional[str] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.calendar = calendar
        self.calendar_user_id = calendar_user_id
        self.notifier = notifier or NotificationDispatcher()
        self.clock = clock

    # ---------- Reads ----------

    def get(self, reservation_id: int) -> models.Reservation:
        reservation = (
            self.db.query(models.Reservation)
            .filter(models.Reservation.id == reservation_id)
            .first()
        )
        if not reservation:
            raise NotFound("Reservation not found", {"reservationId": reservation_id})
        return reservation

    def list_reservations(
        self,
        status: Optional[str] = None,
        room_id: Optional[int] = None,
        include_deleted: bool = False,
    ) -> List[models.Reservation]:
        q = self.db.query(models.Reservation)
        if status is not None:
            q = q.filter(models.Reservation.status == status)
        elif not include_deleted:
            q = q.filter(models.Reservation.status != Status.DELETED.value)
        rows = q.order_by(models.Reservation.start_datetime.asc()).all()
        if room_id is not None:
            rows = [r for r in rows if room_id in (r.selected_rooms or [])]
        return rows

    def conflicts_for(self, reservation_id: int) -> List[schemas.ConflictRead]:
        reservation = self.get(reservation_id)
        return find_conflicts(self.db, reservation, exclude_id=reservation.id)

    def changes_since(self, reservation_id: int, token: str) -> List[Dict[str, Any]]:
        """
        Field-level diff between the state a token identifies and the current state.

        Built from the revision trail: the changes of every revision after the
        one carrying ``token`` are folded together, keeping the earliest old
        value and the latest new value per field. Unknown tokens yield an
        empty list.
        """
        revisions = (
            self.db.query(models.ReservationRevision)
            .filter(models.ReservationRevision.reservation_id == reservation_id)
            .order_by(models.ReservationRevision.revision_number.asc())
            .all()
        )
        wanted = normalize_token(token)
        start = None
        for index, revision in enumerate(revisions):
            if revision.change_key == wanted:
                start = index + 1
                break
        if start is None:
            return []

        merged: Dict[str, Dict[str, Any]] = {}
        for revision in revisions[start:]:
            for change in revision.changes or []:
                entry = merged.get(change["field"])
                if entry is None:
                    merged[change["field"]] = dict(change)
                else:
                    entry["newValue"] = change["newValue"]
        return [c for c in merged.values() if c["oldValue"] != c["newValue"]]

    # ---------- Create ----------

    def create(self, data: schemas.ReservationCreate, actor: str) -> models.Reservation:
        now = self.clock()
        status = Status.DRAFT if data.is_draft else Status.PENDING
        reservation = models.Reservation(
            requested_by=actor,
            title=data.title,
            description=data.description,
            attendee_count=data.attendee_count,
            start_datetime=as_utc_naive(data.start_datetime),
            end_datetime=as_utc_naive(data.end_datetime),
            setup_time_minutes=data.setup_time_minutes,
            teardown_time_minutes=data.teardown_time_minutes,
            selected_rooms=list(data.selected_rooms),
            status=status.value,
            last_modified=now,
            last_modified_by=actor,
            review_status=models.ReviewStatus.NOT_STARTED.value,
        )
        reservation.change_key = compute_token(reservation)
        self.db.add(reservation)
        self.db.flush()

        initial = detect_changes(SimpleNamespace(), self._snapshot(reservation))
        self._append_revision(reservation.id, reservation.change_key, now, actor, initial)
        self._append_status(reservation.id, status.value, now, actor, None)
        self.db.commit()
        delete_prefix(AVAILABILITY_CACHE_PREFIX)
        logger.info("Reservation %s created by %s as %s", reservation.id, actor, status.value)
        return self.get(reservation.id)

    # ---------- Update ----------

    def update(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        patch: Dict[str, Any],
        actor: str,
        force_update: bool = False,
    ) -> Outcome:
        """
        Apply a partial update guarded by the caller's change key.

        Behavior
        --------
        - Stale or missing key: VersionConflict / ValidationError, nothing written.
        - Another reviewer's active hold: LockHeld.
        - Moving an approved reservation to a colliding room/time:
          SchedulingConflict unless ``force_update``.
        - Otherwise the patch is written atomically, a new change key is
          computed, and a revision with the field diff is appended.
        """
        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        if reservation.status == Status.DELETED.value:
            raise InvalidTransition("Deleted reservations must be restored before they can be edited")

        values = self._normalize_patch(reservation, patch)
        warnings = []
        if reservation.status == Status.APPROVED.value and self._touches_schedule(reservation, values):
            conflict_info = self._check_candidate(reservation, values, force_update, "update")
            if conflict_info:
                values["conflict_details"] = conflict_info
                warnings.append(f"Saved despite {len(conflict_info)} scheduling conflict(s)")

        updated = self._conditional_write(reservation, supplied_token, values, actor)
        return Outcome(updated, warnings)

    # ---------- Status transitions ----------

    def submit(self, reservation_id: int, supplied_token: Optional[str], actor: str) -> Outcome:
        return self._transition(
            reservation_id, supplied_token, actor, allowed=(Status.DRAFT,), target=Status.PENDING
        )

    def approve(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        force_approve: bool = False,
        notes: Optional[str] = None,
    ) -> Outcome:
        """
        Approve a pending reservation.

        The token check is unconditional, ``force_approve`` only overrides
        scheduling conflicts, and the accepted conflicts are stored on the
        record. A calendar failure after the write is reported as a warning;
        the approval stays committed.
        """
        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        self._require_status(reservation, (Status.PENDING,), Status.APPROVED)

        conflicts = find_conflicts(self.db, reservation, exclude_id=reservation.id)
        if conflicts and not force_approve:
            raise self._scheduling_conflict(conflicts, requires_override=True)

        now = self.clock()
        values = {
            "status": Status.APPROVED.value,
            "reviewed_by": actor,
            "reviewed_at": now,
            "conflict_details": conflicts_as_dicts(conflicts) if conflicts else None,
        }
        completed = self._completed_review(reservation, actor, now)
        if completed:
            values.update(review_lock.cleared_hold_values())
        if conflicts:
            logger.warning(
                "Reservation %s force-approved by %s over %d conflict(s): %s",
                reservation.id,
                actor,
                len(conflicts),
                [c.id for c in conflicts],
            )

        updated = self._conditional_write(
            reservation, supplied_token, values, actor, reason=notes, completed_review=completed
        )

        warnings = self._sync_calendar(updated)
        self.notifier.notify("approved", updated, actor, notes)
        return Outcome(self.get(reservation_id), warnings)

    def reject(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        reason: Optional[str],
    ) -> Outcome:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        self._require_status(reservation, (Status.PENDING,), Status.REJECTED)

        now = self.clock()
        values = {
            "status": Status.REJECTED.value,
            "reviewed_by": actor,
            "reviewed_at": now,
            "rejection_reason": reason,
        }
        completed = self._completed_review(reservation, actor, now)
        if completed:
            values.update(review_lock.cleared_hold_values())
        updated = self._conditional_write(
            reservation, supplied_token, values, actor, reason=reason, completed_review=completed
        )
        self.notifier.notify("rejected", updated, actor, reason)
        return Outcome(updated)

    def cancel(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        reason: Optional[str] = None,
    ) -> Outcome:
        outcome = self._transition(
            reservation_id,
            supplied_token,
            actor,
            allowed=(Status.PENDING, Status.APPROVED),
            target=Status.CANCELLED,
            reason=reason,
        )
        outcome.warnings.extend(self._remove_calendar_event(outcome.reservation))
        self.notifier.notify("cancelled", outcome.reservation, actor, reason)
        return outcome

    def resubmit(self, reservation_id: int, supplied_token: Optional[str], actor: str) -> Outcome:
        return self._transition(
            reservation_id,
            supplied_token,
            actor,
            allowed=(Status.REJECTED,),
            target=Status.PENDING,
            reason="Resubmitted after rejection",
            extra={"reviewed_by": None, "reviewed_at": None, "rejection_reason": None},
        )

    def delete(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
    ) -> Outcome:
        """Soft delete. Deleting an already-deleted reservation is a no-op."""
        reservation = self.get(reservation_id)
        if reservation.status == Status.DELETED.value:
            return Outcome(reservation)

        outcome = self._transition(
            reservation_id,
            supplied_token,
            actor,
            allowed=tuple(s for s in Status if s != Status.DELETED),
            target=Status.DELETED,
        )
        outcome.warnings.extend(self._remove_calendar_event(outcome.reservation))
        return outcome

    def restore(self, reservation_id: int, supplied_token: Optional[str], actor: str) -> Outcome:
        """
        Bring a cancelled or deleted reservation back to the status it had before.

        Conflicts always block a restore that would occupy rooms again; there
        is no override.
        """
        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        if reservation.status not in (Status.DELETED.value, Status.CANCELLED.value):
            raise InvalidTransition(
                f"Only cancelled or deleted reservations can be restored (current status: {reservation.status})",
                {"currentStatus": reservation.status},
            )

        target = self.previous_status(reservation)
        if target in {s.value for s in models.ACTIVE_STATUSES}:
            conflicts = find_conflicts(self.db, reservation, exclude_id=reservation.id)
            if conflicts:
                raise self._scheduling_conflict(conflicts, requires_override=False)

        updated = self._conditional_write(
            reservation, supplied_token, {"status": target}, actor, reason="Restored"
        )
        warnings = []
        if target == Status.APPROVED.value:
            warnings = self._sync_calendar(updated)
        logger.info("Reservation %s restored to %s by %s", reservation_id, target, actor)
        return Outcome(self.get(reservation_id), warnings)

    def previous_status(self, reservation: models.Reservation) -> str:
        """Last status in the history that is neither deleted nor cancelled; draft if none."""
        for entry in reversed(reservation.status_history or []):
            if entry.status not in _NON_RESTORABLE:
                return entry.status
        return Status.DRAFT.value

    # ---------- Edit requests ----------

    def request_edit(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        proposed_changes: Dict[str, Any],
        change_reason: Optional[str],
    ) -> Outcome:
        change_reason = (change_reason or "").strip()
        if not proposed_changes or not change_reason:
            raise ValidationError("Both proposedChanges and changeReason are required")

        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        if reservation.status != Status.APPROVED.value:
            raise InvalidTransition(
                "Edit requests can only be made on approved reservations",
                {"currentStatus": reservation.status},
            )
        current = reservation.pending_edit_request or {}
        if current.get("status") == "pending":
            raise InvalidTransition("This reservation already has a pending edit request")

        proposed = self._normalize_patch(reservation, proposed_changes)
        request = {
            "status": "pending",
            "proposedChanges": {k: to_jsonable(v) for k, v in proposed.items()},
            "changeReason": change_reason,
            "requestedBy": actor,
            "requestedAt": self.clock().isoformat(),
        }
        updated = self._conditional_write(
            reservation, supplied_token, {"pending_edit_request": request}, actor
        )
        return Outcome(updated)

    def approve_edit_request(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        approver_changes: Optional[Dict[str, Any]] = None,
        force_approve: bool = False,
    ) -> Outcome:
        """
        Apply a pending edit request, merged with any approver changes.

        Approver changes win over proposed ones field by field. Schedule
        changes are conflict-checked and ``force_approve`` may override.
        """
        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        request = self._decidable_edit_request(reservation)

        values = self._parse_patch(request.get("proposedChanges") or {})
        values.update(self._parse_patch(approver_changes or {}))
        self._check_window(reservation, values)

        warnings = []
        if self._touches_schedule(reservation, values):
            conflict_info = self._check_candidate(reservation, values, force_approve, "edit request")
            if conflict_info:
                values["conflict_details"] = conflict_info
                warnings.append(f"Approved despite {len(conflict_info)} scheduling conflict(s)")

        values["pending_edit_request"] = dict(
            request,
            status="approved",
            reviewedBy=actor,
            reviewedAt=self.clock().isoformat(),
            approverChanges={k: to_jsonable(v) for k, v in (approver_changes or {}).items()},
        )
        updated = self._conditional_write(reservation, supplied_token, values, actor)
        warnings.extend(self._sync_calendar(updated))
        self.notifier.notify("edit_request_approved", updated, actor)
        return Outcome(self.get(reservation_id), warnings)

    def reject_edit_request(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        reason: Optional[str],
    ) -> Outcome:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        request = self._decidable_edit_request(reservation)
        values = {
            "pending_edit_request": dict(
                request,
                status="rejected",
                reviewedBy=actor,
                reviewedAt=self.clock().isoformat(),
                rejectionReason=reason,
            )
        }
        updated = self._conditional_write(reservation, supplied_token, values, actor)
        self.notifier.notify("edit_request_rejected", updated, actor, reason)
        return Outcome(updated)

    def cancel_edit_request(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
    ) -> Outcome:
        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        request = self._pending_edit_request(reservation)
        if request.get("requestedBy") != actor:
            raise Forbidden("Only the requester can cancel their edit request")
        values = {
            "pending_edit_request": dict(
                request, status="cancelled", cancelledAt=self.clock().isoformat()
            )
        }
        return Outcome(self._conditional_write(reservation, supplied_token, values, actor))

    # ---------- Review holds ----------

    def start_review(self, reservation_id: int, actor: str) -> review_lock.LockResult:
        now = self.clock()
        result = review_lock.acquire(self.db, reservation_id, actor, now)
        if not result.granted:
            raise review_lock.lock_held_error(result, now)
        return result

    def release_review(self, reservation_id: int, actor: str, force: bool = False) -> bool:
        return review_lock.release(self.db, reservation_id, actor, self.clock(), force=force)

    # ---------- Internals ----------

    def _require_token(self, reservation: models.Reservation, supplied_token: Optional[str]) -> None:
        if not supplied_token:
            raise ValidationError(
                "A change key is required (If-Match header or changeKey field)",
                {"currentChangeKey": reservation.change_key},
            )
        if not validate_token(reservation, supplied_token):
            raise self._version_conflict(reservation.id, supplied_token)

    def _version_conflict(self, reservation_id: int, supplied_token: str) -> VersionConflict:
        self.db.expire_all()
        current = self.get(reservation_id)
        who = current.last_modified_by or "another user"
        when = current.last_modified.isoformat() if current.last_modified else None
        logger.info(
            "Version conflict on reservation %s: supplied %s, current %s",
            reservation_id,
            normalize_token(supplied_token),
            current.change_key,
        )
        return VersionConflict(
            f"This reservation was modified by {who} at {when}. Refresh and try again.",
            {
                "currentChangeKey": current.change_key,
                "currentStatus": current.status,
                "lastModifiedBy": current.last_modified_by,
                "lastModified": when,
                "changes": self.changes_since(reservation_id, supplied_token),
            },
        )

    def _ensure_unlocked(self, reservation: models.Reservation, actor: str) -> None:
        review_lock.ensure_not_held_by_other(reservation, actor, self.clock())

    def _require_status(self, reservation, allowed, target: Status) -> None:
        if reservation.status not in {s.value for s in allowed}:
            raise InvalidTransition(
                f"Cannot move a {reservation.status} reservation to {target.value}",
                {"currentStatus": reservation.status, "targetStatus": target.value},
            )

    def _transition(
        self,
        reservation_id: int,
        supplied_token: Optional[str],
        actor: str,
        allowed,
        target: Status,
        reason: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Outcome:
        reservation = self.get(reservation_id)
        self._require_token(reservation, supplied_token)
        self._ensure_unlocked(reservation, actor)
        self._require_status(reservation, allowed, target)
        values = {"status": target.value}
        values.update(extra or {})
        if target in (Status.CANCELLED, Status.DELETED):
            withdrawn = self._withdrawn_edit_request(reservation, target)
            if withdrawn:
                values["pending_edit_request"] = withdrawn
        updated = self._conditional_write(reservation, supplied_token, values, actor, reason=reason)
        logger.info("Reservation %s moved to %s by %s", reservation_id, target.value, actor)
        return Outcome(updated)

    def _pending_edit_request(self, reservation: models.Reservation) -> Dict[str, Any]:
        request = reservation.pending_edit_request or {}
        if request.get("status") != "pending":
            raise InvalidTransition("There is no pending edit request on this reservation")
        return request

    def _decidable_edit_request(self, reservation: models.Reservation) -> Dict[str, Any]:
        if reservation.status != Status.APPROVED.value:
            raise InvalidTransition(
                "Edit requests can only be decided on approved reservations",
                {"currentStatus": reservation.status},
            )
        return self._pending_edit_request(reservation)

    def _withdrawn_edit_request(self, reservation: models.Reservation, target: Status) -> Optional[Dict[str, Any]]:
        request = reservation.pending_edit_request or {}
        if request.get("status") != "pending":
            return None
        return dict(
            request,
            status="cancelled",
            cancelledAt=self.clock().isoformat(),
            cancelledReason=f"Reservation {target.value}",
        )

    def _normalize_patch(self, reservation: models.Reservation, patch: Dict[str, Any]) -> Dict[str, Any]:
        values = self._parse_patch(patch)
        self._check_window(reservation, values)
        return values

    def _parse_patch(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate a loosely-typed patch and bring it to column types.

        Unknown fields are rejected and datetimes become naive UTC. Keys come
        back in snake_case whichever spelling the caller used.
        """
        unknown = set(patch) - _PATCH_KEYS
        if unknown:
            raise ValidationError("Unknown reservation fields", {"unknownFields": sorted(unknown)})
        try:
            parsed = schemas.ReservationUpdate.model_validate(patch)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid reservation fields",
                {"fieldErrors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from None

        values = parsed.model_dump(exclude_unset=True, exclude={"change_key"})
        for key in ("start_datetime", "end_datetime"):
            if key in values:
                if values[key] is None:
                    raise ValidationError(f"{key} cannot be cleared")
                values[key] = as_utc_naive(values[key])
        if "selected_rooms" in values:
            if values["selected_rooms"] is None:
                raise ValidationError("selectedRooms cannot be cleared")
            values["selected_rooms"] = sorted(set(values["selected_rooms"]))
        if "title" in values:
            title = (values["title"] or "").strip()
            if not title:
                raise ValidationError("title must not be blank")
            values["title"] = title
        for key in ("attendee_count", "setup_time_minutes", "teardown_time_minutes"):
            if key in values and values[key] is None:
                values[key] = 0
        return values

    def _check_window(self, reservation: models.Reservation, values: Dict[str, Any]) -> None:
        start = values.get("start_datetime", reservation.start_datetime)
        end = values.get("end_datetime", reservation.end_datetime)
        if end <= start:
            raise ValidationError("endDateTime must be after startDateTime")

    def _touches_schedule(self, reservation: models.Reservation, values: Dict[str, Any]) -> bool:
        return bool(detect_changes(reservation, values, fields=SCHEDULE_FIELDS))

    def _check_candidate(
        self,
        reservation: models.Reservation,
        values: Dict[str, Any],
        force: bool,
        action: str,
    ) -> Optional[List[dict]]:
        candidate = SimpleNamespace(**self._snapshot(reservation))
        for key, value in values.items():
            setattr(candidate, key, value)
        conflicts = find_conflicts(self.db, candidate, exclude_id=reservation.id)
        if not conflicts:
            return None
        if not force:
            raise self._scheduling_conflict(conflicts, requires_override=True)
        logger.warning(
            "Reservation %s %s forced over %d conflict(s)", reservation.id, action, len(conflicts)
        )
        return conflicts_as_dicts(conflicts)

    def _scheduling_conflict(self, conflicts, requires_override: bool) -> SchedulingConflict:
        titles = ", ".join(f"'{c.title}' (rooms {c.overlapping_rooms})" for c in conflicts)
        return SchedulingConflict(
            f"Conflicts with {len(conflicts)} existing reservation(s): {titles}",
            {
                "conflicts": conflicts_as_dicts(conflicts),
                "requiresOverride": requires_override,
            },
        )

    def _completed_review(
        self, reservation: models.Reservation, actor: str, now: datetime
    ) -> Optional[Dict[str, Any]]:
        """Review-history entry for a decision made by the reviewer holding the hold, else None."""
        if reservation.review_status != models.ReviewStatus.REVIEWING.value or reservation.reviewing_by != actor:
            return None
        return {
            "reviewing_by": actor,
            "started_at": reservation.review_started_at,
            "completed_at": now,
            "released_by": actor,
            "outcome": models.ReviewOutcome.COMPLETED,
        }

    def _conditional_write(
        self,
        reservation: models.Reservation,
        expected_token: str,
        values: Dict[str, Any],
        actor: str,
        reason: Optional[str] = None,
        completed_review: Optional[Dict[str, Any]] = None,
    ) -> models.Reservation:
        """
        Test-and-set write keyed on the expected change key.

        Stamps ``last_modified``, recomputes the change key over the new field
        state, and appends revision and status-history entries in the same
        transaction. A ``completed_review`` entry is recorded in that
        transaction too. Zero rows affected raises VersionConflict.
        """
        now = next_modified_stamp(reservation.last_modified, self.clock())
        changes = detect_changes(reservation, values)

        projected = SimpleNamespace(**self._snapshot(reservation))
        for key, value in values.items():
            setattr(projected, key, value)
        projected.last_modified = now
        new_key = compute_token(projected)

        payload = dict(values)
        payload.update({"last_modified": now, "last_modified_by": actor, "change_key": new_key})

        expected = normalize_token(expected_token)
        rows = (
            self.db.query(models.Reservation)
            .filter(models.Reservation.id == reservation.id)
            .filter(models.Reservation.change_key == expected)
            .update(payload, synchronize_session=False)
        )
        if rows != 1:
            self.db.rollback()
            raise self._version_conflict(reservation.id, expected_token)

        self._append_revision(reservation.id, new_key, now, actor, changes)
        new_status = values.get("status")
        if new_status is not None and new_status != reservation.status:
            self._append_status(reservation.id, new_status, now, actor, reason)
        if completed_review is not None:
            review_lock.record_review(self.db, reservation.id, **completed_review)
        self.db.commit()
        delete_prefix(AVAILABILITY_CACHE_PREFIX)
        return self.get(reservation.id)

    def _append_revision(self, reservation_id, change_key, timestamp, actor, changes) -> None:
        last = (
            self.db.query(func.max(models.ReservationRevision.revision_number))
            .filter(models.ReservationRevision.reservation_id == reservation_id)
            .scalar()
        )
        self.db.add(
            models.ReservationRevision(
                reservation_id=reservation_id,
                revision_number=(last or 0) + 1,
                change_key=change_key,
                timestamp=timestamp,
                modified_by=actor,
                changes=changes,
            )
        )

    def _append_status(self, reservation_id, status, changed_at, actor, reason) -> None:
        self.db.add(
            models.StatusHistoryEntry(
                reservation_id=reservation_id,
                status=status,
                changed_at=changed_at,
                changed_by=actor,
                reason=reason,
            )
        )

    @staticmethod
    def _snapshot(reservation: models.Reservation) -> Dict[str, Any]:
        return {
            "title": reservation.title,
            "description": reservation.description,
            "attendee_count": reservation.attendee_count,
            "start_datetime": reservation.start_datetime,
            "end_datetime": reservation.end_datetime,
            "setup_time_minutes": reservation.setup_time_minutes,
            "teardown_time_minutes": reservation.teardown_time_minutes,
            "selected_rooms": list(reservation.selected_rooms or []),
            "status": reservation.status,
            "last_modified": reservation.last_modified,
        }

    # ---------- External calendar ----------

    def _sync_calendar(self, reservation: models.Reservation) -> List[str]:
        """Materialize an approved reservation in the external calendar; failures become warnings."""
        if self.calendar is None or not self.calendar_user_id:
            return []
        try:
            payload = build_event_payload(reservation)
            if reservation.calendar_event_id:
                self.calendar.update_event(self.calendar_user_id, reservation.calendar_event_id, payload)
                return []
            created = self.calendar.create_event(self.calendar_user_id, payload)
        except ExternalServiceError as exc:
            logger.warning(
                "Calendar sync failed for reservation %s; approval kept: %s", reservation.id, exc.message
            )
            return [f"Calendar sync failed: {exc.message}"]

        event_id = created.get("id")
        if event_id:
            # Not part of the change key: recording it does not invalidate anyone's token.
            self.db.query(models.Reservation).filter(models.Reservation.id == reservation.id).update(
                {"calendar_event_id": event_id}, synchronize_session=False
            )
            self.db.commit()
        return []

    def _remove_calendar_event(self, reservation: models.Reservation) -> List[str]:
        if self.calendar is None or not self.calendar_user_id or not reservation.calendar_event_id:
            return []
        try:
            self.calendar.delete_event(self.calendar_user_id, reservation.calendar_event_id)
        except ExternalServiceError as exc:
            logger.warning(
                "Calendar delete failed for reservation %s: %s", reservation.id, exc.message
            )
            return [f"Calendar delete failed: {exc.message}"]
        self.db.query(models.Reservation).filter(models.Reservation.id == reservation.id).update(
            {"calendar_event_id": None}, synchronize_session=False
        )
        self.db.commit()
        return []
