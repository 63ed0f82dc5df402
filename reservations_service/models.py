from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


class ReservationStatus(str, PyEnum):
    """
    Enumeration of workflow states a reservation moves through.

    Values
    ------
    draft
        Saved by the requester but not yet submitted for review.
    pending
        Submitted and waiting for an approver; holds its rooms tentatively.
    approved
        Published; the rooms are committed for the effective window.
    rejected
        Declined by an approver; can be resubmitted.
    cancelled
        Withdrawn after submission or approval.
    deleted
        Soft-deleted; can be restored to the status it had before.
    """
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DELETED = "deleted"


# Only these statuses occupy rooms for conflict purposes.
ACTIVE_STATUSES = (ReservationStatus.APPROVED, ReservationStatus.PENDING)


class ReviewStatus(str, PyEnum):
    NOT_STARTED = "not_started"
    REVIEWING = "reviewing"
    # Reserved: finished reviews fold straight back to NOT_STARTED and the
    # outcome is kept in review history.
    COMPLETED = "completed"


class ReviewOutcome(str, PyEnum):
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class Reservation(Base):
    """
    SQLAlchemy model representing a room reservation request.

    Attributes
    ----------
    id : int
        Primary key.
    requested_by : str
        Identity of the user who submitted the reservation.
    title, description, attendee_count
        Descriptive content; does not affect scheduling.
    start_datetime, end_datetime : datetime
        Raw event window (naive UTC).
    setup_time_minutes, teardown_time_minutes : int
        Buffers that extend the effective window before and after the event.
    selected_rooms : list[int]
        Room identifiers the reservation occupies.
    status : ReservationStatus
        Workflow state.
    change_key : str
        Opaque version token recomputed on every field mutation.
    last_modified, last_modified_by
        When and by whom the last field mutation happened.
    review_status, reviewing_by, review_started_at, review_expires_at
        Soft hold state. ``not_started`` implies all other hold fields are NULL.
    conflict_details : list[dict]
        Conflicts accepted by a forced approval, kept for audit.
    pending_edit_request : dict
        Edit request raised against an approved reservation.
    calendar_event_id : str
        Identifier of the materialized event in the external calendar.
    """
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    requested_by = Column(String(255), index=True, nullable=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    attendee_count = Column(Integer, nullable=False, default=0)

    start_datetime = Column(DateTime, nullable=False, index=True)
    end_datetime = Column(DateTime, nullable=False, index=True)
    setup_time_minutes = Column(Integer, nullable=False, default=0)
    teardown_time_minutes = Column(Integer, nullable=False, default=0)
    selected_rooms = Column(JSON, nullable=False, default=list)

    status = Column(String(20), index=True, nullable=False, default=ReservationStatus.PENDING.value)

    change_key = Column(String(64), nullable=False)
    last_modified = Column(DateTime, nullable=False)
    last_modified_by = Column(String(255), nullable=True)

    review_status = Column(String(20), nullable=False, default=ReviewStatus.NOT_STARTED.value)
    reviewing_by = Column(String(255), nullable=True)
    review_started_at = Column(DateTime, nullable=True)
    review_expires_at = Column(DateTime, nullable=True, index=True)

    conflict_details = Column(JSON, nullable=True)
    pending_edit_request = Column(JSON, nullable=True)
    calendar_event_id = Column(String(255), nullable=True)

    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    revisions = relationship(
        "ReservationRevision",
        order_by="ReservationRevision.revision_number",
        lazy="selectin",
    )
    review_history = relationship(
        "ReviewHistoryEntry",
        order_by="ReviewHistoryEntry.id",
        lazy="selectin",
    )
    status_history = relationship(
        "StatusHistoryEntry",
        order_by="StatusHistoryEntry.id",
        lazy="selectin",
    )


class ReservationRevision(Base):
    """
    Append-only record of one successful field mutation.

    ``changes`` holds the field-level diff produced by change detection.
    """
    __tablename__ = "reservation_revisions"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), index=True, nullable=False)
    revision_number = Column(Integer, nullable=False)
    change_key = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    modified_by = Column(String(255), nullable=True)
    changes = Column(JSON, nullable=False, default=list)


class ReviewHistoryEntry(Base):
    """Append-only record of one review session (hold) on a reservation."""
    __tablename__ = "review_history"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), index=True, nullable=False)
    reviewing_by = Column(String(255), nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=False)
    released_by = Column(String(255), nullable=False)
    outcome = Column(String(20), nullable=False)


class StatusHistoryEntry(Base):
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), index=True, nullable=False)
    status = Column(String(20), nullable=False)
    changed_at = Column(DateTime, nullable=False)
    changed_by = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
