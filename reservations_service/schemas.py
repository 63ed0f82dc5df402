from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import ReservationStatus


class CamelModel(BaseModel):
    """
    Base schema that speaks camelCase on the wire and snake_case in Python.

    Both spellings are accepted on input.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ScheduleFields(CamelModel):
    """
    Scheduling window and room set of a reservation.

    Shared by create, conflict-check, and edit-request payloads.
    """
    start_datetime: datetime = Field(..., alias="startDateTime")
    end_datetime: datetime = Field(..., alias="endDateTime")
    setup_time_minutes: int = Field(default=0, ge=0)
    teardown_time_minutes: int = Field(default=0, ge=0)
    selected_rooms: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("endDateTime must be after startDateTime")
        return self

    @field_validator("selected_rooms")
    @classmethod
    def unique_rooms(cls, value: List[int]) -> List[int]:
        return sorted(set(value))


class ReservationCreate(ScheduleFields):
    """
    Schema for submitting a new reservation.

    ``is_draft`` keeps the reservation out of the approval queue.
    """
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    attendee_count: int = Field(default=0, ge=0)
    is_draft: bool = False

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class ReservationUpdate(CamelModel):
    """
    Partial update of a reservation.

    All fields are optional; only provided values are applied.
    ``change_key`` is a fallback for clients that cannot send If-Match.
    """
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    attendee_count: Optional[int] = Field(default=None, ge=0)
    start_datetime: Optional[datetime] = Field(default=None, alias="startDateTime")
    end_datetime: Optional[datetime] = Field(default=None, alias="endDateTime")
    setup_time_minutes: Optional[int] = Field(default=None, ge=0)
    teardown_time_minutes: Optional[int] = Field(default=None, ge=0)
    selected_rooms: Optional[List[int]] = None
    change_key: Optional[str] = None


class TokenBody(CamelModel):
    change_key: Optional[str] = None


class ApproveRequest(TokenBody):
    force_approve: bool = False
    notes: Optional[str] = None


class RejectRequest(TokenBody):
    reason: Optional[str] = None


class ReleaseRequest(BaseModel):
    force: bool = False


class EditRequestCreate(TokenBody):
    proposed_changes: Dict[str, Any] = Field(default_factory=dict)
    change_reason: Optional[str] = None


class EditRequestApprove(TokenBody):
    approver_changes: Dict[str, Any] = Field(default_factory=dict)
    force_approve: bool = False


class ConflictCheckRequest(ScheduleFields):
    exclude_id: Optional[int] = None


class ConflictRead(CamelModel):
    """One reservation that collides with a candidate, with the rooms they share."""
    id: int
    title: str
    status: str
    start_date_time: datetime
    end_date_time: datetime
    setup_time_minutes: int
    teardown_time_minutes: int
    effective_start: datetime
    effective_end: datetime
    overlapping_rooms: List[int]


class RevisionRead(CamelModel):
    revision_number: int
    change_key: str
    timestamp: datetime
    modified_by: Optional[str] = None
    changes: List[Dict[str, Any]] = Field(default_factory=list)


class ReviewHistoryRead(CamelModel):
    reviewing_by: str
    started_at: Optional[datetime] = None
    completed_at: datetime
    released_by: str
    outcome: str


class StatusHistoryRead(CamelModel):
    status: str
    changed_at: datetime
    changed_by: Optional[str] = None
    reason: Optional[str] = None


class ReservationRead(CamelModel):
    """
    Schema returned when reading a reservation.

    Carries the current ``change_key`` so clients can send it back on the
    next mutation.
    """
    id: int
    requested_by: str
    title: str
    description: Optional[str] = None
    attendee_count: int
    start_datetime: datetime = Field(alias="startDateTime")
    end_datetime: datetime = Field(alias="endDateTime")
    setup_time_minutes: int
    teardown_time_minutes: int
    selected_rooms: List[int]
    status: ReservationStatus
    change_key: str
    last_modified: datetime
    last_modified_by: Optional[str] = None
    review_status: str
    reviewing_by: Optional[str] = None
    review_started_at: Optional[datetime] = None
    review_expires_at: Optional[datetime] = None
    conflict_details: Optional[List[Dict[str, Any]]] = None
    pending_edit_request: Optional[Dict[str, Any]] = None
    calendar_event_id: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class MutationResult(ReservationRead):
    """A reservation returned from a mutating call, plus non-fatal warnings."""
    warnings: List[str] = Field(default_factory=list)


class ReviewStarted(CamelModel):
    reservation_id: int
    reviewing_by: str
    review_started_at: datetime
    review_expires_at: datetime
    duration_minutes: int


class ReviewReleased(CamelModel):
    reservation_id: int
    released: bool = True


class AvailabilityRead(CamelModel):
    room_id: int
    available: bool
    conflicts: List[ConflictRead] = Field(default_factory=list)
