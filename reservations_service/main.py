import logging
from contextlib import asynccontextmanager
from datetime import datetime
from types import SimpleNamespace
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common.cache import availability_key, get_cached_json, set_cached_json

from . import config, models, reaper, schemas
from .auth import ROLE_ADMIN, ROLE_APPROVER, get_current_user_claims, reviewer_roles
from .calendar_proxy import build_default_client
from .clock import as_utc_naive
from .conflicts import conflicts_as_dicts, find_conflicts
from .database import Base, engine, get_db
from .errors import Forbidden, ReservationError, ValidationError
from .notifications import NotificationDispatcher, build_default_dispatcher
from .review_lock import HOLD_DURATION_MINUTES
from .service import Outcome, ReservationService

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create tables
Base.metadata.create_all(bind=engine)

SERVICE_NAME = "reservations"

_calendar = None if config.TESTING else build_default_client()
_notifier = NotificationDispatcher() if config.TESTING else build_default_dispatcher()


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = reaper.start() if config.REAPER_ENABLED else None
    yield
    if task is not None:
        await reaper.stop(task)
    if _calendar is not None:
        _calendar.close()


app = FastAPI(title="Reservations Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")


def _envelope(request: Request, status_code: int, detail, **extra) -> Dict:
    content = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }
    content.update(extra)
    return content


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(request, exc.status_code, exc.message, **exc.to_dict()),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_envelope(
            request,
            status.HTTP_400_BAD_REQUEST,
            errors,
            error=ValidationError.code,
            message="Invalid request payload",
        ),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_envelope(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Reservations service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": SERVICE_NAME, "status": "running"}


def get_service(db: Session = Depends(get_db)) -> ReservationService:
    return ReservationService(
        db,
        calendar=_calendar,
        calendar_user_id=config.CALENDAR_USER_ID,
        notifier=_notifier,
    )


def _token(if_match: Optional[str], body: Optional[schemas.TokenBody] = None) -> Optional[str]:
    """If-Match wins; the body ``changeKey`` is a fallback for clients that cannot set headers."""
    if if_match:
        return if_match
    return body.change_key if body is not None else None


def _is_reviewer(claims: Dict) -> bool:
    return claims["role"] in (ROLE_ADMIN, ROLE_APPROVER)


def _ensure_owner_or_reviewer(reservation: models.Reservation, claims: Dict) -> None:
    if reservation.requested_by != claims["username"] and not _is_reviewer(claims):
        raise Forbidden("Only the requester or a reviewer can change this reservation")


def _mutation_response(outcome: Outcome, response: Response) -> schemas.MutationResult:
    result = schemas.MutationResult.model_validate(outcome.reservation)
    result.warnings = list(outcome.warnings)
    response.headers["ETag"] = f'"{outcome.reservation.change_key}"'
    return result


# ---------- Create / read ----------


@router_v1.post(
    "/reservations",
    response_model=schemas.ReservationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_reservation(
    reservation_in: schemas.ReservationCreate,
    response: Response,
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Create a reservation for the authenticated user.

    Behavior
    --------
    - Lands in ``pending`` (or ``draft`` when ``isDraft`` is set).
    - No conflict check here; conflicts are decided at approval time.
    - Returns the initial ``changeKey`` in the body and as ETag.
    """
    reservation = service.create(reservation_in, claims["username"])
    response.headers["ETag"] = f'"{reservation.change_key}"'
    return reservation


@router_v1.get("/reservations", response_model=List[schemas.ReservationRead])
def list_reservations(
    status_filter: Optional[models.ReservationStatus] = Query(default=None, alias="status"),
    room_id: Optional[int] = Query(default=None, ge=1),
    include_deleted: bool = False,
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    List reservations ordered by start time.

    Requesters see their own reservations; reviewers see everyone's.
    Deleted reservations are hidden unless ``include_deleted`` is set or
    ``status=deleted`` is asked for explicitly.
    """
    rows = service.list_reservations(
        status=status_filter.value if status_filter else None,
        room_id=room_id,
        include_deleted=include_deleted,
    )
    if not _is_reviewer(claims):
        rows = [r for r in rows if r.requested_by == claims["username"]]
    return rows


@router_v1.get("/reservations/{reservation_id}", response_model=schemas.ReservationRead)
def get_reservation(
    reservation_id: int,
    response: Response,
    service: ReservationService = Depends(get_service),
    _: Dict = Depends(get_current_user_claims),
):
    """
    Fetch one reservation.

    Viewing is never blocked by a review hold. The current ``changeKey`` is
    sent both in the body and as a quoted ``ETag`` header.
    """
    reservation = service.get(reservation_id)
    response.headers["ETag"] = f'"{reservation.change_key}"'
    return reservation


# ---------- Update ----------


@router_v1.put("/reservations/{reservation_id}", response_model=schemas.MutationResult)
def update_reservation(
    reservation_id: int,
    update_data: schemas.ReservationUpdate,
    response: Response,
    force_update: bool = False,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Apply a partial update guarded by the caller's change key.

    Raises
    ------
    ValidationError
        400 if no change key was supplied.
    VersionConflict
        409 ``ConflictError`` with ``currentChangeKey``, ``lastModifiedBy``,
        ``lastModified`` and ``changes``.
    LockHeld
        423 while another reviewer holds the reservation.
    SchedulingConflict
        409 when an approved reservation is moved onto a booked room/time and
        ``force_update`` is not set.
    """
    reservation = service.get(reservation_id)
    _ensure_owner_or_reviewer(reservation, claims)
    if force_update and not _is_reviewer(claims):
        raise Forbidden("Only reviewers can override scheduling conflicts")

    patch = update_data.model_dump(exclude_unset=True, exclude={"change_key"})
    outcome = service.update(
        reservation_id,
        _token(if_match, update_data),
        patch,
        claims["username"],
        force_update=force_update,
    )
    return _mutation_response(outcome, response)


# ---------- Conflicts ----------


@router_v1.get("/reservations/{reservation_id}/conflicts", response_model=List[schemas.ConflictRead])
def list_conflicts(
    reservation_id: int,
    service: ReservationService = Depends(get_service),
    _: Dict = Depends(get_current_user_claims),
):
    """Active reservations colliding with this one's persisted window and rooms."""
    return service.conflicts_for(reservation_id)


@router_v1.post("/reservations/conflicts/check")
def check_conflicts(
    candidate: schemas.ConflictCheckRequest,
    db: Session = Depends(get_db),
    _: Dict = Depends(get_current_user_claims),
):
    """
    Run conflict detection against an unsaved candidate.

    Returns
    -------
    dict
        ``{"hasConflicts": bool, "conflicts": [...]}``.
    """
    conflicts = find_conflicts(db, candidate, exclude_id=candidate.exclude_id)
    return {"hasConflicts": bool(conflicts), "conflicts": conflicts_as_dicts(conflicts)}


@router_v1.get("/rooms/{room_id}/availability", response_model=schemas.AvailabilityRead)
def room_availability(
    room_id: int,
    start: datetime,
    end: datetime,
    setup_time_minutes: int = Query(default=0, ge=0),
    teardown_time_minutes: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: Dict = Depends(get_current_user_claims),
):
    """
    Whether a single room is free over a window (buffers included).

    Results are cached in Redis for a minute; every reservation write clears
    the ``reservations:availability:`` prefix.
    """
    start, end = as_utc_naive(start), as_utc_naive(end)
    key = availability_key(room_id, start, end) + f":{setup_time_minutes}:{teardown_time_minutes}"
    cached = get_cached_json(key)
    if cached is not None:
        return cached

    candidate = SimpleNamespace(
        start_datetime=start,
        end_datetime=end,
        setup_time_minutes=setup_time_minutes,
        teardown_time_minutes=teardown_time_minutes,
        selected_rooms=[room_id],
    )
    conflicts = find_conflicts(db, candidate)
    result = schemas.AvailabilityRead(room_id=room_id, available=not conflicts, conflicts=conflicts)
    set_cached_json(key, result.model_dump(mode="json", by_alias=True))
    return result


# ---------- Status transitions ----------


@router_v1.post("/reservations/{reservation_id}/submit", response_model=schemas.MutationResult)
def submit_reservation(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.TokenBody] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    _ensure_owner_or_reviewer(service.get(reservation_id), claims)
    outcome = service.submit(reservation_id, _token(if_match, body), claims["username"])
    return _mutation_response(outcome, response)


@router_v1.post("/reservations/{reservation_id}/approve", response_model=schemas.MutationResult)
def approve_reservation(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.ApproveRequest] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(reviewer_roles),
):
    """
    Approve a pending reservation.

    Behavior
    --------
    - The change key is always checked, ``forceApprove`` included.
    - Conflicts without ``forceApprove``: 409 ``SchedulingConflict`` with
      ``conflicts`` and ``requiresOverride: true``.
    - With ``forceApprove`` the conflicts are stored in ``conflictDetails``.
    - Calendar failures come back in ``warnings``; the approval stands.
    """
    body = body or schemas.ApproveRequest()
    outcome = service.approve(
        reservation_id,
        _token(if_match, body),
        claims["username"],
        force_approve=body.force_approve,
        notes=body.notes,
    )
    return _mutation_response(outcome, response)


@router_v1.post("/reservations/{reservation_id}/reject", response_model=schemas.MutationResult)
def reject_reservation(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.RejectRequest] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(reviewer_roles),
):
    body = body or schemas.RejectRequest()
    outcome = service.reject(reservation_id, _token(if_match, body), claims["username"], body.reason)
    return _mutation_response(outcome, response)


@router_v1.post("/reservations/{reservation_id}/cancel", response_model=schemas.MutationResult)
def cancel_reservation(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.RejectRequest] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    _ensure_owner_or_reviewer(service.get(reservation_id), claims)
    reason = body.reason if body is not None else None
    outcome = service.cancel(reservation_id, _token(if_match, body), claims["username"], reason)
    return _mutation_response(outcome, response)


@router_v1.post("/reservations/{reservation_id}/resubmit", response_model=schemas.MutationResult)
def resubmit_reservation(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.TokenBody] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    _ensure_owner_or_reviewer(service.get(reservation_id), claims)
    outcome = service.resubmit(reservation_id, _token(if_match, body), claims["username"])
    return _mutation_response(outcome, response)


@router_v1.delete("/reservations/{reservation_id}", response_model=schemas.MutationResult)
def delete_reservation(
    reservation_id: int,
    response: Response,
    change_key: Optional[str] = Query(default=None, alias="changeKey"),
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    """Soft delete; the record stays restorable."""
    _ensure_owner_or_reviewer(service.get(reservation_id), claims)
    outcome = service.delete(reservation_id, if_match or change_key, claims["username"])
    return _mutation_response(outcome, response)


@router_v1.post("/reservations/{reservation_id}/restore", response_model=schemas.MutationResult)
def restore_reservation(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.TokenBody] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Restore a cancelled or deleted reservation to its previous status.

    Conflicts fail with 409 ``SchedulingConflict`` and ``requiresOverride: false``;
    there is no override.
    """
    _ensure_owner_or_reviewer(service.get(reservation_id), claims)
    outcome = service.restore(reservation_id, _token(if_match, body), claims["username"])
    return _mutation_response(outcome, response)


# ---------- Edit requests ----------


@router_v1.post("/reservations/{reservation_id}/edit-request", response_model=schemas.MutationResult)
def create_edit_request(
    reservation_id: int,
    body: schemas.EditRequestCreate,
    response: Response,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    _ensure_owner_or_reviewer(service.get(reservation_id), claims)
    outcome = service.request_edit(
        reservation_id,
        _token(if_match, body),
        claims["username"],
        body.proposed_changes,
        body.change_reason,
    )
    return _mutation_response(outcome, response)


@router_v1.post(
    "/reservations/{reservation_id}/edit-request/approve", response_model=schemas.MutationResult
)
def approve_edit_request(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.EditRequestApprove] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(reviewer_roles),
):
    body = body or schemas.EditRequestApprove()
    outcome = service.approve_edit_request(
        reservation_id,
        _token(if_match, body),
        claims["username"],
        approver_changes=body.approver_changes,
        force_approve=body.force_approve,
    )
    return _mutation_response(outcome, response)


@router_v1.post(
    "/reservations/{reservation_id}/edit-request/reject", response_model=schemas.MutationResult
)
def reject_edit_request(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.RejectRequest] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(reviewer_roles),
):
    body = body or schemas.RejectRequest()
    outcome = service.reject_edit_request(
        reservation_id, _token(if_match, body), claims["username"], body.reason
    )
    return _mutation_response(outcome, response)


@router_v1.post(
    "/reservations/{reservation_id}/edit-request/cancel", response_model=schemas.MutationResult
)
def cancel_edit_request(
    reservation_id: int,
    response: Response,
    body: Optional[schemas.TokenBody] = None,
    if_match: Optional[str] = Header(default=None),
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(get_current_user_claims),
):
    outcome = service.cancel_edit_request(reservation_id, _token(if_match, body), claims["username"])
    return _mutation_response(outcome, response)


# ---------- Review holds ----------


@router_v1.post("/reservations/{reservation_id}/review/start", response_model=schemas.ReviewStarted)
def start_review(
    reservation_id: int,
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(reviewer_roles),
):
    """
    Take (or renew) the 30-minute review hold.

    Raises
    ------
    LockHeld
        423 ``ResourceLocked`` with ``reviewingBy``, ``reviewStartedAt``,
        ``reviewExpiresAt`` and ``minutesRemaining``.
    """
    result = service.start_review(reservation_id, claims["username"])
    return schemas.ReviewStarted(
        reservation_id=reservation_id,
        reviewing_by=result.reviewing_by,
        review_started_at=result.started_at,
        review_expires_at=result.expires_at,
        duration_minutes=HOLD_DURATION_MINUTES,
    )


@router_v1.post("/reservations/{reservation_id}/review/release", response_model=schemas.ReviewReleased)
def release_review(
    reservation_id: int,
    body: Optional[schemas.ReleaseRequest] = None,
    service: ReservationService = Depends(get_service),
    claims: Dict = Depends(reviewer_roles),
):
    """Release a hold; ``force`` lets an admin release someone else's."""
    force = body.force if body is not None else False
    if force and claims["role"] != ROLE_ADMIN:
        raise Forbidden("Only administrators can force-release a review hold")
    released = service.release_review(reservation_id, claims["username"], force=force)
    return schemas.ReviewReleased(reservation_id=reservation_id, released=released)


# ---------- Audit trails ----------


@router_v1.get("/reservations/{reservation_id}/revisions", response_model=List[schemas.RevisionRead])
def list_revisions(
    reservation_id: int,
    service: ReservationService = Depends(get_service),
    _: Dict = Depends(get_current_user_claims),
):
    return service.get(reservation_id).revisions


@router_v1.get(
    "/reservations/{reservation_id}/review-history", response_model=List[schemas.ReviewHistoryRead]
)
def list_review_history(
    reservation_id: int,
    service: ReservationService = Depends(get_service),
    _: Dict = Depends(get_current_user_claims),
):
    return service.get(reservation_id).review_history


@router_v1.get(
    "/reservations/{reservation_id}/status-history", response_model=List[schemas.StatusHistoryRead]
)
def list_status_history(
    reservation_id: int,
    service: ReservationService = Depends(get_service),
    _: Dict = Depends(get_current_user_claims),
):
    return service.get(reservation_id).status_history


app.include_router(router_v1)
