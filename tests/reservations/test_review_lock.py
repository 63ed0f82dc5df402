import os
import sys
from datetime import datetime, timedelta

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_reservations.db")
os.environ["REAPER_ENABLED"] = "0"
os.environ.pop("REDIS_URL", None)

import pytest

from reservations_service import models, reaper, review_lock, schemas
from reservations_service.database import Base, SessionLocal, engine
from reservations_service.errors import Forbidden, LockHeld
from reservations_service.service import ReservationService

T0 = datetime(2030, 5, 1, 9, 0)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def reservation(db):
    service = ReservationService(db, clock=lambda: T0)
    return service.create(
        schemas.ReservationCreate(
            title="Review me",
            start_datetime=datetime(2030, 5, 2, 14, 0),
            end_datetime=datetime(2030, 5, 2, 15, 0),
            selected_rooms=[101],
        ),
        "alice",
    )


def reload(db, reservation_id):
    db.expire_all()
    return db.query(models.Reservation).filter(models.Reservation.id == reservation_id).one()


def history(db, reservation_id):
    return (
        db.query(models.ReviewHistoryEntry)
        .filter(models.ReviewHistoryEntry.reservation_id == reservation_id)
        .order_by(models.ReviewHistoryEntry.id)
        .all()
    )


def test_acquire_grants_thirty_minute_hold(db, reservation):
    result = review_lock.acquire(db, reservation.id, "appr1", T0)
    assert result.granted
    assert result.expires_at == T0 + timedelta(minutes=30)

    row = reload(db, reservation.id)
    assert row.review_status == "reviewing"
    assert row.reviewing_by == "appr1"
    assert row.change_key == reservation.change_key


def test_holder_renews(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    later = T0 + timedelta(minutes=20)
    result = review_lock.acquire(db, reservation.id, "appr1", later)
    assert result.granted
    assert result.started_at == later
    assert result.expires_at == later + timedelta(minutes=30)
    assert history(db, reservation.id) == []


def test_second_actor_is_denied_with_holder_details(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    now = T0 + timedelta(minutes=10)
    result = review_lock.acquire(db, reservation.id, "appr2", now)
    assert not result.granted
    assert result.reviewing_by == "appr1"
    assert result.minutes_remaining(now) == 20

    row = reload(db, reservation.id)
    assert row.reviewing_by == "appr1"


def test_no_two_actors_hold_at_once(db, reservation):
    actors = ["appr1", "appr2", "appr3"]
    for minute in range(0, 90, 7):
        now = T0 + timedelta(minutes=minute)
        for actor in actors:
            review_lock.acquire(db, reservation.id, actor, now)
            row = reload(db, reservation.id)
            holders = {row.reviewing_by} if review_lock.hold_is_active(row, now) else set()
            assert len(holders) <= 1


def test_expired_hold_is_taken_over_and_recorded(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    expiry = T0 + timedelta(minutes=30)
    result = review_lock.acquire(db, reservation.id, "appr2", expiry)
    assert result.granted
    assert result.reviewing_by == "appr2"

    entries = history(db, reservation.id)
    assert len(entries) == 1
    assert entries[0].reviewing_by == "appr1"
    assert entries[0].outcome == "expired"
    assert entries[0].released_by == review_lock.AUTO_TIMEOUT_ACTOR


def test_release_by_holder(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    assert review_lock.release(db, reservation.id, "appr1", T0 + timedelta(minutes=5))

    row = reload(db, reservation.id)
    assert row.review_status == "not_started"
    assert row.reviewing_by is None
    assert row.review_started_at is None
    assert row.review_expires_at is None
    assert history(db, reservation.id)[0].outcome == "abandoned"


def test_release_by_non_holder_is_forbidden_unless_forced(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    with pytest.raises(Forbidden):
        review_lock.release(db, reservation.id, "appr2", T0)

    assert review_lock.release(db, reservation.id, "admin", T0, force=True)
    entry = history(db, reservation.id)[0]
    assert entry.reviewing_by == "appr1"
    assert entry.released_by == "admin"


def test_release_without_hold_is_a_noop(db, reservation):
    assert review_lock.release(db, reservation.id, "appr1", T0) is False


def test_sweep_releases_expired_holds_once(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    after = T0 + timedelta(minutes=31)

    assert review_lock.sweep_expired(db, after) == 1
    assert review_lock.sweep_expired(db, after) == 0

    row = reload(db, reservation.id)
    assert row.review_status == "not_started"
    assert row.reviewing_by is None
    entries = history(db, reservation.id)
    assert [e.outcome for e in entries] == ["expired"]
    assert entries[0].released_by == "auto-timeout"


def test_sweep_leaves_live_holds(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    assert review_lock.sweep_expired(db, T0 + timedelta(minutes=29)) == 0
    assert reload(db, reservation.id).reviewing_by == "appr1"


def test_sweep_boundary_is_strictly_after_expiry(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    expiry = T0 + timedelta(minutes=30)

    assert review_lock.sweep_expired(db, expiry) == 0
    assert reload(db, reservation.id).reviewing_by == "appr1"

    assert review_lock.sweep_expired(db, expiry + timedelta(microseconds=1)) == 1
    assert reload(db, reservation.id).reviewing_by is None


def test_hold_is_acquirable_any_time_after_expiry(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    later = T0 + timedelta(minutes=30, seconds=1)
    result = review_lock.acquire(db, reservation.id, "appr2", later)
    assert result.granted
    assert result.reviewing_by == "appr2"

    result = review_lock.acquire(db, reservation.id, "appr1", later + timedelta(hours=5))
    assert result.granted
    assert result.reviewing_by == "appr1"


def test_ensure_not_held_by_other(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    row = reload(db, reservation.id)
    review_lock.ensure_not_held_by_other(row, "appr1", T0)
    with pytest.raises(LockHeld) as exc:
        review_lock.ensure_not_held_by_other(row, "appr2", T0 + timedelta(minutes=1))
    assert exc.value.details["reviewingBy"] == "appr1"
    assert exc.value.details["minutesRemaining"] == 29
    review_lock.ensure_not_held_by_other(row, "appr2", T0 + timedelta(minutes=30))


def test_reaper_run_once_uses_its_own_session(db, reservation):
    review_lock.acquire(db, reservation.id, "appr1", T0)
    assert reaper.run_once(T0 + timedelta(hours=1)) == 1
    assert reload(db, reservation.id).review_status == "not_started"
    assert reaper.run_once(T0 + timedelta(hours=1)) == 0
