import os
import sys
from datetime import datetime, timedelta
from types import SimpleNamespace

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_reservations.db")
os.environ["REAPER_ENABLED"] = "0"

import pytest

from reservations_service import models
from reservations_service.conflicts import effective_window, find_conflicts, windows_overlap
from reservations_service.database import Base, SessionLocal, engine
from reservations_service.errors import ValidationError

DAY = datetime(2030, 5, 1)


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


def at(hour: int, minute: int = 0) -> datetime:
    return DAY.replace(hour=hour, minute=minute)


def add(db, start, end, rooms=(101,), setup=0, teardown=0, status="pending", title="Meeting"):
    reservation = models.Reservation(
        requested_by="alice",
        title=title,
        start_datetime=start,
        end_datetime=end,
        setup_time_minutes=setup,
        teardown_time_minutes=teardown,
        selected_rooms=list(rooms),
        status=status,
        change_key="k",
        last_modified=at(0),
    )
    db.add(reservation)
    db.commit()
    return reservation


def candidate(start, end, rooms=(101,), setup=0, teardown=0):
    return SimpleNamespace(
        start_datetime=start,
        end_datetime=end,
        selected_rooms=list(rooms),
        setup_time_minutes=setup,
        teardown_time_minutes=teardown,
    )


def test_effective_window_and_half_open_overlap():
    start, end = effective_window(at(14), at(15), 15, 15)
    assert (start, end) == (at(13, 45), at(15, 15))
    assert windows_overlap(at(13), at(14), at(13, 59), at(15))
    assert not windows_overlap(at(13), at(14), at(14), at(15))


def test_teardown_buffer_decides_conflict(db):
    existing = add(db, at(14), at(15), teardown=30)
    hits = find_conflicts(db, candidate(at(15, 15), at(16)))
    assert [c.id for c in hits] == [existing.id]

    existing.teardown_time_minutes = 10
    db.commit()
    assert find_conflicts(db, candidate(at(15, 15), at(16))) == []


def test_setup_buffer_on_candidate_counts(db):
    add(db, at(14), at(15))
    assert find_conflicts(db, candidate(at(15, 10), at(16))) == []
    assert len(find_conflicts(db, candidate(at(15, 10), at(16), setup=15))) == 1


def test_touching_windows_do_not_conflict(db):
    add(db, at(14), at(15), teardown=15)
    assert find_conflicts(db, candidate(at(15, 15), at(16))) == []


def test_conflicts_are_symmetric(db):
    a = add(db, at(14), at(15), rooms=(101, 102), setup=15, teardown=15, title="A")
    b = add(db, at(15, 10), at(16), rooms=(102, 103), title="B")

    from_a = find_conflicts(db, a, exclude_id=a.id)
    from_b = find_conflicts(db, b, exclude_id=b.id)
    assert [c.id for c in from_a] == [b.id]
    assert [c.id for c in from_b] == [a.id]
    assert from_a[0].overlapping_rooms == [102]


def test_only_active_statuses_participate(db):
    for status in ("draft", "rejected", "cancelled", "deleted"):
        add(db, at(14), at(15), status=status)
    approved = add(db, at(14), at(15), status="approved")
    hits = find_conflicts(db, candidate(at(14), at(15)))
    assert [c.id for c in hits] == [approved.id]
    assert hits[0].status == "approved"


def test_room_intersection_required(db):
    add(db, at(14), at(15), rooms=(101,))
    assert find_conflicts(db, candidate(at(14), at(15), rooms=(202,))) == []
    assert find_conflicts(db, candidate(at(14), at(15), rooms=())) == []


def test_results_ordered_by_effective_start(db):
    late = add(db, at(14, 30), at(15), title="late")
    early = add(db, at(14), at(15), setup=60, title="early")
    hits = find_conflicts(db, candidate(at(13), at(16)))
    assert [c.id for c in hits] == [early.id, late.id]
    assert hits[0].effective_start == at(13)


def test_wide_buffers_are_not_lost_by_prefilter(db):
    # Raw window ends well before the candidate; only the teardown reaches it.
    long_teardown = add(db, at(8), at(9), teardown=6 * 60)
    hits = find_conflicts(db, candidate(at(14), at(15)))
    assert [c.id for c in hits] == [long_teardown.id]


def test_exclude_id(db):
    own = add(db, at(14), at(15))
    assert find_conflicts(db, own, exclude_id=own.id) == []


def test_malformed_candidate_is_a_validation_error(db):
    with pytest.raises(ValidationError):
        find_conflicts(db, SimpleNamespace(start_datetime=at(14), end_datetime=None, selected_rooms=[1]))
    with pytest.raises(ValidationError):
        find_conflicts(db, candidate(at(15), at(14)))
    with pytest.raises(ValidationError):
        find_conflicts(db, candidate(at(14), at(15), setup=-5))
    with pytest.raises(ValidationError):
        find_conflicts(db, SimpleNamespace(start_datetime=at(14), end_datetime=at(15) + timedelta(hours=1)))
