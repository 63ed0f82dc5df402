import os
import sys
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_reservations.db")
os.environ["TESTING"] = "1"
os.environ["REAPER_ENABLED"] = "0"
os.environ.pop("REDIS_URL", None)

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from reservations_service.main import app
from reservations_service.database import Base, engine

SECRET_KEY = "super-secret-smart-meeting-room-key"
ALGORITHM = "HS256"

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def make_token(username: str, role: str, user_id: int = 1) -> str:
    payload = {
        "sub": username,
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def auth(username: str, role: str = "requester", if_match: str = None) -> dict:
    headers = {"Authorization": f"Bearer {make_token(username, role)}"}
    if if_match is not None:
        headers["If-Match"] = f'"{if_match}"'
    return headers


def create(username="alice", rooms=(101,), start="2030-05-01T14:00:00Z", end="2030-05-01T15:00:00Z", **extra):
    body = {
        "title": extra.pop("title", "Board meeting"),
        "startDateTime": start,
        "endDateTime": end,
        "selectedRooms": list(rooms),
    }
    body.update(extra)
    res = client.post("/api/v1/reservations", json=body, headers=auth(username))
    assert res.status_code == 201, res.text
    return res.json()


def approve(reservation, username="admin_a", **body):
    return client.post(
        f"/api/v1/reservations/{reservation['id']}/approve",
        json=body,
        headers=auth(username, "admin", if_match=reservation["changeKey"]),
    )


def test_health():
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["service"] == "reservations"


def test_create_returns_change_key_and_etag():
    res = client.post(
        "/api/v1/reservations",
        json={
            "title": "  Standup  ",
            "startDateTime": "2030-05-01T09:00:00Z",
            "endDateTime": "2030-05-01T09:15:00Z",
            "selectedRooms": [3, 1, 3],
        },
        headers=auth("alice"),
    )
    assert res.status_code == 201
    data = res.json()
    assert data["title"] == "Standup"
    assert data["status"] == "pending"
    assert data["selectedRooms"] == [1, 3]
    assert len(data["changeKey"]) == 32
    assert res.headers["etag"] == f'"{data["changeKey"]}"'


def test_create_rejects_inverted_window():
    res = client.post(
        "/api/v1/reservations",
        json={
            "title": "Backwards",
            "startDateTime": "2030-05-01T10:00:00Z",
            "endDateTime": "2030-05-01T09:00:00Z",
            "selectedRooms": [1],
        },
        headers=auth("alice"),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"


def test_get_sends_etag_even_while_held():
    r = create()
    client.post(f"/api/v1/reservations/{r['id']}/review/start", headers=auth("appr1", "approver"))

    res = client.get(f"/api/v1/reservations/{r['id']}", headers=auth("bob"))
    assert res.status_code == 200
    assert res.headers["etag"] == f'"{r["changeKey"]}"'
    assert res.json()["reviewingBy"] == "appr1"


def test_concurrent_edit_scenario():
    r = create(attendeeCount=10, setupTimeMinutes=15, teardownTimeMinutes=15)
    rid = r["id"]

    k1_a = client.get(f"/api/v1/reservations/{rid}", headers=auth("admin_a", "admin")).json()["changeKey"]
    k1_b = client.get(f"/api/v1/reservations/{rid}", headers=auth("admin_b", "admin")).json()["changeKey"]
    assert k1_a == k1_b

    res_a = client.put(
        f"/api/v1/reservations/{rid}",
        json={"attendeeCount": 12},
        headers=auth("admin_a", "admin", if_match=k1_a),
    )
    assert res_a.status_code == 200
    k2 = res_a.json()["changeKey"]
    assert k2 != k1_a
    assert res_a.headers["etag"] == f'"{k2}"'

    res_b = client.put(
        f"/api/v1/reservations/{rid}",
        json={"description": "Bring slides"},
        headers=auth("admin_b", "admin", if_match=k1_b),
    )
    assert res_b.status_code == 409
    body = res_b.json()
    assert body["error"] == "ConflictError"
    assert body["currentChangeKey"] == k2
    assert body["lastModifiedBy"] == "admin_a"
    assert body["lastModified"]
    assert "admin_a" in body["message"]
    assert body["changes"] == [
        {"field": "attendee_count", "label": "Expected Attendees", "oldValue": 10, "newValue": 12}
    ]

    # The losing write changed nothing.
    current = client.get(f"/api/v1/reservations/{rid}", headers=auth("admin_b", "admin")).json()
    assert current["description"] is None
    assert current["changeKey"] == k2

    res_b2 = client.put(
        f"/api/v1/reservations/{rid}",
        json={"description": "Bring slides"},
        headers=auth("admin_b", "admin", if_match=current["changeKey"]),
    )
    assert res_b2.status_code == 200
    k3 = res_b2.json()["changeKey"]
    assert k3 not in (k1_a, k2)
    assert res_b2.json()["attendeeCount"] == 12


def test_update_accepts_body_change_key_and_weak_etag():
    r = create()
    res = client.put(
        f"/api/v1/reservations/{r['id']}",
        json={"title": "Renamed", "changeKey": r["changeKey"]},
        headers=auth("alice"),
    )
    assert res.status_code == 200
    key = res.json()["changeKey"]

    headers = auth("alice")
    headers["If-Match"] = f'W/"{key.upper()}"'
    res = client.put(f"/api/v1/reservations/{r['id']}", json={"attendeeCount": 4}, headers=headers)
    assert res.status_code == 200


def test_update_without_token_is_rejected():
    r = create()
    res = client.put(f"/api/v1/reservations/{r['id']}", json={"title": "x"}, headers=auth("alice"))
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"


def test_every_update_produces_a_fresh_token():
    r = create()
    seen = [r["changeKey"]]
    key = r["changeKey"]
    for _ in range(5):
        # Identical content every time; only the modification stamp moves.
        res = client.put(
            f"/api/v1/reservations/{r['id']}",
            json={"title": "Same title"},
            headers=auth("alice", if_match=key),
        )
        assert res.status_code == 200
        key = res.json()["changeKey"]
        assert key not in seen
        seen.append(key)


def test_revision_trail_records_diffs():
    r = create(attendeeCount=3)
    client.put(
        f"/api/v1/reservations/{r['id']}",
        json={"attendeeCount": 5},
        headers=auth("alice", if_match=r["changeKey"]),
    )
    res = client.get(f"/api/v1/reservations/{r['id']}/revisions", headers=auth("alice"))
    assert res.status_code == 200
    revisions = res.json()
    assert [rev["revisionNumber"] for rev in revisions] == [1, 2]
    assert revisions[0]["changeKey"] == r["changeKey"]
    assert revisions[1]["changes"][0]["field"] == "attendee_count"


def test_requester_cannot_edit_someone_elses_reservation():
    r = create(username="alice")
    res = client.put(
        f"/api/v1/reservations/{r['id']}",
        json={"title": "Mine now"},
        headers=auth("mallory", if_match=r["changeKey"]),
    )
    assert res.status_code == 403
    assert res.json()["error"] == "Forbidden"


def test_unknown_reservation_is_404():
    res = client.get("/api/v1/reservations/999", headers=auth("alice"))
    assert res.status_code == 404
    assert res.json()["error"] == "NotFound"


# ---------- Conflicts and approval ----------


def test_conflict_and_force_approve_scenario():
    r = create(title="R", setupTimeMinutes=15, teardownTimeMinutes=15)
    s = create(title="S", start="2030-05-01T15:10:00Z", end="2030-05-01T16:00:00Z")

    res = client.get(f"/api/v1/reservations/{s['id']}/conflicts", headers=auth("admin_a", "admin"))
    assert res.status_code == 200
    conflicts = res.json()
    assert [c["id"] for c in conflicts] == [r["id"]]
    assert conflicts[0]["overlappingRooms"] == [101]
    assert conflicts[0]["effectiveStart"].startswith("2030-05-01T13:45")
    assert conflicts[0]["effectiveEnd"].startswith("2030-05-01T15:15")

    res = approve(s)
    assert res.status_code == 409
    body = res.json()
    assert body["error"] == "SchedulingConflict"
    assert body["requiresOverride"] is True
    assert [c["id"] for c in body["conflicts"]] == [r["id"]]

    res = approve(s, forceApprove=True)
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "approved"
    assert data["reviewedBy"] == "admin_a"
    assert [c["id"] for c in data["conflictDetails"]] == [r["id"]]
    assert data["warnings"] == []


def test_force_approve_still_requires_current_token():
    create(title="R")
    s = create(title="S")
    res = client.post(
        f"/api/v1/reservations/{s['id']}/approve",
        json={"forceApprove": True},
        headers=auth("admin_a", "admin", if_match="0" * 32),
    )
    assert res.status_code == 409
    assert res.json()["error"] == "ConflictError"


def test_draft_and_rejected_do_not_block_approval():
    create(title="Draft", isDraft=True)
    rejected = create(title="Rejected")
    res = client.post(
        f"/api/v1/reservations/{rejected['id']}/reject",
        json={"reason": "Duplicate"},
        headers=auth("admin_a", "admin", if_match=rejected["changeKey"]),
    )
    assert res.status_code == 200

    candidate = create(title="Candidate")
    assert approve(candidate).status_code == 200


def test_only_reviewers_can_approve():
    r = create()
    res = client.post(
        f"/api/v1/reservations/{r['id']}/approve",
        json={},
        headers=auth("alice", "requester", if_match=r["changeKey"]),
    )
    assert res.status_code == 403


def test_reject_requires_reason():
    r = create()
    res = client.post(
        f"/api/v1/reservations/{r['id']}/reject",
        json={"reason": "   "},
        headers=auth("admin_a", "admin", if_match=r["changeKey"]),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"


def test_invalid_transition_is_400():
    r = create()
    approved = approve(r).json()
    res = client.post(
        f"/api/v1/reservations/{r['id']}/reject",
        json={"reason": "Too late"},
        headers=auth("admin_a", "admin", if_match=approved["changeKey"]),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "InvalidTransition"


def test_conflict_check_for_unsaved_candidate():
    r = create(teardownTimeMinutes=30)
    body = {
        "startDateTime": "2030-05-01T15:15:00Z",
        "endDateTime": "2030-05-01T16:00:00Z",
        "selectedRooms": [101, 102],
    }
    res = client.post("/api/v1/reservations/conflicts/check", json=body, headers=auth("bob"))
    assert res.status_code == 200
    data = res.json()
    assert data["hasConflicts"] is True
    assert data["conflicts"][0]["id"] == r["id"]
    assert data["conflicts"][0]["overlappingRooms"] == [101]


def test_room_availability():
    create()
    params = {"start": "2030-05-01T14:30:00Z", "end": "2030-05-01T14:45:00Z"}
    busy = client.get("/api/v1/rooms/101/availability", params=params, headers=auth("bob"))
    assert busy.status_code == 200
    assert busy.json()["available"] is False

    free = client.get("/api/v1/rooms/202/availability", params=params, headers=auth("bob"))
    assert free.json() == {"roomId": 202, "available": True, "conflicts": []}


# ---------- Lifecycle ----------


def test_submit_moves_draft_to_pending_and_records_history():
    r = create(isDraft=True)
    assert r["status"] == "draft"
    res = client.post(
        f"/api/v1/reservations/{r['id']}/submit", json={}, headers=auth("alice", if_match=r["changeKey"])
    )
    assert res.status_code == 200
    assert res.json()["status"] == "pending"

    history = client.get(f"/api/v1/reservations/{r['id']}/status-history", headers=auth("alice")).json()
    assert [h["status"] for h in history] == ["draft", "pending"]
    assert history[-1]["changedBy"] == "alice"


def test_resubmit_after_rejection():
    r = create()
    rejected = client.post(
        f"/api/v1/reservations/{r['id']}/reject",
        json={"reason": "Wrong room"},
        headers=auth("admin_a", "admin", if_match=r["changeKey"]),
    ).json()
    assert rejected["rejectionReason"] == "Wrong room"

    res = client.post(
        f"/api/v1/reservations/{r['id']}/resubmit",
        json={},
        headers=auth("alice", if_match=rejected["changeKey"]),
    )
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "pending"
    assert data["rejectionReason"] is None


def test_delete_is_idempotent():
    r = create()
    res = client.delete(f"/api/v1/reservations/{r['id']}", headers=auth("alice", if_match=r["changeKey"]))
    assert res.status_code == 200
    deleted = res.json()
    assert deleted["status"] == "deleted"

    again = client.delete(f"/api/v1/reservations/{r['id']}", headers=auth("alice", if_match=r["changeKey"]))
    assert again.status_code == 200
    assert again.json()["changeKey"] == deleted["changeKey"]

    listed = client.get("/api/v1/reservations", headers=auth("alice")).json()
    assert listed == []


def test_restore_blocked_by_conflict_without_override():
    r = create(title="Original")
    cancelled = client.post(
        f"/api/v1/reservations/{r['id']}/cancel",
        json={"reason": "Plans changed"},
        headers=auth("alice", if_match=r["changeKey"]),
    ).json()
    assert cancelled["status"] == "cancelled"

    blocker = create(username="bob", title="Blocker")

    res = client.post(
        f"/api/v1/reservations/{r['id']}/restore",
        json={"forceApprove": True},
        headers=auth("alice", if_match=cancelled["changeKey"]),
    )
    assert res.status_code == 409
    body = res.json()
    assert body["error"] == "SchedulingConflict"
    assert body["requiresOverride"] is False
    assert [c["id"] for c in body["conflicts"]] == [blocker["id"]]

    client.delete(f"/api/v1/reservations/{blocker['id']}", headers=auth("bob", if_match=blocker["changeKey"]))

    res = client.post(
        f"/api/v1/reservations/{r['id']}/restore",
        json={},
        headers=auth("alice", if_match=cancelled["changeKey"]),
    )
    assert res.status_code == 200
    assert res.json()["status"] == "pending"


def test_restore_of_active_reservation_is_invalid():
    r = create()
    res = client.post(
        f"/api/v1/reservations/{r['id']}/restore", json={}, headers=auth("alice", if_match=r["changeKey"])
    )
    assert res.status_code == 400
    assert res.json()["error"] == "InvalidTransition"


# ---------- Review holds ----------


def test_review_hold_lifecycle():
    r = create()
    rid = r["id"]

    res = client.post(f"/api/v1/reservations/{rid}/review/start", headers=auth("appr1", "approver"))
    assert res.status_code == 200
    started = res.json()
    assert started["durationMinutes"] == 30
    assert started["reviewingBy"] == "appr1"
    assert started["reviewExpiresAt"]

    denied = client.post(f"/api/v1/reservations/{rid}/review/start", headers=auth("appr2", "approver"))
    assert denied.status_code == 423
    body = denied.json()
    assert body["error"] == "ResourceLocked"
    assert body["reviewingBy"] == "appr1"
    assert body["reviewStartedAt"]
    assert 0 < body["minutesRemaining"] <= 30
    assert "appr1" in body["message"]

    # Holds never touch the change key.
    current = client.get(f"/api/v1/reservations/{rid}", headers=auth("appr2", "approver")).json()
    assert current["changeKey"] == r["changeKey"]

    blocked = client.post(
        f"/api/v1/reservations/{rid}/approve",
        json={},
        headers=auth("appr2", "approver", if_match=r["changeKey"]),
    )
    assert blocked.status_code == 423

    forbidden = client.post(f"/api/v1/reservations/{rid}/review/release", headers=auth("appr2", "approver"))
    assert forbidden.status_code == 403
    assert forbidden.json()["reviewingBy"] == "appr1"

    approved = client.post(
        f"/api/v1/reservations/{rid}/approve",
        json={"notes": "Looks good"},
        headers=auth("appr1", "approver", if_match=r["changeKey"]),
    )
    assert approved.status_code == 200
    data = approved.json()
    assert data["status"] == "approved"
    assert data["reviewStatus"] == "not_started"
    assert data["reviewingBy"] is None
    assert data["reviewExpiresAt"] is None

    history = client.get(f"/api/v1/reservations/{rid}/review-history", headers=auth("appr1", "approver")).json()
    assert len(history) == 1
    assert history[0]["outcome"] == "completed"
    assert history[0]["reviewingBy"] == "appr1"


def test_update_blocked_while_another_reviewer_holds():
    r = create()
    client.post(f"/api/v1/reservations/{r['id']}/review/start", headers=auth("appr1", "approver"))

    res = client.put(
        f"/api/v1/reservations/{r['id']}",
        json={"title": "Sneaky"},
        headers=auth("admin_a", "admin", if_match=r["changeKey"]),
    )
    assert res.status_code == 423
    assert res.json()["reviewingBy"] == "appr1"


def test_admin_can_force_release():
    r = create()
    client.post(f"/api/v1/reservations/{r['id']}/review/start", headers=auth("appr1", "approver"))

    not_admin = client.post(
        f"/api/v1/reservations/{r['id']}/review/release",
        json={"force": True},
        headers=auth("appr2", "approver"),
    )
    assert not_admin.status_code == 403

    res = client.post(
        f"/api/v1/reservations/{r['id']}/review/release",
        json={"force": True},
        headers=auth("boss", "admin"),
    )
    assert res.status_code == 200
    assert res.json()["released"] is True

    history = client.get(f"/api/v1/reservations/{r['id']}/review-history", headers=auth("boss", "admin")).json()
    assert history[0]["outcome"] == "abandoned"
    assert history[0]["releasedBy"] == "boss"

    again = client.post(f"/api/v1/reservations/{r['id']}/review/start", headers=auth("appr2", "approver"))
    assert again.status_code == 200


# ---------- Edit requests ----------


def test_edit_request_flow():
    r = create(attendeeCount=8)
    approved = approve(r).json()

    res = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request",
        json={"proposedChanges": {"attendeeCount": 20}, "changeReason": "More people"},
        headers=auth("alice", if_match=approved["changeKey"]),
    )
    assert res.status_code == 200
    requested = res.json()
    assert requested["pendingEditRequest"]["status"] == "pending"
    assert requested["pendingEditRequest"]["proposedChanges"] == {"attendee_count": 20}
    assert requested["attendeeCount"] == 8

    duplicate = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request",
        json={"proposedChanges": {"title": "x"}, "changeReason": "again"},
        headers=auth("alice", if_match=requested["changeKey"]),
    )
    assert duplicate.status_code == 400

    other = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request/cancel",
        json={},
        headers=auth("admin_a", "admin", if_match=requested["changeKey"]),
    )
    assert other.status_code == 403

    res = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request/approve",
        json={},
        headers=auth("admin_a", "admin", if_match=requested["changeKey"]),
    )
    assert res.status_code == 200
    data = res.json()
    assert data["attendeeCount"] == 20
    assert data["status"] == "approved"
    assert data["pendingEditRequest"]["status"] == "approved"


def test_edit_request_requires_reason_and_approved_status():
    r = create()
    res = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request",
        json={"proposedChanges": {"title": "New"}, "changeReason": "Because"},
        headers=auth("alice", if_match=r["changeKey"]),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "InvalidTransition"

    approved = approve(r).json()
    res = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request",
        json={"proposedChanges": {"title": "New"}},
        headers=auth("alice", if_match=approved["changeKey"]),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"


def test_edit_request_move_checks_conflicts():
    other = create(title="Other", rooms=(102,))
    approve(other)
    r = create(title="Mine")
    approved = approve(r).json()

    requested = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request",
        json={"proposedChanges": {"selectedRooms": [102]}, "changeReason": "Bigger room"},
        headers=auth("alice", if_match=approved["changeKey"]),
    ).json()

    res = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request/approve",
        json={},
        headers=auth("admin_a", "admin", if_match=requested["changeKey"]),
    )
    assert res.status_code == 409
    assert res.json()["requiresOverride"] is True

    res = client.post(
        f"/api/v1/reservations/{r['id']}/edit-request/approve",
        json={"forceApprove": True},
        headers=auth("admin_a", "admin", if_match=requested["changeKey"]),
    )
    assert res.status_code == 200
    data = res.json()
    assert data["selectedRooms"] == [102]
    assert [c["id"] for c in data["conflictDetails"]] == [other["id"]]
