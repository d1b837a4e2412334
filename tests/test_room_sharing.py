from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from conftest import auth

from routers.room_sharing import cleanup_room_shares


@pytest.fixture
def setup(make_user, make_property):
    owner = make_user("owner")
    initiator = make_user("student", verified=True)
    prop = make_property(owner)
    return owner, initiator, prop


@pytest.fixture
def share(client, setup):
    _, initiator, prop = setup
    res = client.post("/api/room-sharing", json={
        "propertyId": prop["id"],
        "description": "Looking for a quiet flatmate",
        "maxParticipants": 2,
        "rentPerPerson": 4000,
    }, headers=auth(initiator))
    assert res.status_code == 201, res.text
    return res.json()["data"]


def test_unverified_student_is_turned_away(client, setup, make_user):
    _, _, prop = setup
    student = make_user("student")
    res = client.post("/api/room-sharing", json={"propertyId": prop["id"]}, headers=auth(student))
    assert res.status_code == 403
    assert res.json()["error"] == "Only verified students can access room sharing"


def test_owner_is_turned_away(client, setup):
    owner, _, prop = setup
    res = client.post("/api/room-sharing", json={"propertyId": prop["id"]}, headers=auth(owner))
    assert res.status_code == 403
    assert res.json()["error"] == "Only students can access room sharing"


def test_initiator_is_first_participant(share, setup):
    _, initiator, _ = setup
    assert share["status"] == "active"
    assert [p["user"] for p in share["current_participants"]] == [initiator["id"]]
    assert share["available_slots"] == 1
    assert share["user_context"]["is_initiator"] is True


def test_apply_and_accept_fills_the_share(client, share, setup, make_user):
    _, initiator, _ = setup
    applicant = make_user("student", verified=True)

    res = client.post(f"/api/room-sharing/{share['id']}/apply", json={"message": "Hi!"}, headers=auth(applicant))
    assert res.status_code == 200
    applied = res.json()["data"]
    assert applied["user_context"]["application_status"] == "pending"
    application_id = applied["applications"][0]["id"]

    duplicate = client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(applicant))
    assert duplicate.status_code == 400

    res = client.put(f"/api/room-sharing/{share['id']}/respond", json={
        "applicationId": application_id, "status": "accepted",
    }, headers=auth(initiator))
    assert res.status_code == 200
    updated = res.json()["data"]
    assert applicant["id"] in [p["user"] for p in updated["current_participants"]]
    assert updated["status"] == "completed"
    assert updated["completion_reason"] == "All slots filled"

    again = client.put(f"/api/room-sharing/{share['id']}/respond", json={
        "applicationId": application_id, "status": "rejected",
    }, headers=auth(initiator))
    assert again.status_code == 400


def test_initiator_cannot_apply(client, share, setup):
    _, initiator, _ = setup
    res = client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(initiator))
    assert res.status_code == 400


def test_only_initiator_responds(client, share, make_user):
    applicant = make_user("student", verified=True)
    res = client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(applicant))
    application_id = res.json()["data"]["applications"][0]["id"]
    res = client.put(f"/api/room-sharing/{share['id']}/respond", json={
        "applicationId": application_id, "status": "accepted",
    }, headers=auth(applicant))
    assert res.status_code == 403


def test_withdraw_pending_application(client, share, make_user, db):
    applicant = make_user("student", verified=True)
    client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(applicant))
    res = client.delete(f"/api/room-sharing/{share['id']}/apply", headers=auth(applicant))
    assert res.status_code == 200
    assert db["roomsharing"].find_one({})["applications"] == []

    res = client.delete(f"/api/room-sharing/{share['id']}/apply", headers=auth(applicant))
    assert res.status_code == 404


def test_detail_counts_views_from_others(client, share, setup, make_user, db):
    _, initiator, _ = setup
    viewer = make_user("student", verified=True)
    client.get(f"/api/room-sharing/{share['id']}", headers=auth(initiator))
    client.get(f"/api/room-sharing/{share['id']}")
    res = client.get(f"/api/room-sharing/{share['id']}", headers=auth(viewer))
    assert res.json()["data"]["views"] == 1
    assert res.json()["data"]["user_context"]["has_applied"] is False


def test_deactivate(client, share, setup, make_user):
    _, initiator, _ = setup
    other = make_user("student", verified=True)
    assert client.patch(f"/api/room-sharing/{share['id']}/deactivate", json={}, headers=auth(other)).status_code == 403

    res = client.patch(f"/api/room-sharing/{share['id']}/deactivate", json={"reason": "Found a flatmate"}, headers=auth(initiator))
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "cancelled"
    assert res.json()["data"]["completion_reason"] == "Found a flatmate"

    again = client.patch(f"/api/room-sharing/{share['id']}/deactivate", json={}, headers=auth(initiator))
    assert again.status_code == 400


def test_my_shares_lists_initiated_and_applied(client, share, setup, make_user):
    _, initiator, _ = setup
    applicant = make_user("student", verified=True)
    client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(applicant))

    mine = client.get("/api/room-sharing/my-shares", headers=auth(initiator)).json()["data"]
    assert [s["id"] for s in mine["initiated"]] == [share["id"]]
    theirs = client.get("/api/room-sharing/my-shares", headers=auth(applicant)).json()["data"]
    assert [s["id"] for s in theirs["applied"]] == [share["id"]]


def test_cleanup_cancels_share_when_property_fully_booked(client, share, setup, db):
    _, _, prop = setup
    db["property"].update_one({"_id": ObjectId(prop["id"])}, {"$set": {"available_rooms": 0}})

    res = client.get("/api/room-sharing/cleanup")
    assert res.status_code == 200
    summary = res.json()["data"]
    assert summary["deactivated"] == 1
    assert summary["results"][0]["reason"] == "Property fully booked"

    stored = db["roomsharing"].find_one({})
    assert stored["status"] == "cancelled"
    assert stored["completion_reason"] == "Property fully booked"


def test_cleanup_reasons(db, share, setup):
    _, _, prop = setup
    now = datetime.utcnow()
    assert cleanup_room_shares(db, inactive_days=30, now=now)["deactivated"] == 0

    later = now + timedelta(days=31)
    summary = cleanup_room_shares(db, inactive_days=30, now=later)
    assert summary["results"][0]["reason"] == "Inactive for more than 30 days"


def test_cleanup_when_property_inactive_or_deleted(db, client, setup, share):
    owner, initiator, prop = setup
    db["property"].update_one({"_id": ObjectId(prop["id"])}, {"$set": {"status": "inactive"}})
    summary = cleanup_room_shares(db, inactive_days=None)
    assert summary["results"][0]["reason"] == "Property status: inactive"

    db["roomsharing"].update_many({}, {"$set": {"status": "active"}})
    db["property"].delete_many({})
    summary = cleanup_room_shares(db, inactive_days=None)
    assert summary["results"][0]["reason"] == "Property deleted"


def test_manual_cleanup_requires_auth_and_can_force(client, share, setup):
    _, initiator, _ = setup
    assert client.post("/api/room-sharing/cleanup", json={}).status_code == 401

    res = client.post("/api/room-sharing/cleanup", json={"forceCleanup": True}, headers=auth(initiator))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["deactivated"] == 1
    assert data["results"][0]["reason"] == "Manual cleanup triggered"
    assert data["cleanup_criteria"] == {"days_inactive": 7, "force_cleanup": True}


def test_rejected_applicant_is_not_a_participant(client, share, setup, make_user, db):
    _, initiator, _ = setup
    applicant = make_user("student", verified=True)
    res = client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(applicant))
    application_id = res.json()["data"]["applications"][0]["id"]

    res = client.put(f"/api/room-sharing/{share['id']}/respond", json={
        "applicationId": application_id, "status": "rejected", "message": "Sorry, taken",
    }, headers=auth(initiator))
    assert res.status_code == 200
    updated = res.json()["data"]
    assert updated["status"] == "active"
    assert updated["applications"][0]["status"] == "rejected"
    assert applicant["id"] not in [p["user"] for p in updated["current_participants"]]

    stored = db["roomsharing"].find_one({})
    assert stored["applications"][0]["response_message"] == "Sorry, taken"
    assert len(stored["current_participants"]) == 1


def test_application_is_answered_only_once(client, share, setup, make_user):
    _, initiator, _ = setup
    applicant = make_user("student", verified=True)
    res = client.post(f"/api/room-sharing/{share['id']}/apply", json={}, headers=auth(applicant))
    application_id = res.json()["data"]["applications"][0]["id"]
    body = {"applicationId": application_id, "status": "rejected"}

    assert client.put(f"/api/room-sharing/{share['id']}/respond", json=body, headers=auth(initiator)).status_code == 200
    again = client.put(f"/api/room-sharing/{share['id']}/respond", json={**body, "status": "accepted"}, headers=auth(initiator))
    assert again.status_code == 400
    assert again.json()["error"] == "Application has already been rejected"
