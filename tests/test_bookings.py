from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from conftest import auth

from routers.bookings import add_months


@pytest.fixture
def setup(make_user, make_property):
    owner = make_user("owner")
    student = make_user("student")
    prop = make_property(owner, totalRooms=1)
    return owner, student, prop


def move_in(days=10):
    return (datetime.utcnow() + timedelta(days=days)).replace(microsecond=0).isoformat()


def book(client, student, prop, **extra):
    body = {"roomId": prop["id"], "moveInDate": move_in(), "duration": 6}
    body.update(extra)
    return client.post("/api/bookings", json=body, headers=auth(student))


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
    assert add_months(datetime(2025, 11, 15), 3) == datetime(2026, 2, 15)


def test_booking_takes_a_room(client, setup, db):
    _, student, prop = setup
    res = book(client, student, prop)
    assert res.status_code == 201, res.text
    booking = res.json()["data"]["booking"]
    assert booking["status"] == "pending"
    assert booking["monthly_rent"] == 8000
    assert booking["total_amount"] == 16000
    assert db["property"].find_one({"_id": ObjectId(prop["id"])})["available_rooms"] == 0


def test_fully_booked_property_conflicts(client, setup, make_user):
    _, student, prop = setup
    book(client, student, prop)
    other = make_user("student")
    res = book(client, other, prop)
    assert res.status_code == 409


def test_one_active_booking_per_student(client, setup, make_property):
    owner, student, prop = setup
    book(client, student, prop)
    second = make_property(owner, title="Another room")
    res = book(client, student, second)
    assert res.status_code == 409
    assert res.json()["error"].startswith("You already have an active booking")


def test_move_in_cannot_be_in_the_past(client, setup):
    _, student, prop = setup
    res = book(client, student, prop, moveInDate=move_in(-3))
    assert res.status_code == 400


def test_owner_cannot_book(client, setup):
    owner, _, prop = setup
    assert book(client, owner, prop).status_code == 403


def test_missing_property(client, setup):
    _, student, _ = setup
    res = book(client, student, {"id": str(ObjectId())})
    assert res.status_code == 404


def test_my_bookings_for_both_sides(client, setup):
    owner, student, prop = setup
    book(client, student, prop)
    for user in (owner, student):
        data = client.get("/api/bookings/my-bookings", headers=auth(user)).json()["data"]
        assert data["summary"]["total"] == 1
        assert data["summary"]["pending"] == 1


def test_owner_confirms_then_cancels_restoring_room(client, setup, db):
    owner, student, prop = setup
    booking_id = book(client, student, prop).json()["data"]["booking"]["id"]

    res = client.put(f"/api/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=auth(owner))
    assert res.status_code == 200
    assert res.json()["data"]["booking"]["confirmed_at"]

    res = client.put(f"/api/bookings/{booking_id}/status", json={"status": "cancelled", "reason": "Student left"}, headers=auth(owner))
    assert res.status_code == 200
    assert res.json()["data"]["booking"]["cancelled_at"]
    assert db["property"].find_one({"_id": ObjectId(prop["id"])})["available_rooms"] == 1

    res = client.put(f"/api/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=auth(owner))
    assert res.status_code == 400


def test_other_owner_cannot_change_status(client, setup, make_user):
    _, student, prop = setup
    booking_id = book(client, student, prop).json()["data"]["booking"]["id"]
    stranger = make_user("owner")
    res = client.put(f"/api/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=auth(stranger))
    assert res.status_code == 403


def test_confirm_offline_payment(client, setup):
    owner, student, prop = setup
    booking_id = book(client, student, prop, paymentMethod="offline").json()["data"]["booking"]["id"]

    res = client.patch(f"/api/bookings/{booking_id}/confirm-payment", json={"ownerConfirmed": False}, headers=auth(owner))
    assert res.status_code == 400

    res = client.patch(f"/api/bookings/{booking_id}/confirm-payment", json={"ownerConfirmed": True}, headers=auth(owner))
    assert res.status_code == 200
    booking = res.json()["data"]["booking"]
    assert booking["payment_status"] == "paid"
    assert booking["status"] == "confirmed"


def test_online_payment_cannot_be_confirmed_by_owner(client, setup):
    owner, student, prop = setup
    booking_id = book(client, student, prop).json()["data"]["booking"]["id"]
    res = client.patch(f"/api/bookings/{booking_id}/confirm-payment", json={"ownerConfirmed": True}, headers=auth(owner))
    assert res.status_code == 400


def test_cancelled_booking_cannot_have_payment_confirmed(client, setup, db):
    owner, student, prop = setup
    booking_id = book(client, student, prop, paymentMethod="offline").json()["data"]["booking"]["id"]
    client.put(f"/api/bookings/{booking_id}/status", json={"status": "cancelled"}, headers=auth(owner))
    assert db["property"].find_one({"_id": ObjectId(prop["id"])})["available_rooms"] == 1

    res = client.patch(f"/api/bookings/{booking_id}/confirm-payment", json={"ownerConfirmed": True}, headers=auth(owner))
    assert res.status_code == 400
    stored = db["booking"].find_one({"_id": ObjectId(booking_id)})
    assert stored["status"] == "cancelled"
    assert stored["payment_status"] == "pending"


def test_failed_insert_releases_the_room(client, setup, db, monkeypatch):
    _, student, prop = setup

    def broken_insert(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr("routers.bookings.create_document", broken_insert)
    with pytest.raises(RuntimeError):
        book(client, student, prop)
    assert db["property"].find_one({"_id": ObjectId(prop["id"])})["available_rooms"] == 1
