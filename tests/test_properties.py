from conftest import auth


def test_owner_lists_property(client, make_user, make_property):
    owner = make_user("owner")
    prop = make_property(owner)
    assert prop["owner"] == owner["id"]
    assert prop["available_rooms"] == prop["total_rooms"] == 3
    assert prop["status"] == "active"

    mine = client.get("/api/properties/my-properties", headers=auth(owner)).json()["data"]["properties"]
    assert [p["id"] for p in mine] == [prop["id"]]


def test_student_cannot_list_property(client, make_user):
    student = make_user("student")
    res = client.post("/api/properties", json={
        "title": "Room", "description": "Nice", "price": 100,
        "location": {"address": "1 Road", "city": "Pune"},
    }, headers=auth(student))
    assert res.status_code == 403
    assert res.json()["error"] == "Unauthorized: Owner access required"


def test_search_by_city_only_returns_active(client, make_user, make_property):
    owner = make_user("owner")
    make_property(owner)
    other = make_property(owner, location={"address": "4 Lake View", "city": "Mumbai"})
    client.put(f"/api/properties/{other['id']}", json={"status": "inactive"}, headers=auth(owner))

    data = client.get("/api/properties", params={"city": "pune"}).json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["properties"][0]["location"]["city"] == "Pune"
    assert client.get("/api/properties", params={"city": "mumbai"}).json()["data"]["pagination"]["total"] == 0


def test_update_checks_ownership_and_room_counts(client, make_user, make_property):
    owner = make_user("owner")
    prop = make_property(owner)
    stranger = make_user("owner")
    assert client.put(f"/api/properties/{prop['id']}", json={"price": 1}, headers=auth(stranger)).status_code == 403

    res = client.put(f"/api/properties/{prop['id']}", json={"availableRooms": 5}, headers=auth(owner))
    assert res.status_code == 400

    res = client.put(f"/api/properties/{prop['id']}", json={"price": 9500, "availableRooms": 2}, headers=auth(owner))
    assert res.status_code == 200
    assert res.json()["data"]["price"] == 9500
    assert res.json()["data"]["available_rooms"] == 2


def test_invalid_id(client):
    res = client.get("/api/properties/not-an-id")
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid id format"
