from utilities.database import db, ActivityLog


def _create(client, **body):
    return client.post("/key-events", json=body)


def test_create_event(client, sample_keys):
    response = _create(client, keys=[sample_keys.a, sample_keys.b, sample_keys.a], type="FLEX", workOrderId="WO-17")

    assert response.status_code == 201
    event = response.get_json()["content"]
    assert event["keys"] == sorted([sample_keys.a, sample_keys.b])
    assert event["status"] == "ORDERED"
    assert event["workOrderId"] == "WO-17"
    assert db.session.query(ActivityLog).filter_by(action="key_event_created").count() == 1


def test_create_event_validation(client, sample_keys):
    assert _create(client, keys=[sample_keys.a]).get_json()["field"] == "type"
    assert _create(client, keys=[], type="LOST").get_json()["field"] == "keys"
    assert _create(client, keys=[sample_keys.a], type="FLEX", status="LOST").status_code == 400
    missing = _create(client, keys=[sample_keys.a, 555], type="ORDER")
    assert missing.status_code == 400
    assert missing.get_json()["missingKeys"] == [555]


def test_events_ignore_outstanding_loans(client, sample_keys):
    client.post("/loans", json={"keys": [sample_keys.a], "contact": "P1"})

    assert _create(client, keys=[sample_keys.a], type="LOST").status_code == 201


def test_status_only_moves_forward(client, sample_keys):
    event_id = _create(client, keys=[sample_keys.a], type="ORDER").get_json()["content"]["id"]

    received = client.put(f"/key-events/{event_id}", json={"status": "RECEIVED"})
    assert received.status_code == 200
    assert received.get_json()["content"]["status"] == "RECEIVED"

    backwards = client.put(f"/key-events/{event_id}", json={"status": "ORDERED"})
    assert backwards.status_code == 400
    assert backwards.get_json()["current"] == "RECEIVED"

    same = client.put(f"/key-events/{event_id}", json={"status": "RECEIVED", "workOrderId": "WO-2"})
    assert same.status_code == 200
    assert same.get_json()["content"]["workOrderId"] == "WO-2"

    assert client.put("/key-events/999", json={"status": "DONE"}).status_code == 404


def test_event_detail_and_by_key(client, sample_keys):
    first = _create(client, keys=[sample_keys.a], type="FLEX").get_json()["content"]["id"]
    second = _create(client, keys=[sample_keys.a, sample_keys.b], type="ORDER").get_json()["content"]["id"]

    assert client.get(f"/key-events/{first}").get_json()["content"]["type"] == "FLEX"
    assert client.get("/key-events/404").status_code == 404

    by_key = client.get(f"/key-events/by-key/{sample_keys.a}").get_json()["content"]
    assert [event["id"] for event in by_key] == [second, first]
    assert client.get(f"/key-events/by-key/{sample_keys.c}").get_json()["content"] == []


def test_list_events_is_paginated(client, sample_keys):
    for _ in range(3):
        _create(client, keys=[sample_keys.a], type="ORDER")

    body = client.get("/key-events?limit=2").get_json()

    assert body["meta"] == {"page": 1, "limit": 2, "total": 3, "count": 2}
    assert client.get("/key-events?page=abc").status_code == 400
