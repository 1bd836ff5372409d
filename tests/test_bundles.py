from datetime import datetime

from events.service import create_event
from loans.reservations import reserve, return_loan
from utilities.database import db, ActivityLog, KeyBundle


def _loan(key_ids, contact="P1", **fields):
    result = reserve(key_ids, (), {"contact": contact, **fields})
    assert result.ok, result
    return result.value.id


def _status_by_name(body):
    return {entry["keyName"]: entry["loanStatus"] for entry in body["content"]["keys"]}


def test_keys_with_loan_status(client, sample_keys, make_bundle):
    bundle_id = make_bundle("Trapphus 3", [sample_keys.a, sample_keys.b, sample_keys.c])
    reserved = _loan([sample_keys.a], contact="P1")
    _loan([sample_keys.b], contact="P2", picked_up_at=datetime(2024, 2, 1))
    create_event([sample_keys.c], "FLEX", work_order_id="WO-1")

    response = client.get(f"/bundles/{bundle_id}/keys-with-loan-status")

    assert response.status_code == 200
    body = response.get_json()
    assert body["content"]["bundle"]["id"] == bundle_id
    assert _status_by_name(body) == {"Key A": "reserved", "Key B": "loaned", "Key C": "available"}

    keys = {entry["keyName"]: entry for entry in body["content"]["keys"]}
    assert keys["Key A"]["activeLoan"]["id"] == reserved
    assert keys["Key C"]["activeLoan"] is None
    assert keys["Key C"]["latestEvent"]["workOrderId"] == "WO-1"
    assert keys["Key A"]["latestEvent"] is None
    assert "loans" not in keys["Key A"]


def test_returned_keys_show_as_available_with_history(client, sample_keys, make_bundle):
    bundle_id = make_bundle("Förråd", [sample_keys.a])
    loan_id = _loan([sample_keys.a], picked_up_at=datetime(2024, 2, 1))
    return_loan(loan_id, datetime(2024, 3, 1))

    body = client.get(f"/bundles/{bundle_id}/keys-with-loan-status?includeLoans=true&includeEvents=1").get_json()

    entry = body["content"]["keys"][0]
    assert entry["loanStatus"] == "available"
    assert [loan["id"] for loan in entry["loans"]] == [loan_id]
    assert entry["events"] == []


def test_keys_with_loan_status_for_missing_bundle(client):
    response = client.get("/bundles/4040/keys-with-loan-status")
    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_create_bundle_and_duplicate_name(client, app, sample_keys):
    created = client.post("/bundles", json={"name": "Entré", "keys": [sample_keys.a, sample_keys.b]})

    assert created.status_code == 201
    assert created.get_json()["content"]["keys"] == sorted([sample_keys.a, sample_keys.b])
    assert db.session.query(ActivityLog).filter_by(action="key_bundle_created", user_name="tester").count() == 1

    duplicate = client.post("/bundles", json={"name": "entré"})
    assert duplicate.status_code == 409
    assert db.session.query(KeyBundle).count() == 1


def test_bundle_validation(client, sample_keys):
    assert client.post("/bundles", json={"description": "no name"}).status_code == 400
    missing = client.post("/bundles", json={"name": "Ghosts", "keys": [sample_keys.a, 777]})
    assert missing.status_code == 400
    assert missing.get_json()["missingKeys"] == [777]


def test_update_bundle_membership(client, sample_keys, make_bundle):
    bundle_id = make_bundle("Garage", [sample_keys.a, sample_keys.b])

    response = client.put(f"/bundles/{bundle_id}", json={"keys": [sample_keys.b, sample_keys.c]})

    assert response.status_code == 200
    assert response.get_json()["content"]["keys"] == sorted([sample_keys.b, sample_keys.c])
    assert response.get_json()["content"]["name"] == "Garage"


def test_delete_bundle(client, sample_keys, make_bundle):
    bundle_id = make_bundle("Temporary", [sample_keys.a])

    assert client.delete(f"/bundles/{bundle_id}").status_code == 200
    assert client.get(f"/bundles/{bundle_id}").status_code == 404
    assert client.delete(f"/bundles/{bundle_id}").status_code == 404


def test_bundles_by_key(client, sample_keys, make_bundle):
    make_bundle("Beta", [sample_keys.a])
    make_bundle("Alpha", [sample_keys.a, sample_keys.b])
    make_bundle("Gamma", [sample_keys.c])

    body = client.get(f"/bundles/by-key/{sample_keys.a}").get_json()

    assert [bundle["name"] for bundle in body["content"]] == ["Alpha", "Beta"]


def test_bundles_by_contact_counts_outstanding_keys(client, sample_keys, make_key, make_bundle):
    extra = make_key("Key D")
    make_bundle("Hus 1", [sample_keys.a, sample_keys.b, extra])
    make_bundle("Hus 2", [sample_keys.c])
    _loan([sample_keys.a, sample_keys.b], contact="P1")
    returned = _loan([sample_keys.c], contact="P1", picked_up_at=datetime(2024, 1, 1))
    return_loan(returned, datetime(2024, 1, 2))

    body = client.get("/bundles/by-contact/P1").get_json()

    assert body["content"] == [
        {
            "id": body["content"][0]["id"],
            "name": "Hus 1",
            "description": None,
            "loanedKeyCount": 2,
            "totalKeyCount": 3,
        }
    ]
    assert client.get("/bundles/by-contact/nobody").get_json()["content"] == []


def test_loans_by_bundle(client, sample_keys, make_bundle):
    bundle_id = make_bundle("Hus 3", [sample_keys.a, sample_keys.b])
    first = _loan([sample_keys.a], contact="P1")
    _loan([sample_keys.c], contact="P2")
    maintenance = _loan([sample_keys.b], contact="Firma AB", loan_type="MAINTENANCE")

    body = client.get(f"/loans/by-bundle/{bundle_id}").get_json()
    assert sorted(loan["id"] for loan in body["content"]) == sorted([first, maintenance])

    filtered = client.get(f"/loans/by-bundle/{bundle_id}?loanType=MAINTENANCE&returned=false").get_json()
    assert [loan["id"] for loan in filtered["content"]] == [maintenance]

    assert client.get("/loans/by-bundle/999").status_code == 404
    assert client.get(f"/loans/by-bundle/{bundle_id}?returned=maybe").status_code == 400
