from datetime import datetime

from loans.reservations import reserve
from search import BUNDLE_SEARCH, LOAN_SEARCH, execute_search, parse_filter_spec
from search.pagination import PageRequest
from utilities.database import db, KeyLoan


def _loan(key_ids, contact, created_at=None, card_ids=(), **fields):
    result = reserve(key_ids, card_ids, {"contact": contact, **fields}, actor="tester")
    assert result.ok, result
    loan_id = result.value.id
    if created_at is not None:
        loan = db.session.get(KeyLoan, loan_id)
        loan.created_at = created_at
        db.session.commit()
    return loan_id


def _search(params, resource=LOAN_SEARCH, page=1, limit=20):
    spec = parse_filter_spec(params, resource)
    assert spec.ok, spec
    result = execute_search(resource, spec.value, PageRequest(page=page, limit=limit))
    assert result.ok, result
    return result.value


def _ids(page):
    return [row.id for row in page.content]


def test_range_predicates_on_one_field_are_and_combined(app, make_key):
    before = _loan([make_key()], "P1", created_at=datetime(2023, 12, 31, 23, 0))
    inside = _loan([make_key()], "P2", created_at=datetime(2024, 6, 1))
    after = _loan([make_key()], "P3", created_at=datetime(2025, 1, 2))

    page = _search({"createdAt": [">=2024-01-01", "<=2024-12-31"]})

    assert _ids(page) == [inside]
    assert before not in _ids(page) and after not in _ids(page)


def test_results_are_newest_first_with_id_tiebreak(app, make_key):
    same_time = datetime(2024, 3, 1, 12, 0)
    first = _loan([make_key()], "Anna Berg", created_at=same_time)
    second = _loan([make_key()], "Anna Berg", created_at=same_time)
    newest = _loan([make_key()], "Anna Berg", created_at=datetime(2024, 4, 1))

    page = _search({"q": ["Anna"]})

    assert _ids(page) == [newest, second, first]


def test_same_spec_and_page_give_identical_output(app, make_key):
    for index in range(7):
        _loan([make_key()], f"Tenant {index}", created_at=datetime(2024, 1, 1))

    spec = parse_filter_spec({"q": ["Tenant"]}, LOAN_SEARCH).value
    first = execute_search(LOAN_SEARCH, spec, PageRequest(page=2, limit=3)).value
    second = execute_search(LOAN_SEARCH, spec, PageRequest(page=2, limit=3)).value

    assert first.to_dict(KeyLoan.to_dict) == second.to_dict(KeyLoan.to_dict)
    assert first.total == 7 and first.count == 3


def test_or_group_matches_either_default_field(app, make_key):
    primary = _loan([make_key()], "Eva Lind")
    secondary = _loan([make_key()], "Nils Ek", contact2="eva lindqvist")
    _loan([make_key()], "Olle Ström")

    page = _search({"q": ["EVA LIND"]})

    assert sorted(_ids(page)) == sorted([primary, secondary])


def test_or_group_is_and_combined_with_other_predicates(app, make_key):
    tenant = _loan([make_key()], "Eva Lind")
    _loan([make_key()], "Eva Lind", loan_type="MAINTENANCE")

    page = _search({"q": ["Eva"], "loanType": ["TENANT"]})

    assert _ids(page) == [tenant]


def test_like_metacharacters_are_literal(app, make_key):
    percent = _loan([make_key()], "Firma 50% AB")
    _loan([make_key()], "Firma 500 AB")

    assert _ids(_search({"q": ["50%"]})) == [percent]
    assert _ids(_search({"q": ["a_b"]})) == []


def test_presence_predicates(app, make_key):
    waiting = _loan([make_key()], "P1")
    out = _loan([make_key()], "P2", picked_up_at=datetime(2024, 1, 1))

    assert _ids(_search({"hasPickedUp": ["true"]})) == [out]
    assert _ids(_search({"hasPickedUp": ["false"]})) == [waiting]


def test_derived_key_predicates(app, make_key):
    match = _loan([make_key("Entré 12", rental_object_code="705-011-03-0101")], "P1")
    _loan([make_key("Förråd 3", rental_object_code="705-022-01-0003")], "P2")

    assert _ids(_search({"keyNameOrObjectCode": ["ntré"]})) == [match]
    assert _ids(_search({"keyNameOrObjectCode": ["011-03"]})) == [match]
    assert _ids(_search({"rentalObjectCode": ["705-011-03-0101"]})) == [match]
    assert _ids(_search({"rentalObjectCode": ["705-011"]})) == []


def test_key_and_card_id_predicates(app, make_key):
    shared = make_key()
    with_card = _loan([shared], "P1", card_ids=["CARD-9"])
    _loan([make_key()], "P2")

    assert _ids(_search({"keyId": [str(shared)]})) == [with_card]
    assert _ids(_search({"cardId": ["CARD-9"]})) == [with_card]
    assert _ids(_search({"cardId": ["CARD-1"]})) == []


def test_key_count_bounds(app, make_key):
    one = _loan([make_key()], "P1")
    three = _loan([make_key(), make_key(), make_key()], "P2")

    assert _ids(_search({"minKeys": ["2"]})) == [three]
    assert _ids(_search({"maxKeys": ["1"]})) == [one]
    assert _ids(_search({"minKeys": ["1"], "maxKeys": ["3"]})) == [three, one]


def test_bundle_search_through_member_keys(app, make_key, make_bundle):
    key = make_key("Garage 4", rental_object_code="GAR-004")
    garages = make_bundle("Garages", [key], description="All garage keys")
    make_bundle("Laundry", [make_key("Tvätt")])

    assert _ids(_search({"q": ["garage"]}, BUNDLE_SEARCH)) == [garages]
    assert _ids(_search({"keyNameOrObjectCode": ["GAR-0"]}, BUNDLE_SEARCH)) == [garages]
    assert _ids(_search({"keyId": [str(key)]}, BUNDLE_SEARCH)) == [garages]


def test_search_endpoint_envelope(client, app, make_key):
    for index in range(3):
        _loan([make_key()], f"Kund {index}")

    response = client.get("/loans/search?q=Kund&limit=2&page=2")

    assert response.status_code == 200
    body = response.get_json()
    assert body["meta"] == {"page": 2, "limit": 2, "total": 3, "count": 1}
    assert len(body["content"]) == 1


def test_search_endpoint_rejects_short_query(client):
    response = client.get("/loans/search?q=ab")
    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_search_parameters"


def test_search_endpoint_rejects_bad_paging(client):
    assert client.get("/loans/search?q=abc&page=0").status_code == 400
    assert client.get("/loans/search?q=abc&limit=x").status_code == 400


def test_limit_is_clamped(client, app, make_key):
    _loan([make_key()], "P1")
    response = client.get("/loans?limit=5000")
    assert response.status_code == 200
    assert response.get_json()["meta"]["limit"] == app.config["PAGE_LIMIT_MAX"]


def test_list_ignores_filter_parameters(client, make_key):
    _loan([make_key()], "P1", loan_type="MAINTENANCE")
    _loan([make_key()], "P2")

    response = client.get("/loans?loanType=TENANT")

    assert response.status_code == 200
    assert response.get_json()["meta"]["total"] == 2


def test_out_of_range_integers_are_client_errors(client, make_key):
    key_id = make_key()

    search = client.get("/loans/search?id=99999999999999999999999")
    assert search.status_code == 400
    assert search.get_json()["error"] == "invalid_search_parameters"

    paged = client.get("/loans?page=99999999999999999999")
    assert paged.status_code == 400
    assert client.get(f"/loans?page={2**62}&limit=100").status_code == 400

    created = client.post("/loans", json={"keys": [key_id, 99999999999999999999999], "contact": "P1"})
    assert created.status_code == 400
    assert created.get_json()["field"] == "keys"

    assert client.get("/loans/99999999999999999999999").status_code == 404
    assert client.get("/keys/99999999999999999999999").status_code == 404
