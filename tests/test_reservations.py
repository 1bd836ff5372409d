import threading
from datetime import datetime

from loans.reservations import (
    delete_loan,
    find_conflicts,
    outstanding_loans_by_key,
    reserve,
    return_loan,
    update_loan,
)
from utilities.database import db, ActiveKeyClaim, ActiveCardClaim, KeyLoan, KeyLoanKey
from utilities.results import ActiveLoanError, ConflictError, NotFoundError, ValidationError


def _reserve(key_ids, contact="P1", card_ids=(), **fields):
    return reserve(key_ids, card_ids, {"contact": contact, **fields}, actor="tester")


def test_reserve_creates_one_loan_for_the_whole_key_set(app, sample_keys):
    result = _reserve([sample_keys.a, sample_keys.b], card_ids=["CARD-1"])

    assert result.ok
    loan = result.value
    assert loan.key_ids == sorted([sample_keys.a, sample_keys.b])
    assert loan.card_ids == ["CARD-1"]
    assert loan.created_by == "tester"
    assert loan.state == "CREATED"
    assert db.session.query(KeyLoan).count() == 1
    assert {claim.key_id for claim in db.session.query(ActiveKeyClaim).all()} == {sample_keys.a, sample_keys.b}


def test_overlapping_reservation_is_a_conflict(app, sample_keys):
    first = _reserve([sample_keys.a, sample_keys.b]).value

    result = _reserve([sample_keys.b, sample_keys.c], contact="P2")

    assert not result.ok
    assert isinstance(result.error, ConflictError)
    assert result.error.details["conflictingKeys"] == [sample_keys.b]
    assert result.error.details["conflictingLoans"] == [first.id]
    # nothing partial was written
    assert db.session.query(KeyLoan).count() == 1
    assert db.session.get(ActiveKeyClaim, sample_keys.c) is None


def test_card_overlap_is_a_conflict(app, sample_keys):
    _reserve([sample_keys.a], card_ids=["CARD-7"])

    result = _reserve([sample_keys.c], contact="P2", card_ids=["CARD-7"])

    assert isinstance(result.error, ConflictError)
    assert result.error.details["conflictingCards"] == ["CARD-7"]


def test_reserve_validation(app, sample_keys, make_key):
    assert isinstance(_reserve([]).error, ValidationError)

    missing = _reserve([sample_keys.a, 9999])
    assert isinstance(missing.error, ValidationError)
    assert missing.error.details["missingKeys"] == [9999]

    disposed = make_key(disposed=True)
    assert _reserve([disposed]).error.details["disposedKeys"] == [disposed]

    no_contact = reserve([sample_keys.a], (), {"contact": None})
    assert no_contact.error.details["field"] == "contact"

    bad_type = _reserve([sample_keys.a], loan_type="VISITOR")
    assert bad_type.error.details["field"] == "loanType"

    returned = _reserve([sample_keys.a], picked_up_at=datetime(2024, 1, 1), returned_at=datetime(2024, 1, 2))
    assert returned.error.details["field"] == "returnedAt"

    assert db.session.query(KeyLoan).count() == 0


def test_update_excludes_the_loan_itself(app, sample_keys):
    loan = _reserve([sample_keys.a, sample_keys.b]).value

    result = update_loan(loan.id, {"key_ids": [sample_keys.a, sample_keys.b, sample_keys.c]}, actor="editor")

    assert result.ok
    assert result.value.key_ids == sorted([sample_keys.a, sample_keys.b, sample_keys.c])
    assert result.value.updated_by == "editor"
    assert set(outstanding_loans_by_key([sample_keys.a, sample_keys.b, sample_keys.c])) == {
        sample_keys.a,
        sample_keys.b,
        sample_keys.c,
    }


def test_update_diffs_claims_when_keys_are_swapped(app, sample_keys):
    loan = _reserve([sample_keys.a, sample_keys.b]).value

    result = update_loan(loan.id, {"key_ids": [sample_keys.b, sample_keys.c]})

    assert result.ok
    claims = {claim.key_id for claim in db.session.query(ActiveKeyClaim).all()}
    assert claims == {sample_keys.b, sample_keys.c}
    assert _reserve([sample_keys.a], contact="P2").ok


def test_update_into_a_held_key_is_a_conflict(app, sample_keys):
    _reserve([sample_keys.a], contact="P1")
    second = _reserve([sample_keys.b], contact="P2").value

    result = update_loan(second.id, {"key_ids": [sample_keys.a, sample_keys.b]})

    assert isinstance(result.error, ConflictError)
    assert db.session.get(KeyLoan, second.id).key_ids == [sample_keys.b]


def test_update_without_key_changes_skips_conflict_check(app, sample_keys):
    loan = _reserve([sample_keys.a]).value

    result = update_loan(loan.id, {"description": "Spare set", "contact2": "P9"})

    assert result.ok
    assert result.value.description == "Spare set"
    assert result.value.contact2 == "P9"


def test_update_missing_loan(app):
    result = update_loan(12345, {"description": "x"})
    assert isinstance(result.error, NotFoundError)


def test_returning_releases_claims(app, sample_keys):
    loan = _reserve([sample_keys.a], card_ids=["CARD-1"], picked_up_at=datetime(2024, 1, 1)).value

    result = return_loan(loan.id, datetime(2024, 2, 1))

    assert result.ok
    assert db.session.query(ActiveKeyClaim).count() == 0
    assert db.session.query(ActiveCardClaim).count() == 0
    # history is kept on the returned loan
    assert result.value.key_ids == [sample_keys.a]
    assert _reserve([sample_keys.a], contact="P2", card_ids=["CARD-1"]).ok


def test_returned_loan_keys_are_frozen(app, sample_keys):
    loan = _reserve([sample_keys.a], picked_up_at=datetime(2024, 1, 1)).value
    return_loan(loan.id, datetime(2024, 2, 1))

    result = update_loan(loan.id, {"key_ids": [sample_keys.a, sample_keys.b]})

    assert isinstance(result.error, ValidationError)


def test_returning_and_changing_keys_in_one_update_is_rejected(app, sample_keys):
    holder = _reserve([sample_keys.a]).value
    other = _reserve([sample_keys.b], contact="P2", picked_up_at=datetime(2024, 1, 1)).value

    result = update_loan(
        other.id,
        {"key_ids": [sample_keys.a, sample_keys.b], "returned_at": datetime(2024, 2, 1)},
    )

    assert isinstance(result.error, ValidationError)
    db.session.expire_all()
    unchanged = db.session.get(KeyLoan, other.id)
    assert unchanged.key_ids == [sample_keys.b]
    assert unchanged.returned_at is None
    assert db.session.get(ActiveKeyClaim, sample_keys.a).key_loan_id == holder.id


def test_delete_guard_for_active_loans(app, sample_keys):
    loan = _reserve([sample_keys.a], picked_up_at=datetime(2024, 1, 1)).value

    blocked = delete_loan(loan.id)
    assert isinstance(blocked.error, ActiveLoanError)
    assert blocked.error.code == "active_loan"

    assert return_loan(loan.id, datetime(2024, 1, 5)).ok
    deleted = delete_loan(loan.id)

    assert deleted.ok
    assert deleted.value["id"] == loan.id
    assert db.session.get(KeyLoan, loan.id) is None
    assert db.session.query(KeyLoanKey).count() == 0


def test_unpicked_loan_can_be_deleted_and_frees_its_keys(app, sample_keys):
    loan = _reserve([sample_keys.a]).value

    assert delete_loan(loan.id).ok
    assert db.session.query(ActiveKeyClaim).count() == 0
    assert _reserve([sample_keys.a], contact="P2").ok


def test_delete_missing_loan(app):
    assert isinstance(delete_loan(404).error, NotFoundError)


def test_find_conflicts_reports_nothing_for_free_keys(app, sample_keys):
    assert find_conflicts([sample_keys.a, sample_keys.b], ["CARD-1"]) == {}


def test_end_to_end_reservation_scenario(app, sample_keys):
    first = _reserve([sample_keys.a, sample_keys.b], contact="P1", picked_up_at=datetime(2024, 5, 1))
    assert first.ok

    blocked = _reserve([sample_keys.b, sample_keys.c], contact="P2")
    assert isinstance(blocked.error, ConflictError)
    assert blocked.error.details["conflictingKeys"] == [sample_keys.b]

    assert return_loan(first.value.id, datetime(2024, 5, 20)).ok

    second = _reserve([sample_keys.b, sample_keys.c], contact="P2")
    assert second.ok
    assert second.value.key_ids == sorted([sample_keys.b, sample_keys.c])


def test_concurrent_reservations_for_overlapping_keys(app, make_key):
    shared = make_key("Shared")
    own_keys = [make_key(f"Own {index}") for index in range(6)]
    db.session.close()

    barrier = threading.Barrier(len(own_keys))
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt(own_key):
        with app.app_context():
            barrier.wait()
            result = reserve([shared, own_key], (), {"contact": f"P{own_key}"}, actor="racer")
            outcome = "ok" if result.ok else type(result.error).__name__
            with outcomes_lock:
                outcomes.append(outcome)
            db.session.remove()

    threads = [threading.Thread(target=attempt, args=(own_key,)) for own_key in own_keys]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(outcomes) == len(own_keys)
    assert outcomes.count("ok") == 1
    assert outcomes.count("ConflictError") == len(own_keys) - 1

    holders = (
        db.session.query(KeyLoan)
        .join(KeyLoanKey, KeyLoanKey.key_loan_id == KeyLoan.id)
        .filter(KeyLoanKey.key_id == shared, KeyLoan.returned_at.is_(None))
        .all()
    )
    assert len(holders) == 1


def test_updates_and_reservations_racing_for_one_key(app, make_key):
    shared = make_key("Shared")
    loan_ids = []
    for index in range(3):
        own_key = make_key(f"Held {index}")
        loan_ids.append((_reserve([own_key], contact=f"P{index}").value.id, own_key))
    free_keys = [make_key(f"Free {index}") for index in range(3)]
    db.session.close()

    barrier = threading.Barrier(len(loan_ids) + len(free_keys))
    outcomes = []
    outcomes_lock = threading.Lock()

    def record(result):
        outcome = "ok" if result.ok else type(result.error).__name__
        with outcomes_lock:
            outcomes.append(outcome)

    def widen(loan_id, own_key):
        with app.app_context():
            barrier.wait()
            record(update_loan(loan_id, {"key_ids": [own_key, shared]}, actor="racer"))
            db.session.remove()

    def take(free_key):
        with app.app_context():
            barrier.wait()
            record(reserve([shared, free_key], (), {"contact": f"P{free_key}"}, actor="racer"))
            db.session.remove()

    threads = [threading.Thread(target=widen, args=pair) for pair in loan_ids]
    threads += [threading.Thread(target=take, args=(free_key,)) for free_key in free_keys]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(outcomes) == len(threads)
    assert outcomes.count("ok") == 1
    assert outcomes.count("ConflictError") == len(threads) - 1

    holders = (
        db.session.query(KeyLoan)
        .join(KeyLoanKey, KeyLoanKey.key_loan_id == KeyLoan.id)
        .filter(KeyLoanKey.key_id == shared, KeyLoan.returned_at.is_(None))
        .all()
    )
    assert len(holders) == 1
    assert db.session.get(ActiveKeyClaim, shared).key_loan_id == holders[0].id
