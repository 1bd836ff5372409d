"""
Reservation manager.

The invariant: a key (or access card) belongs to at most one loan whose
``returned_at`` is NULL. It is enforced by the store, not by this process.

Every outstanding loan owns one ``ActiveKeyClaim`` row per key and one
``ActiveCardClaim`` row per card, and the key/card id is the primary key of
those tables. The conflict check below gives callers a readable error, but
the claim insert is what actually arbitrates: when two requests race for the
same key, the loser's commit fails with ``IntegrityError``, its transaction
is rolled back, and the retried attempt sees the winner's loan and reports a
conflict. A claim lives exactly as long as its loan is outstanding; it is
released when the loan is returned or deleted.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from loans.lifecycle import LIFECYCLE_FIELDS, is_active, plan_transition
from utilities.database import (
    db,
    ActiveCardClaim,
    ActiveKeyClaim,
    Key,
    KeyLoan,
    KeyLoanCard,
    KeyLoanKey,
    LOAN_TYPES,
    utc_now,
)
from utilities.results import (
    ActiveLoanError,
    ConflictError,
    Err,
    InternalError,
    NotFoundError,
    Ok,
    Result,
    ValidationError,
)

SCALAR_FIELDS = ("loan_type", "contact", "contact2", "description")


class _ClaimRace(Exception):
    """A concurrent reservation committed a claim first."""


def find_conflicts(
    key_ids: Iterable[int],
    card_ids: Iterable[str] = (),
    exclude_loan_id: Optional[int] = None,
) -> Dict[str, List[Any]]:
    """Outstanding loans (other than ``exclude_loan_id``) holding any of the keys or cards."""
    key_ids = sorted(set(key_ids))
    card_ids = sorted(set(card_ids))
    conflicting_keys: Set[int] = set()
    conflicting_cards: Set[str] = set()
    conflicting_loans: Set[int] = set()

    if key_ids:
        query = (
            db.session.query(KeyLoanKey.key_id, KeyLoan.id)
            .join(KeyLoan, KeyLoan.id == KeyLoanKey.key_loan_id)
            .filter(KeyLoanKey.key_id.in_(key_ids), KeyLoan.returned_at.is_(None))
        )
        if exclude_loan_id is not None:
            query = query.filter(KeyLoan.id != exclude_loan_id)
        for key_id, loan_id in query.all():
            conflicting_keys.add(key_id)
            conflicting_loans.add(loan_id)

    if card_ids:
        query = (
            db.session.query(KeyLoanCard.card_id, KeyLoan.id)
            .join(KeyLoan, KeyLoan.id == KeyLoanCard.key_loan_id)
            .filter(KeyLoanCard.card_id.in_(card_ids), KeyLoan.returned_at.is_(None))
        )
        if exclude_loan_id is not None:
            query = query.filter(KeyLoan.id != exclude_loan_id)
        for card_id, loan_id in query.all():
            conflicting_cards.add(card_id)
            conflicting_loans.add(loan_id)

    if not conflicting_loans:
        return {}
    return {
        "conflictingKeys": sorted(conflicting_keys),
        "conflictingCards": sorted(conflicting_cards),
        "conflictingLoans": sorted(conflicting_loans),
    }


def _conflict(conflicts: Dict[str, List[Any]]) -> Err:
    return Err(ConflictError("One or more keys or cards are already on an outstanding loan", conflicts))


def _validate_keys(key_ids: List[int]) -> Optional[Err]:
    if not key_ids:
        return Err(ValidationError("At least one key is required", {"field": "keys"}))
    rows = db.session.query(Key.id, Key.disposed).filter(Key.id.in_(key_ids)).all()
    found = {key_id: disposed for key_id, disposed in rows}
    missing = sorted(set(key_ids) - set(found))
    if missing:
        return Err(ValidationError("Unknown key ids", {"missingKeys": missing}))
    disposed = sorted(key_id for key_id, is_disposed in found.items() if is_disposed)
    if disposed:
        return Err(ValidationError("Disposed keys cannot be loaned", {"disposedKeys": disposed}))
    return None


def _validate_fields(fields: Mapping[str, Any], creating: bool) -> Optional[Err]:
    if (creating or "contact" in fields) and not fields.get("contact"):
        return Err(ValidationError("contact is required", {"field": "contact"}))
    if "loan_type" in fields and fields["loan_type"] not in LOAN_TYPES:
        return Err(ValidationError(f"loanType must be one of {', '.join(LOAN_TYPES)}", {"field": "loanType"}))
    return None


def _sync(collection, wanted: Set[Any], attribute: str, factory) -> None:
    """Bring a link/claim collection in line with ``wanted`` without touching unchanged rows."""
    for row in list(collection):
        if getattr(row, attribute) not in wanted:
            collection.remove(row)
    present = {getattr(row, attribute) for row in collection}
    for value in sorted(wanted - present):
        collection.append(factory(value))


def _commit_claims(operation: str, loan_ref: Any) -> None:
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Claim race lost while trying to %s loan %s", operation, loan_ref)
        raise _ClaimRace()


def _lost_race(operation: str, subject: Any, attempt: int, attempts: int) -> None:
    # A claim insert can also fail on a flush the ORM issues before the commit
    db.session.rollback()
    current_app.logger.info("Retrying %s %s (attempt %s/%s)", operation, subject, attempt, attempts)


def reserve(
    key_ids: Iterable[int],
    card_ids: Iterable[str] = (),
    fields: Optional[Mapping[str, Any]] = None,
    actor: Optional[str] = None,
) -> Result[KeyLoan]:
    """
    Create one loan for the whole key/card set.

    Returns ValidationError for bad input, ConflictError when any key or card
    is already on an outstanding loan, InternalError when the store fails.
    """
    key_ids = sorted(set(key_ids))
    card_ids = sorted(set(card_ids))
    fields = dict(fields or {})
    fields.setdefault("loan_type", "TENANT")

    invalid = _validate_fields(fields, creating=True) or _validate_keys(key_ids)
    if invalid:
        return invalid
    plan = plan_transition(None, {name: fields[name] for name in LIFECYCLE_FIELDS if name in fields})
    if not plan.ok:
        return plan

    attempts = current_app.config.get("RESERVATION_MAX_ATTEMPTS", 3)
    for attempt in range(1, attempts + 1):
        try:
            conflicts = find_conflicts(key_ids, card_ids)
            if conflicts:
                db.session.rollback()
                return _conflict(conflicts)

            with db.session.no_autoflush:
                loan = KeyLoan(created_by=actor, updated_by=actor)
                for name in SCALAR_FIELDS:
                    if name in fields:
                        setattr(loan, name, fields[name])
                plan.value.apply(loan)
                loan.key_links = [KeyLoanKey(key_id=key_id) for key_id in key_ids]
                loan.card_links = [KeyLoanCard(card_id=card_id) for card_id in card_ids]
                loan.key_claims = [ActiveKeyClaim(key_id=key_id) for key_id in key_ids]
                loan.card_claims = [ActiveCardClaim(card_id=card_id) for card_id in card_ids]
                db.session.add(loan)
            _commit_claims("create", f"for keys {key_ids}")
        except (_ClaimRace, IntegrityError):
            _lost_race("reservation of keys", key_ids, attempt, attempts)
            continue
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Reserving keys %s cards %s failed", key_ids, card_ids)
            return Err(InternalError("Could not create key loan"))

        current_app.logger.info("Key loan %s reserved keys %s for %s", loan.id, key_ids, fields.get("contact"))
        return Ok(loan)

    current_app.logger.warning("Giving up reserving keys %s after %s attempts", key_ids, attempts)
    return Err(ConflictError("Keys were reserved by a concurrent request", {"conflictingKeys": key_ids}))


def update_loan(loan_id: int, patch: Mapping[str, Any], actor: Optional[str] = None) -> Result[KeyLoan]:
    """
    Apply a partial update. ``patch`` holds only the supplied fields, with
    ``key_ids`` / ``card_ids`` replacing the loan's sets when present.
    """
    loan = db.session.get(KeyLoan, loan_id)
    if loan is None:
        return Err(NotFoundError(f"Key loan {loan_id} not found", {"id": loan_id}))

    invalid = _validate_fields(patch, creating=False)
    if invalid:
        return invalid
    plan = plan_transition(loan, {name: patch[name] for name in LIFECYCLE_FIELDS if name in patch})
    if not plan.ok:
        return plan

    current_keys, current_cards = set(loan.key_ids), set(loan.card_ids)
    wanted_keys = set(patch["key_ids"]) if patch.get("key_ids") is not None else current_keys
    wanted_cards = set(patch["card_ids"]) if patch.get("card_ids") is not None else current_cards
    sets_changed = wanted_keys != current_keys or wanted_cards != current_cards

    if sets_changed and (loan.returned_at is not None or plan.value.entering_returned):
        return Err(ValidationError("Keys and cards of a returned loan cannot change", {"field": "keys"}))
    if wanted_keys != current_keys:
        if not wanted_keys:
            return Err(ValidationError("At least one key is required", {"field": "keys"}))
        invalid = _validate_keys(sorted(wanted_keys - current_keys))
        if invalid:
            return invalid

    outstanding_after = plan.value.returned_at is None
    attempts = current_app.config.get("RESERVATION_MAX_ATTEMPTS", 3)
    for attempt in range(1, attempts + 1):
        try:
            loan = db.session.get(KeyLoan, loan_id)
            if loan is None:
                return Err(NotFoundError(f"Key loan {loan_id} not found", {"id": loan_id}))

            if sets_changed and outstanding_after:
                conflicts = find_conflicts(wanted_keys, wanted_cards, exclude_loan_id=loan_id)
                if conflicts:
                    db.session.rollback()
                    return _conflict(conflicts)

            # Lazy loads of the link and claim collections must not flush half-synced rows
            with db.session.no_autoflush:
                for name in SCALAR_FIELDS:
                    if name in patch:
                        setattr(loan, name, patch[name])
                plan.value.apply(loan)
                loan.updated_by = actor
                loan.updated_at = utc_now()

                _sync(loan.key_links, wanted_keys, "key_id", lambda key_id: KeyLoanKey(key_id=key_id))
                _sync(loan.card_links, wanted_cards, "card_id", lambda card_id: KeyLoanCard(card_id=card_id))
                # Claims follow the loan only while it is outstanding
                held_keys = wanted_keys if outstanding_after else set()
                held_cards = wanted_cards if outstanding_after else set()
                _sync(loan.key_claims, held_keys, "key_id", lambda key_id: ActiveKeyClaim(key_id=key_id))
                _sync(loan.card_claims, held_cards, "card_id", lambda card_id: ActiveCardClaim(card_id=card_id))

            _commit_claims("update", loan_id)
        except (_ClaimRace, IntegrityError):
            _lost_race("update of key loan", loan_id, attempt, attempts)
            continue
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Updating key loan %s failed", loan_id)
            return Err(InternalError("Could not update key loan", {"id": loan_id}))

        if plan.value.entering_returned:
            current_app.logger.info("Key loan %s returned, keys %s released", loan_id, sorted(wanted_keys))
        return Ok(loan)

    current_app.logger.warning("Giving up updating key loan %s after %s attempts", loan_id, attempts)
    return Err(ConflictError("Keys were reserved by a concurrent request", {"id": loan_id}))


def return_loan(
    loan_id: int,
    returned_at=None,
    available_from=None,
    actor: Optional[str] = None,
) -> Result[KeyLoan]:
    patch = {"returned_at": returned_at or utc_now()}
    if available_from is not None:
        patch["available_to_next_tenant_from"] = available_from
    return update_loan(loan_id, patch, actor)


def delete_loan(loan_id: int) -> Result[Dict[str, Any]]:
    """Delete a loan that is not currently out with a borrower."""
    loan = db.session.get(KeyLoan, loan_id)
    if loan is None:
        return Err(NotFoundError(f"Key loan {loan_id} not found", {"id": loan_id}))
    if is_active(loan):
        return Err(
            ActiveLoanError(
                "Key loan is active; return the keys before deleting it",
                {"id": loan_id, "keys": loan.key_ids},
            )
        )

    snapshot = loan.to_dict()
    try:
        db.session.delete(loan)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Deleting key loan %s failed", loan_id)
        return Err(InternalError("Could not delete key loan", {"id": loan_id}))
    return Ok(snapshot)


def outstanding_loans_by_key(key_ids: Iterable[int]) -> Dict[int, KeyLoan]:
    """key id -> the outstanding loan holding it, read from the claim table."""
    ids = sorted(set(key_ids))
    if not ids:
        return {}
    rows = (
        db.session.query(ActiveKeyClaim.key_id, KeyLoan)
        .join(KeyLoan, KeyLoan.id == ActiveKeyClaim.key_loan_id)
        .filter(ActiveKeyClaim.key_id.in_(ids))
        .all()
    )
    return {key_id: loan for key_id, loan in rows}
