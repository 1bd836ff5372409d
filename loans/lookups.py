from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from inventory.details import key_details, load_keys
from utilities.database import db, KeyBundle, KeyLoan, KeyLoanKey
from utilities.results import Err, NotFoundError, Ok, Result


def _loan_query(loan_type: Optional[str] = None, returned: Optional[bool] = None):
    query = db.session.query(KeyLoan).options(
        selectinload(KeyLoan.key_links),
        selectinload(KeyLoan.card_links),
    )
    if loan_type:
        query = query.filter(KeyLoan.loan_type == loan_type)
    if returned is True:
        query = query.filter(KeyLoan.returned_at.isnot(None))
    elif returned is False:
        query = query.filter(KeyLoan.returned_at.is_(None))
    return query


def loans_for_keys(
    key_ids: Iterable[int],
    loan_type: Optional[str] = None,
    returned: Optional[bool] = None,
) -> List[KeyLoan]:
    """Loans touching any of the keys, newest first."""
    ids = sorted(set(key_ids))
    if not ids:
        return []
    touching = select(KeyLoanKey.key_loan_id).where(KeyLoanKey.key_id.in_(ids))
    return (
        _loan_query(loan_type, returned)
        .filter(KeyLoan.id.in_(touching))
        .order_by(KeyLoan.created_at.desc(), KeyLoan.id.desc())
        .all()
    )


def loans_by_contact(
    contact: str,
    loan_type: Optional[str] = None,
    returned: Optional[bool] = None,
) -> List[KeyLoan]:
    """Loans where the contact is the primary or secondary borrower."""
    return (
        _loan_query(loan_type, returned)
        .filter(db.or_(KeyLoan.contact == contact, KeyLoan.contact2 == contact))
        .order_by(KeyLoan.created_at.desc(), KeyLoan.id.desc())
        .all()
    )


def loan_details(
    loan_id: int,
    *,
    include_key_system: bool = False,
    include_cards: bool = False,
    include_loans: bool = False,
    include_events: bool = False,
) -> Result[Dict[str, Any]]:
    """A loan with its keys expanded, plus the optional per-key history."""
    loan = db.session.get(KeyLoan, loan_id)
    if loan is None:
        return Err(NotFoundError(f"Key loan {loan_id} not found", {"id": loan_id}))

    keys = sorted(load_keys(loan.key_ids).values(), key=lambda key: (key.key_name, key.id))
    details = loan.to_dict()
    details["keysArray"] = key_details(
        keys,
        include_key_system=include_key_system,
        include_loans=include_loans,
        include_events=include_events,
    )
    if include_cards:
        details["keyCardsArray"] = [{"cardId": card_id} for card_id in loan.card_ids]
    return Ok(details)


def loans_for_bundle(
    bundle_id: int,
    loan_type: Optional[str] = None,
    returned: Optional[bool] = None,
) -> Result[List[KeyLoan]]:
    """Loans touching any key of the bundle."""
    bundle = db.session.get(KeyBundle, bundle_id)
    if bundle is None:
        return Err(NotFoundError(f"Key bundle {bundle_id} not found", {"id": bundle_id}))
    return Ok(loans_for_keys(bundle.key_ids, loan_type=loan_type, returned=returned))
