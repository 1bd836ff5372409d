"""Batched key lookups shared by the loan, bundle and event services."""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Sequence

from sqlalchemy.orm import selectinload

from utilities.database import db, Key, KeyEvent, KeyEventKey, KeyLoan, KeyLoanKey


def load_keys(key_ids: Iterable[int]) -> Dict[int, Key]:
    ids = sorted(set(key_ids))
    if not ids:
        return {}
    keys = (
        db.session.query(Key)
        .options(selectinload(Key.key_system))
        .filter(Key.id.in_(ids))
        .all()
    )
    return {key.id: key for key in keys}


def find_missing_key_ids(key_ids: Iterable[int]) -> List[int]:
    ids = set(key_ids)
    if not ids:
        return []
    found = {row[0] for row in db.session.query(Key.id).filter(Key.id.in_(ids)).all()}
    return sorted(ids - found)


def loans_by_key(key_ids: Iterable[int]) -> Dict[int, List[KeyLoan]]:
    """All loans (any state) per key, newest first."""
    ids = sorted(set(key_ids))
    grouped: Dict[int, List[KeyLoan]] = defaultdict(list)
    if not ids:
        return grouped
    rows = (
        db.session.query(KeyLoanKey.key_id, KeyLoan)
        .join(KeyLoan, KeyLoan.id == KeyLoanKey.key_loan_id)
        .options(selectinload(KeyLoan.key_links), selectinload(KeyLoan.card_links))
        .filter(KeyLoanKey.key_id.in_(ids))
        .order_by(KeyLoan.created_at.desc(), KeyLoan.id.desc())
        .all()
    )
    for key_id, loan in rows:
        grouped[key_id].append(loan)
    return grouped


def events_by_key(key_ids: Iterable[int]) -> Dict[int, List[KeyEvent]]:
    """All key events per key, newest first."""
    ids = sorted(set(key_ids))
    grouped: Dict[int, List[KeyEvent]] = defaultdict(list)
    if not ids:
        return grouped
    rows = (
        db.session.query(KeyEventKey.key_id, KeyEvent)
        .join(KeyEvent, KeyEvent.id == KeyEventKey.key_event_id)
        .options(selectinload(KeyEvent.key_links))
        .filter(KeyEventKey.key_id.in_(ids))
        .order_by(KeyEvent.created_at.desc(), KeyEvent.id.desc())
        .all()
    )
    for key_id, event in rows:
        grouped[key_id].append(event)
    return grouped


def key_details(
    keys: Sequence[Key],
    *,
    include_key_system: bool = False,
    include_loans: bool = False,
    include_events: bool = False,
) -> List[Dict[str, Any]]:
    key_ids = [key.id for key in keys]
    loans = loans_by_key(key_ids) if include_loans else {}
    events = events_by_key(key_ids) if include_events else {}

    details = []
    for key in keys:
        entry = key.to_dict()
        if include_key_system:
            entry["keySystem"] = key.key_system.to_dict() if key.key_system else None
        if include_loans:
            entry["loans"] = [loan.to_dict() for loan in loans.get(key.id, [])]
        if include_events:
            entry["events"] = [event.to_dict() for event in events.get(key.id, [])]
        details.append(entry)
    return details
