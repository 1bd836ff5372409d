"""
Read-side views joining bundle membership with loan state.

Everything here is batched: one query per concern (keys, outstanding loans,
events, history) regardless of bundle size.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from inventory.details import events_by_key, load_keys, loans_by_key
from loans.lookups import loans_by_contact
from loans.reservations import outstanding_loans_by_key
from utilities.database import db, KeyBundle, KeyBundleKey, KeyLoan
from utilities.results import Err, NotFoundError, Ok, Result

AVAILABLE = "available"
RESERVED = "reserved"
LOANED = "loaned"


def loan_status(loan: Optional[KeyLoan]) -> str:
    if loan is None:
        return AVAILABLE
    return LOANED if loan.picked_up_at is not None else RESERVED


def _get_bundle(bundle_id: int) -> Result[KeyBundle]:
    bundle = db.session.get(KeyBundle, bundle_id)
    if bundle is None:
        return Err(NotFoundError(f"Key bundle {bundle_id} not found", {"id": bundle_id}))
    return Ok(bundle)


def details_with_loan_status(
    bundle_id: int,
    include_loans: bool = False,
    include_events: bool = False,
    include_key_system: bool = False,
) -> Result[Dict[str, Any]]:
    found = _get_bundle(bundle_id)
    if not found.ok:
        return found
    bundle = found.value

    # Member ids pointing at deleted keys are skipped
    keys_by_id = load_keys(bundle.key_ids)
    keys = sorted(keys_by_id.values(), key=lambda key: (key.key_name, key.id))
    key_ids = [key.id for key in keys]

    active = outstanding_loans_by_key(key_ids)
    events = events_by_key(key_ids)
    history = loans_by_key(key_ids) if include_loans else {}

    entries = []
    for key in keys:
        loan = active.get(key.id)
        key_events = events.get(key.id, [])
        entry = key.to_dict()
        entry["activeLoan"] = loan.to_dict() if loan else None
        entry["loanStatus"] = loan_status(loan)
        entry["latestEvent"] = key_events[0].to_dict() if key_events else None
        if include_key_system:
            entry["keySystem"] = key.key_system.to_dict() if key.key_system else None
        if include_loans:
            entry["loans"] = [item.to_dict() for item in history.get(key.id, [])]
        if include_events:
            entry["events"] = [event.to_dict() for event in key_events]
        entries.append(entry)

    return Ok({"bundle": bundle.to_dict(), "keys": entries})


def bundles_with_loaned_keys(contact: str) -> List[Dict[str, Any]]:
    """Bundles holding keys that are currently out on loans for ``contact``."""
    loaned_key_ids = {
        key_id
        for loan in loans_by_contact(contact, returned=False)
        for key_id in loan.key_ids
    }
    if not loaned_key_ids:
        return []

    bundles = (
        db.session.query(KeyBundle)
        .options(selectinload(KeyBundle.key_links))
        .filter(KeyBundle.id.in_(select(KeyBundleKey.key_bundle_id).where(KeyBundleKey.key_id.in_(sorted(loaned_key_ids)))))
        .all()
    )

    summaries = []
    for bundle in bundles:
        members = bundle.key_ids
        summaries.append(
            {
                "id": bundle.id,
                "name": bundle.name,
                "description": bundle.description,
                "loanedKeyCount": len([key_id for key_id in members if key_id in loaned_key_ids]),
                "totalKeyCount": len(members),
            }
        )
    summaries.sort(key=lambda summary: summary["name"].lower())
    return summaries

