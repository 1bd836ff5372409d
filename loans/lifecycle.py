"""
Loan lifecycle.

A loan moves CREATED -> PICKED_UP -> RETURNED as a unit; there is no
per-key state inside one loan. RETURNED is terminal: the keys go out again
on a new loan.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from events.service import complete_open_events
from utilities.database import db, KeyLoan, utc_now
from utilities.results import Err, InternalError, NotFoundError, Ok, Result, ValidationError

PICKED_UP_AT = "picked_up_at"
RETURNED_AT = "returned_at"
AVAILABLE_FROM = "available_to_next_tenant_from"
LIFECYCLE_FIELDS = (PICKED_UP_AT, RETURNED_AT, AVAILABLE_FROM)

WIRE_NAMES = {
    PICKED_UP_AT: "pickedUpAt",
    RETURNED_AT: "returnedAt",
    AVAILABLE_FROM: "availableToNextTenantFrom",
}


class LoanState(str, Enum):
    CREATED = "CREATED"
    PICKED_UP = "PICKED_UP"
    RETURNED = "RETURNED"


def state_of(picked_up_at: Optional[datetime], returned_at: Optional[datetime]) -> LoanState:
    if returned_at is not None:
        return LoanState.RETURNED
    if picked_up_at is not None:
        return LoanState.PICKED_UP
    return LoanState.CREATED


def is_active(loan: KeyLoan) -> bool:
    """Keys are physically out with the borrower."""
    return loan.picked_up_at is not None and loan.returned_at is None


def is_outstanding(loan: KeyLoan) -> bool:
    """The loan still holds its keys for reservation purposes."""
    return loan.returned_at is None


@dataclass(frozen=True)
class LifecycleChange:
    picked_up_at: Optional[datetime]
    returned_at: Optional[datetime]
    available_to_next_tenant_from: Optional[datetime]
    entering_returned: bool = False

    @property
    def state(self) -> LoanState:
        return state_of(self.picked_up_at, self.returned_at)

    def apply(self, loan: KeyLoan) -> None:
        loan.picked_up_at = self.picked_up_at
        loan.returned_at = self.returned_at
        loan.available_to_next_tenant_from = self.available_to_next_tenant_from


def _invalid(reason: str, field: str) -> Err:
    return Err(ValidationError(reason, {"field": WIRE_NAMES[field]}))


def plan_transition(loan: Optional[KeyLoan], changes: Mapping[str, Any]) -> Result[LifecycleChange]:
    """
    Work out the lifecycle timestamps after applying ``changes``.

    ``changes`` holds only the fields the caller supplied (a value of None
    means "clear it"). ``loan`` is None when a new loan is being created.
    """
    current = {name: getattr(loan, name) if loan is not None else None for name in LIFECYCLE_FIELDS}
    target = {name: changes[name] if name in changes else current[name] for name in LIFECYCLE_FIELDS}

    picked_up_at = target[PICKED_UP_AT]
    returned_at = target[RETURNED_AT]
    available_from = target[AVAILABLE_FROM]

    if loan is None and returned_at is not None:
        return _invalid("A new loan cannot be created as already returned", RETURNED_AT)

    already_returned = current[RETURNED_AT] is not None
    if already_returned:
        if picked_up_at != current[PICKED_UP_AT]:
            return _invalid("Returned loans are final; pickedUpAt cannot change", PICKED_UP_AT)
        if returned_at != current[RETURNED_AT]:
            return _invalid("Returned loans are final; returnedAt cannot change", RETURNED_AT)

    if current[PICKED_UP_AT] is not None and picked_up_at is None:
        return _invalid("pickedUpAt cannot be cleared once the keys were handed over", PICKED_UP_AT)

    if returned_at is not None:
        if picked_up_at is None:
            return _invalid("returnedAt requires pickedUpAt", RETURNED_AT)
        if returned_at < picked_up_at:
            return _invalid("returnedAt cannot be earlier than pickedUpAt", RETURNED_AT)
        if available_from is None:
            # Keys are available again immediately
            available_from = returned_at
        elif available_from < returned_at:
            return _invalid("availableToNextTenantFrom cannot be earlier than returnedAt", AVAILABLE_FROM)
    elif available_from is not None:
        return _invalid("availableToNextTenantFrom can only be set on a returned loan", AVAILABLE_FROM)

    return Ok(
        LifecycleChange(
            picked_up_at=picked_up_at,
            returned_at=returned_at,
            available_to_next_tenant_from=available_from,
            entering_returned=not already_returned and returned_at is not None,
        )
    )


def activate_loan(loan_id: int, actor: Optional[str] = None) -> Result[dict]:
    """
    Record the hand-over of a loan's keys.

    Sets pickedUpAt to now and completes the open key events (flex cuts,
    re-orders) for the loan's keys. Activating a loan that was already picked
    up changes nothing.
    """
    loan = db.session.get(KeyLoan, loan_id)
    if loan is None:
        return Err(NotFoundError(f"Key loan {loan_id} not found", {"id": loan_id}))

    if loan.picked_up_at is not None:
        current_app.logger.info("Key loan %s already activated, skipping", loan_id)
        return Ok({"loan": loan, "activated": False, "keyEventsCompleted": 0})

    try:
        loan.picked_up_at = utc_now()
        loan.updated_by = actor
        completed = complete_open_events(loan.key_ids)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Activating key loan %s failed", loan_id)
        return Err(InternalError("Could not activate key loan", {"id": loan_id}))

    current_app.logger.info("Key loan %s activated, %s key events completed", loan_id, completed)
    return Ok({"loan": loan, "activated": True, "keyEventsCompleted": completed})
