"""
Key events: flex cutting, re-orders and reported losses.

Statuses only move forward (ORDERED -> RECEIVED -> DONE). Events are not
subject to the loan reservation rules.
"""

from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from inventory.details import find_missing_key_ids
from search.pagination import Page, PageRequest
from utilities.database import db, KeyEvent, KeyEventKey, KEY_EVENT_STATUSES, KEY_EVENT_TYPES
from utilities.results import Err, InternalError, NotFoundError, Ok, Result, ValidationError

STATUS_RANK = {status: rank for rank, status in enumerate(KEY_EVENT_STATUSES)}
OPEN_STATUSES = ("ORDERED", "RECEIVED")
DONE = "DONE"


def complete_open_events(key_ids: Iterable[int]) -> int:
    """Mark open events touching any of the keys as DONE. Caller commits."""
    ids = sorted(set(key_ids))
    if not ids:
        return 0
    events = (
        db.session.query(KeyEvent)
        .join(KeyEventKey, KeyEventKey.key_event_id == KeyEvent.id)
        .filter(KeyEventKey.key_id.in_(ids), KeyEvent.status.in_(OPEN_STATUSES))
        .distinct()
        .all()
    )
    for event in events:
        event.status = DONE
    return len(events)


def get_event(event_id: int) -> Result[KeyEvent]:
    event = db.session.get(KeyEvent, event_id)
    if event is None:
        return Err(NotFoundError(f"Key event {event_id} not found", {"id": event_id}))
    return Ok(event)


def list_events(page_request: PageRequest) -> Page:
    total = db.session.query(KeyEvent).count()
    events = (
        db.session.query(KeyEvent)
        .options(selectinload(KeyEvent.key_links))
        .order_by(KeyEvent.created_at.desc(), KeyEvent.id.desc())
        .limit(page_request.limit)
        .offset(page_request.offset)
        .all()
    )
    return Page(page=page_request.page, limit=page_request.limit, total=total, content=events)


def events_for_key(key_id: int) -> List[KeyEvent]:
    return (
        db.session.query(KeyEvent)
        .join(KeyEventKey, KeyEventKey.key_event_id == KeyEvent.id)
        .options(selectinload(KeyEvent.key_links))
        .filter(KeyEventKey.key_id == key_id)
        .order_by(KeyEvent.created_at.desc(), KeyEvent.id.desc())
        .all()
    )


def create_event(
    key_ids: List[int],
    event_type: Optional[str],
    status: Optional[str] = None,
    work_order_id: Optional[str] = None,
) -> Result[KeyEvent]:
    if not key_ids:
        return Err(ValidationError("At least one key is required", {"field": "keys"}))
    if event_type not in KEY_EVENT_TYPES:
        return Err(ValidationError(f"type must be one of {', '.join(KEY_EVENT_TYPES)}", {"field": "type"}))
    status = status or "ORDERED"
    if status not in STATUS_RANK:
        return Err(ValidationError(f"status must be one of {', '.join(KEY_EVENT_STATUSES)}", {"field": "status"}))

    missing = find_missing_key_ids(key_ids)
    if missing:
        return Err(ValidationError("Unknown key ids", {"missingKeys": missing}))

    event = KeyEvent(type=event_type, status=status, work_order_id=work_order_id)
    event.key_links = [KeyEventKey(key_id=key_id) for key_id in sorted(set(key_ids))]
    db.session.add(event)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Creating %s key event for keys %s failed", event_type, key_ids)
        return Err(InternalError("Could not create key event"))
    return Ok(event)


def update_event(event_id: int, status: Optional[str] = None, work_order_id: Optional[str] = None) -> Result[KeyEvent]:
    found = get_event(event_id)
    if not found.ok:
        return found
    event = found.value

    if status is not None:
        if status not in STATUS_RANK:
            return Err(ValidationError(f"status must be one of {', '.join(KEY_EVENT_STATUSES)}", {"field": "status"}))
        if STATUS_RANK[status] < STATUS_RANK[event.status]:
            return Err(
                ValidationError(
                    f"Status cannot move from {event.status} back to {status}",
                    {"field": "status", "current": event.status},
                )
            )
        event.status = status
    if work_order_id is not None:
        event.work_order_id = work_order_id

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Updating key event %s failed", event_id)
        return Err(InternalError("Could not update key event"))
    return Ok(event)
