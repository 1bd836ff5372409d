from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from utilities.database import db, log_activity


def record_audit(
    action: str,
    *,
    user: Optional[Any] = None,
    target: Optional[Any] = None,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    summary: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Append one audit entry after a mutation has been committed.

    The mutation is already durable at this point, so a failing audit write is
    logged and reported as False instead of failing the request.
    """
    try:
        log_activity(
            action,
            user=user,
            target=target,
            target_type=target_type,
            target_id=target_id,
            summary=summary,
            meta=meta,
            commit=True,
        )
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Audit entry %s for %s %s could not be written",
            action,
            target_type or (target.__class__.__name__ if target is not None else None),
            target_id or getattr(target, "id", None),
        )
        return False
    return True
