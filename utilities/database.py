# utilities/database.py
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

db = SQLAlchemy()

KEY_TYPES = ["HN", "FS", "MV", "LGH", "PB", "GAR", "LOK", "HL", "FÖR", "SOP", "ÖVR"]
KEY_SYSTEM_TYPES = ["MECHANICAL", "ELECTRONIC", "HYBRID"]
LOAN_TYPES = ["TENANT", "MAINTENANCE"]
KEY_EVENT_TYPES = ["FLEX", "ORDER", "LOST"]
KEY_EVENT_STATUSES = ["ORDERED", "RECEIVED", "DONE"]
NON_DELETABLE_KEY_TYPES = ["HN", "FS"]

# Integer columns are bound as signed 64-bit values
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def fits_int64(value: int) -> bool:
    return INT64_MIN <= value <= INT64_MAX


def utc_now() -> datetime:
    """Return a naive UTC datetime without relying on deprecated utcnow()."""
    return datetime.now(UTC).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class KeySystem(db.Model):
    __tablename__ = "key_systems"

    id = db.Column(db.Integer, primary_key=True)
    system_code = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    manufacturer = db.Column(db.String(255), nullable=True)
    type = db.Column(db.String(20), nullable=False, default="MECHANICAL")  # MECHANICAL|ELECTRONIC|HYBRID
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    keys = db.relationship("Key", back_populates="key_system")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "systemCode": self.system_code,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "type": self.type,
            "isActive": self.is_active,
            "description": self.description,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class Key(db.Model):
    __tablename__ = "keys"

    id = db.Column(db.Integer, primary_key=True)
    key_name = db.Column(db.String(120), nullable=False, index=True)
    key_sequence_number = db.Column(db.Integer, nullable=True)
    flex_number = db.Column(db.Integer, nullable=True)
    key_type = db.Column(db.String(10), nullable=False)  # HN | FS | LGH | ...
    rental_object_code = db.Column(db.String(50), nullable=True, index=True)
    key_system_id = db.Column(db.Integer, db.ForeignKey("key_systems.id"), nullable=True, index=True)
    disposed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    key_system = db.relationship("KeySystem", back_populates="keys")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "keyName": self.key_name,
            "keySequenceNumber": self.key_sequence_number,
            "flexNumber": self.flex_number,
            "keyType": self.key_type,
            "rentalObjectCode": self.rental_object_code,
            "keySystemId": self.key_system_id,
            "disposed": self.disposed,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class KeyLoan(db.Model):
    """A set of keys (and access cards) handed to one tenant or contractor"""
    __tablename__ = "key_loans"

    id = db.Column(db.Integer, primary_key=True)
    loan_type = db.Column(db.String(20), nullable=False, default="TENANT")  # TENANT|MAINTENANCE
    contact = db.Column(db.String(255), nullable=False, index=True)
    contact2 = db.Column(db.String(255), nullable=True, index=True)
    description = db.Column(db.Text, nullable=True)

    # Lifecycle: NULL picked_up_at = not handed over yet, NULL returned_at = outstanding
    picked_up_at = db.Column(db.DateTime, nullable=True)
    returned_at = db.Column(db.DateTime, nullable=True, index=True)
    available_to_next_tenant_from = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)
    created_by = db.Column(db.String(255), nullable=True)
    updated_by = db.Column(db.String(255), nullable=True)

    key_links = db.relationship("KeyLoanKey", back_populates="loan", cascade="all, delete-orphan")
    card_links = db.relationship("KeyLoanCard", back_populates="loan", cascade="all, delete-orphan")
    key_claims = db.relationship("ActiveKeyClaim", back_populates="loan", cascade="all, delete-orphan")
    card_claims = db.relationship("ActiveCardClaim", back_populates="loan", cascade="all, delete-orphan")

    @property
    def key_ids(self) -> List[int]:
        return sorted(link.key_id for link in self.key_links)

    @property
    def card_ids(self) -> List[str]:
        return sorted(link.card_id for link in self.card_links)

    @property
    def state(self) -> str:
        from loans.lifecycle import state_of

        return state_of(self.picked_up_at, self.returned_at).value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "keys": self.key_ids,
            "keyCards": self.card_ids,
            "loanType": self.loan_type,
            "contact": self.contact,
            "contact2": self.contact2,
            "description": self.description,
            "state": self.state,
            "pickedUpAt": _iso(self.picked_up_at),
            "returnedAt": _iso(self.returned_at),
            "availableToNextTenantFrom": _iso(self.available_to_next_tenant_from),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "createdBy": self.created_by,
            "updatedBy": self.updated_by,
        }


class KeyLoanKey(db.Model):
    __tablename__ = "key_loan_keys"

    key_loan_id = db.Column(db.Integer, db.ForeignKey("key_loans.id", ondelete="CASCADE"), primary_key=True)
    key_id = db.Column(db.Integer, db.ForeignKey("keys.id"), primary_key=True, index=True)

    loan = db.relationship("KeyLoan", back_populates="key_links")
    key = db.relationship("Key")


class KeyLoanCard(db.Model):
    __tablename__ = "key_loan_cards"

    key_loan_id = db.Column(db.Integer, db.ForeignKey("key_loans.id", ondelete="CASCADE"), primary_key=True)
    # Cards live in the external access-control system; only the identifier is kept
    card_id = db.Column(db.String(100), primary_key=True, index=True)

    loan = db.relationship("KeyLoan", back_populates="card_links")


class ActiveKeyClaim(db.Model):
    """One row per key held by an outstanding loan. The primary key is the reservation guard."""
    __tablename__ = "active_key_claims"

    key_id = db.Column(db.Integer, db.ForeignKey("keys.id"), primary_key=True)
    key_loan_id = db.Column(db.Integer, db.ForeignKey("key_loans.id", ondelete="CASCADE"), nullable=False, index=True)

    loan = db.relationship("KeyLoan", back_populates="key_claims")


class ActiveCardClaim(db.Model):
    __tablename__ = "active_card_claims"

    card_id = db.Column(db.String(100), primary_key=True)
    key_loan_id = db.Column(db.Integer, db.ForeignKey("key_loans.id", ondelete="CASCADE"), nullable=False, index=True)

    loan = db.relationship("KeyLoan", back_populates="card_claims")


class KeyBundle(db.Model):
    __tablename__ = "key_bundles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    key_links = db.relationship("KeyBundleKey", back_populates="bundle", cascade="all, delete-orphan")

    @property
    def key_ids(self) -> List[int]:
        return sorted(link.key_id for link in self.key_links)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "keys": self.key_ids,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class KeyBundleKey(db.Model):
    __tablename__ = "key_bundle_keys"

    key_bundle_id = db.Column(db.Integer, db.ForeignKey("key_bundles.id", ondelete="CASCADE"), primary_key=True)
    key_id = db.Column(db.Integer, db.ForeignKey("keys.id"), primary_key=True, index=True)

    bundle = db.relationship("KeyBundle", back_populates="key_links")


class KeyEvent(db.Model):
    """Side process on a set of keys: flex cutting, re-ordering or a reported loss"""
    __tablename__ = "key_events"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)  # FLEX|ORDER|LOST
    status = db.Column(db.String(20), nullable=False, default="ORDERED")  # ORDERED|RECEIVED|DONE
    work_order_id = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    key_links = db.relationship("KeyEventKey", back_populates="event", cascade="all, delete-orphan")

    @property
    def key_ids(self) -> List[int]:
        return sorted(link.key_id for link in self.key_links)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "keys": self.key_ids,
            "type": self.type,
            "status": self.status,
            "workOrderId": self.work_order_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class KeyEventKey(db.Model):
    __tablename__ = "key_event_keys"

    key_event_id = db.Column(db.Integer, db.ForeignKey("key_events.id", ondelete="CASCADE"), primary_key=True)
    key_id = db.Column(db.Integer, db.ForeignKey("keys.id"), primary_key=True, index=True)

    event = db.relationship("KeyEvent", back_populates="key_links")


class KeyNote(db.Model):
    """Free-text note about the keys of one rental object"""
    __tablename__ = "key_notes"

    id = db.Column(db.Integer, primary_key=True)
    rental_object_code = db.Column(db.String(50), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rentalObjectCode": self.rental_object_code,
            "description": self.description,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    # Actor name as forwarded by the gateway
    user_name = db.Column(db.String(255), nullable=True, index=True)
    action = db.Column(db.String(120), nullable=False)
    target_type = db.Column(db.String(120), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    summary = db.Column(db.String(255), nullable=True)
    meta = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "userName": self.user_name,
            "action": self.action,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "summary": self.summary,
            "meta": self.meta,
        }


def log_activity(
    action: str,
    *,
    user: Optional[Any] = None,
    target: Optional[Any] = None,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    summary: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    commit: bool = False,
) -> ActivityLog:
    """Persist a structured audit trail entry."""
    entry = ActivityLog(
        action=action,
        user_name=_extract_name(user),
        target_type=target_type or _extract_target_type(target),
        target_id=target_id or _extract_id(target),
        summary=summary[:255] if summary else None,
        meta=meta or None,
    )
    db.session.add(entry)

    if commit:
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    return entry

def _extract_id(candidate: Optional[Any]) -> Optional[int]:
    if candidate is None:
        return None
    if isinstance(candidate, int):
        return candidate
    return getattr(candidate, "id", None)

def _extract_name(candidate: Optional[Any]) -> Optional[str]:
    if candidate is None:
        return None
    if isinstance(candidate, str):
        return candidate
    return getattr(candidate, "name", None)

def _extract_target_type(target: Optional[Any]) -> Optional[str]:
    if target is None:
        return None
    return target.__class__.__name__
