from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from utilities.database import (
    db,
    ActiveKeyClaim,
    Key,
    KeyBundleKey,
    KeyEventKey,
    KeyLoanKey,
    KeyNote,
    KeySystem,
    KEY_SYSTEM_TYPES,
    KEY_TYPES,
    NON_DELETABLE_KEY_TYPES,
)
from utilities.results import (
    ConflictError,
    Err,
    ForbiddenError,
    InternalError,
    NotFoundError,
    Ok,
    Result,
    ValidationError,
)

KEY_ATTRIBUTES = (
    "key_name",
    "key_sequence_number",
    "flex_number",
    "key_type",
    "rental_object_code",
    "key_system_id",
    "disposed",
)


def get_key(key_id: int) -> Result[Key]:
    key = db.session.get(Key, key_id)
    if key is None:
        return Err(NotFoundError(f"Key {key_id} not found", {"id": key_id}))
    return Ok(key)


def validate_key_fields(fields: Mapping[str, Any], creating: bool) -> Optional[ValidationError]:
    if creating or "key_name" in fields:
        if not fields.get("key_name"):
            return ValidationError("keyName is required", {"field": "keyName"})
    if creating or "key_type" in fields:
        if fields.get("key_type") not in KEY_TYPES:
            return ValidationError(f"keyType must be one of {', '.join(KEY_TYPES)}", {"field": "keyType"})
    system_id = fields.get("key_system_id")
    if system_id is not None and db.session.get(KeySystem, system_id) is None:
        return ValidationError(f"Key system {system_id} does not exist", {"field": "keySystemId"})
    return None


def _build_key(fields: Mapping[str, Any]) -> Key:
    key = Key(disposed=False)
    for name in KEY_ATTRIBUTES:
        if fields.get(name) is not None:
            setattr(key, name, fields[name])
    return key


def create_key(fields: Mapping[str, Any]) -> Result[Key]:
    invalid = validate_key_fields(fields, creating=True)
    if invalid:
        return Err(invalid)
    key = _build_key(fields)
    db.session.add(key)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Creating key %s failed", fields.get("key_name"))
        return Err(InternalError("Could not create key"))
    return Ok(key)


def create_keys(rows: List[Tuple[int, Mapping[str, Any]]]) -> Result[Tuple[List[Key], List[Dict[str, Any]]]]:
    """
    Create many keys at once.

    ``rows`` are ``(index, fields)`` pairs that already passed payload
    parsing. Invalid rows are reported by index and skipped; the valid ones
    are committed together.
    """
    created: List[Key] = []
    errors: List[Dict[str, Any]] = []
    for index, fields in rows:
        invalid = validate_key_fields(fields, creating=True)
        if invalid:
            errors.append({"index": index, "reason": invalid.reason, **invalid.details})
            continue
        key = _build_key(fields)
        db.session.add(key)
        created.append(key)

    if created:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Bulk creation of %s keys failed", len(created))
            return Err(InternalError("Could not create keys"))
    return Ok((created, errors))


def update_key(key_id: int, fields: Mapping[str, Any]) -> Result[Key]:
    found = get_key(key_id)
    if not found.ok:
        return found
    invalid = validate_key_fields(fields, creating=False)
    if invalid:
        return Err(invalid)

    key = found.value
    for name in KEY_ATTRIBUTES:
        if name in fields:
            if name == "disposed" and fields[name] is None:
                continue
            setattr(key, name, fields[name])
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Updating key %s failed", key_id)
        return Err(InternalError("Could not update key", {"id": key_id}))
    return Ok(key)


def delete_key(key_id: int) -> Result[Dict[str, Any]]:
    """
    Remove a key from the catalogue.

    Master and property keys are never deleted. A key that is on an
    outstanding loan, or that appears in any loan's history, is refused;
    such keys are marked disposed instead. Bundle memberships and event
    links go with the key.
    """
    found = get_key(key_id)
    if not found.ok:
        return found
    key = found.value
    if key.key_type in NON_DELETABLE_KEY_TYPES:
        return Err(
            ForbiddenError(
                "Keys of type Huvudnyckel or Fastighetsnyckel cannot be deleted",
                {"id": key_id, "keyType": key.key_type},
            )
        )

    claim = db.session.get(ActiveKeyClaim, key_id)
    if claim is not None:
        return Err(
            ConflictError(
                "Key is on an outstanding loan",
                {"id": key_id, "conflictingLoans": [claim.key_loan_id]},
            )
        )
    loan_ids = sorted(
        row[0] for row in db.session.query(KeyLoanKey.key_loan_id).filter(KeyLoanKey.key_id == key_id).all()
    )
    if loan_ids:
        return Err(
            ConflictError("Key has loan history; mark it disposed instead", {"id": key_id, "loans": loan_ids})
        )

    snapshot = key.to_dict()
    try:
        db.session.query(KeyBundleKey).filter(KeyBundleKey.key_id == key_id).delete(synchronize_session=False)
        db.session.query(KeyEventKey).filter(KeyEventKey.key_id == key_id).delete(synchronize_session=False)
        db.session.delete(key)
        db.session.commit()
    except IntegrityError:
        # a loan claimed the key after the checks above
        db.session.rollback()
        current_app.logger.warning("Key %s was loaned while being deleted", key_id)
        return Err(ConflictError("Key is on an outstanding loan", {"id": key_id}))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Deleting key %s failed", key_id)
        return Err(InternalError("Could not delete key", {"id": key_id}))
    return Ok(snapshot)


def keys_for_rental_object(rental_object_code: str) -> List[Key]:
    return (
        db.session.query(Key)
        .filter(Key.rental_object_code == rental_object_code)
        .order_by(Key.key_name.asc(), Key.id.asc())
        .all()
    )


def list_key_systems() -> List[KeySystem]:
    return db.session.query(KeySystem).order_by(KeySystem.system_code.asc()).all()


KEY_SYSTEM_ATTRIBUTES = ("system_code", "name", "manufacturer", "type", "is_active", "description")


def get_key_system(system_id: int) -> Result[KeySystem]:
    system = db.session.get(KeySystem, system_id)
    if system is None:
        return Err(NotFoundError(f"Key system {system_id} not found", {"id": system_id}))
    return Ok(system)


def _validate_key_system(fields: Mapping[str, Any], creating: bool) -> Optional[ValidationError]:
    if (creating or "system_code" in fields) and not fields.get("system_code"):
        return ValidationError("systemCode is required", {"field": "systemCode"})
    if (creating or "name" in fields) and not fields.get("name"):
        return ValidationError("name is required", {"field": "name"})
    if fields.get("type") is not None and fields["type"] not in KEY_SYSTEM_TYPES:
        return ValidationError(f"type must be one of {', '.join(KEY_SYSTEM_TYPES)}", {"field": "type"})
    return None


def _duplicate_system_code(system_code: str) -> ConflictError:
    return ConflictError(f"Key system {system_code} already exists", {"field": "systemCode"})


def _system_code_taken(system_code: str, exclude_id: Optional[int] = None) -> bool:
    query = db.session.query(KeySystem.id).filter(KeySystem.system_code == system_code)
    if exclude_id is not None:
        query = query.filter(KeySystem.id != exclude_id)
    return query.first() is not None


def create_key_system(fields: Mapping[str, Any]) -> Result[KeySystem]:
    invalid = _validate_key_system(fields, creating=True)
    if invalid:
        return Err(invalid)
    system_code = fields["system_code"]
    if _system_code_taken(system_code):
        return Err(_duplicate_system_code(system_code))

    system = KeySystem(
        system_code=system_code,
        name=fields["name"],
        manufacturer=fields.get("manufacturer"),
        type=fields.get("type") or "MECHANICAL",
        is_active=fields.get("is_active") if fields.get("is_active") is not None else True,
        description=fields.get("description"),
    )
    db.session.add(system)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Err(_duplicate_system_code(system_code))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Creating key system %s failed", system_code)
        return Err(InternalError("Could not create key system"))
    return Ok(system)


def update_key_system(system_id: int, fields: Mapping[str, Any]) -> Result[KeySystem]:
    found = get_key_system(system_id)
    if not found.ok:
        return found
    invalid = _validate_key_system(fields, creating=False)
    if invalid:
        return Err(invalid)
    system_code = fields.get("system_code")
    if system_code and _system_code_taken(system_code, exclude_id=system_id):
        return Err(_duplicate_system_code(system_code))

    system = found.value
    for name in KEY_SYSTEM_ATTRIBUTES:
        if name in fields:
            # type and isActive keep their value when sent as null
            if name in ("type", "is_active") and fields[name] is None:
                continue
            setattr(system, name, fields[name])
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Err(_duplicate_system_code(system_code))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Updating key system %s failed", system_id)
        return Err(InternalError("Could not update key system", {"id": system_id}))
    return Ok(system)


def delete_key_system(system_id: int) -> Result[Dict[str, Any]]:
    """Delete a key system that no key refers to."""
    found = get_key_system(system_id)
    if not found.ok:
        return found
    key_count = db.session.query(Key.id).filter(Key.key_system_id == system_id).count()
    if key_count:
        return Err(
            ConflictError("Key system still has keys", {"id": system_id, "keyCount": key_count})
        )

    system = found.value
    snapshot = system.to_dict()
    try:
        db.session.delete(system)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Deleting key system %s failed", system_id)
        return Err(InternalError("Could not delete key system", {"id": system_id}))
    return Ok(snapshot)


# --- Key notes ---
def key_notes_for_rental_object(rental_object_code: str) -> List[KeyNote]:
    return (
        db.session.query(KeyNote)
        .filter(KeyNote.rental_object_code == rental_object_code)
        .order_by(KeyNote.id.desc())
        .all()
    )


def get_key_note(note_id: int) -> Result[KeyNote]:
    note = db.session.get(KeyNote, note_id)
    if note is None:
        return Err(NotFoundError(f"Key note {note_id} not found", {"id": note_id}))
    return Ok(note)


def _validate_key_note(fields: Mapping[str, Any], creating: bool) -> Optional[ValidationError]:
    if (creating or "rental_object_code" in fields) and not fields.get("rental_object_code"):
        return ValidationError("rentalObjectCode is required", {"field": "rentalObjectCode"})
    if (creating or "description" in fields) and not fields.get("description"):
        return ValidationError("description is required", {"field": "description"})
    return None


def create_key_note(fields: Mapping[str, Any]) -> Result[KeyNote]:
    invalid = _validate_key_note(fields, creating=True)
    if invalid:
        return Err(invalid)
    note = KeyNote(rental_object_code=fields["rental_object_code"], description=fields["description"])
    db.session.add(note)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Creating key note for %s failed", fields["rental_object_code"])
        return Err(InternalError("Could not create key note"))
    return Ok(note)


def update_key_note(note_id: int, fields: Mapping[str, Any]) -> Result[KeyNote]:
    found = get_key_note(note_id)
    if not found.ok:
        return found
    invalid = _validate_key_note(fields, creating=False)
    if invalid:
        return Err(invalid)

    note = found.value
    for name in ("rental_object_code", "description"):
        if name in fields:
            setattr(note, name, fields[name])
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Updating key note %s failed", note_id)
        return Err(InternalError("Could not update key note", {"id": note_id}))
    return Ok(note)
