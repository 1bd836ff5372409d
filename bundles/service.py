from typing import Any, Dict, List, Mapping, Optional

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from inventory.details import find_missing_key_ids
from utilities.database import db, KeyBundle, KeyBundleKey, utc_now
from utilities.results import ConflictError, Err, InternalError, NotFoundError, Ok, Result, ValidationError


def get_bundle(bundle_id: int) -> Result[KeyBundle]:
    bundle = db.session.get(KeyBundle, bundle_id)
    if bundle is None:
        return Err(NotFoundError(f"Key bundle {bundle_id} not found", {"id": bundle_id}))
    return Ok(bundle)


def bundles_for_key(key_id: int) -> List[KeyBundle]:
    return (
        db.session.query(KeyBundle)
        .options(selectinload(KeyBundle.key_links))
        .filter(KeyBundle.id.in_(select(KeyBundleKey.key_bundle_id).where(KeyBundleKey.key_id == key_id)))
        .order_by(KeyBundle.name.asc())
        .all()
    )


def _name_taken(name: str, exclude_id: Optional[int] = None) -> bool:
    query = db.session.query(KeyBundle.id).filter(db.func.lower(KeyBundle.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(KeyBundle.id != exclude_id)
    return query.first() is not None


def _duplicate(name: str) -> Err:
    return Err(ConflictError(f"A bundle named '{name}' already exists", {"field": "name"}))


def save_bundle(bundle_id: Optional[int], fields: Mapping[str, Any]) -> Result[KeyBundle]:
    """Create (bundle_id None) or update a bundle. ``fields`` holds name, description and key_ids."""
    if bundle_id is None:
        bundle = KeyBundle()
    else:
        found = get_bundle(bundle_id)
        if not found.ok:
            return found
        bundle = found.value

    if bundle_id is None or "name" in fields:
        name = fields.get("name")
        if not name:
            return Err(ValidationError("name is required", {"field": "name"}))
        if _name_taken(name, exclude_id=bundle_id):
            return _duplicate(name)
        bundle.name = name
    if "description" in fields:
        bundle.description = fields["description"]

    key_ids = fields.get("key_ids")
    if key_ids is not None:
        missing = find_missing_key_ids(key_ids)
        if missing:
            return Err(ValidationError("Unknown key ids", {"missingKeys": missing}))
        wanted = set(key_ids)
        for link in list(bundle.key_links):
            if link.key_id not in wanted:
                bundle.key_links.remove(link)
        present = {link.key_id for link in bundle.key_links}
        for key_id in sorted(wanted - present):
            bundle.key_links.append(KeyBundleKey(key_id=key_id))

    bundle.updated_at = utc_now()
    db.session.add(bundle)
    try:
        db.session.commit()
    except IntegrityError:
        # Unique name lost to a concurrent insert
        db.session.rollback()
        return _duplicate(fields.get("name") or "")
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Saving key bundle %s failed", bundle_id or fields.get("name"))
        return Err(InternalError("Could not save key bundle"))
    return Ok(bundle)


def delete_bundle(bundle_id: int) -> Result[Dict[str, Any]]:
    found = get_bundle(bundle_id)
    if not found.ok:
        return found
    bundle = found.value
    snapshot = bundle.to_dict()
    try:
        db.session.delete(bundle)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Deleting key bundle %s failed", bundle_id)
        return Err(InternalError("Could not delete key bundle", {"id": bundle_id}))
    return Ok(snapshot)
