# inventory/views.py
from flask import Blueprint, request
from flask_login import login_required, current_user

from inventory.details import key_details
from inventory.service import (
    create_key,
    create_key_note,
    create_key_system,
    create_keys,
    delete_key,
    delete_key_system,
    get_key,
    get_key_note,
    get_key_system,
    key_notes_for_rental_object,
    keys_for_rental_object,
    list_key_systems,
    update_key,
    update_key_note,
    update_key_system,
)
from search import KEY_SEARCH, KEY_SYSTEM_SEARCH, list_resource, search_resource
from utilities import payloads
from utilities.audit import record_audit
from utilities.database import Key, KeySystem, KEY_SYSTEM_TYPES, KEY_TYPES
from utilities.payloads import PayloadError
from utilities.responses import content_response, error_response, page_response
from utilities.results import ValidationError

inventory_bp = Blueprint("inventory", __name__)

KEY_PAYLOAD_FIELDS = {
    "keyName": ("key_name", lambda p, n: payloads.text(p, n, max_length=120)),
    "keySequenceNumber": ("key_sequence_number", payloads.integer),
    "flexNumber": ("flex_number", payloads.integer),
    "keyType": ("key_type", lambda p, n: payloads.choice(p, n, KEY_TYPES)),
    "rentalObjectCode": ("rental_object_code", lambda p, n: payloads.text(p, n, max_length=50)),
    "keySystemId": ("key_system_id", payloads.integer),
    "disposed": ("disposed", payloads.boolean),
}

KEY_SYSTEM_PAYLOAD_FIELDS = {
    "systemCode": ("system_code", lambda p, n: payloads.text(p, n, max_length=50)),
    "name": ("name", payloads.text),
    "manufacturer": ("manufacturer", payloads.text),
    "type": ("type", lambda p, n: payloads.choice(p, n, KEY_SYSTEM_TYPES)),
    "isActive": ("is_active", payloads.boolean),
    "description": ("description", lambda p, n: payloads.text(p, n, max_length=2000)),
}

KEY_NOTE_PAYLOAD_FIELDS = {
    "rentalObjectCode": ("rental_object_code", lambda p, n: payloads.text(p, n, max_length=50)),
    "description": ("description", lambda p, n: payloads.text(p, n, max_length=10000)),
}


# --- Helpers ---
def _read_fields(payload, readers=KEY_PAYLOAD_FIELDS) -> dict:
    """Only the fields present in the body, so PUT can be partial."""
    fields = {}
    for wire_name, (attribute, reader) in readers.items():
        if wire_name in payload:
            fields[attribute] = reader(payload, wire_name)
    return fields


def _payload_error(exc: PayloadError):
    return error_response(ValidationError(str(exc), {"field": exc.field}))


def _serialize(key: Key) -> dict:
    return key.to_dict()


def _include_flags() -> dict:
    return {
        "include_key_system": payloads.flag(request.args.get("includeKeySystem")),
        "include_loans": payloads.flag(request.args.get("includeLoans")),
        "include_events": payloads.flag(request.args.get("includeEvents")),
    }


# --- Keys ---
@inventory_bp.route("/keys", methods=["GET"])
@login_required
def list_keys():
    return page_response(list_resource(KEY_SEARCH, request.args), _serialize)


@inventory_bp.route("/keys/search", methods=["GET"])
@login_required
def search_keys():
    return page_response(search_resource(KEY_SEARCH, request.args), _serialize)


@inventory_bp.route("/keys/<int:key_id>", methods=["GET"])
@login_required
def key_detail(key_id: int):
    found = get_key(key_id)
    if not found.ok:
        return error_response(found.error)
    detail = key_details([found.value], **_include_flags())[0]
    return content_response(detail)


@inventory_bp.route("/keys", methods=["POST"])
@login_required
def add_key():
    try:
        fields = _read_fields(payloads.json_object(request))
    except PayloadError as exc:
        return _payload_error(exc)

    result = create_key(fields)
    if not result.ok:
        return error_response(result.error)

    key = result.value
    record_audit("key_created", user=current_user, target=key, summary=f"Created key {key.key_name}")
    return content_response(key.to_dict(), 201)


@inventory_bp.route("/keys/bulk", methods=["POST"])
@login_required
def add_keys_bulk():
    """201 when every row was created, 207 when some were, 400 when none were."""
    try:
        body = payloads.json_object(request)
    except PayloadError as exc:
        return _payload_error(exc)
    raw_rows = body.get("keys")
    if not isinstance(raw_rows, list) or not raw_rows:
        return error_response(ValidationError("keys must be a non-empty list", {"field": "keys"}))

    rows, errors = [], []
    for index, raw in enumerate(raw_rows):
        if not isinstance(raw, dict):
            errors.append({"index": index, "reason": "Each key must be a JSON object"})
            continue
        try:
            rows.append((index, _read_fields(raw)))
        except PayloadError as exc:
            errors.append({"index": index, "reason": str(exc), "field": exc.field})

    result = create_keys(rows)
    if not result.ok:
        return error_response(result.error)

    created, row_errors = result.value
    errors = sorted(errors + row_errors, key=lambda error: error["index"])
    if not created:
        return error_response(ValidationError("No keys were created", {"errors": errors}))

    record_audit(
        "keys_bulk_created",
        user=current_user,
        target_type="Key",
        summary=f"Created {len(created)} of {len(raw_rows)} keys",
        meta={"keys": [key.id for key in created], "failed": len(errors)},
    )
    status = 201 if not errors else 207
    return content_response({"created": [key.to_dict() for key in created], "errors": errors}, status)


@inventory_bp.route("/keys/<int:key_id>", methods=["PUT"])
@login_required
def edit_key(key_id: int):
    try:
        fields = _read_fields(payloads.json_object(request))
    except PayloadError as exc:
        return _payload_error(exc)

    result = update_key(key_id, fields)
    if not result.ok:
        return error_response(result.error)

    key = result.value
    record_audit(
        "key_updated",
        user=current_user,
        target=key,
        summary=f"Updated key {key.key_name}",
        meta={"fields": sorted(fields)},
    )
    return content_response(key.to_dict())


@inventory_bp.route("/keys/<int:key_id>", methods=["DELETE"])
@login_required
def remove_key(key_id: int):
    result = delete_key(key_id)
    if not result.ok:
        return error_response(result.error)

    record_audit(
        "key_deleted",
        user=current_user,
        target_type="Key",
        target_id=key_id,
        summary=f"Deleted key {result.value['keyName']}",
    )
    return content_response(result.value)


@inventory_bp.route("/keys/by-rental-object/<string:rental_object_code>", methods=["GET"])
@login_required
def keys_by_rental_object(rental_object_code: str):
    keys = keys_for_rental_object(rental_object_code)
    return content_response(key_details(keys, **_include_flags()))


# --- Key systems ---
@inventory_bp.route("/key-systems", methods=["GET"])
@login_required
def key_systems():
    return content_response([system.to_dict() for system in list_key_systems()])


@inventory_bp.route("/key-systems/search", methods=["GET"])
@login_required
def search_key_systems():
    return page_response(search_resource(KEY_SYSTEM_SEARCH, request.args), KeySystem.to_dict)


@inventory_bp.route("/key-systems/<int:system_id>", methods=["GET"])
@login_required
def key_system_detail(system_id: int):
    found = get_key_system(system_id)
    if not found.ok:
        return error_response(found.error)
    return content_response(found.value.to_dict())


@inventory_bp.route("/key-systems", methods=["POST"])
@login_required
def add_key_system():
    try:
        fields = _read_fields(payloads.json_object(request), KEY_SYSTEM_PAYLOAD_FIELDS)
    except PayloadError as exc:
        return _payload_error(exc)

    result = create_key_system(fields)
    if not result.ok:
        return error_response(result.error)

    system = result.value
    record_audit(
        "key_system_created",
        user=current_user,
        target=system,
        summary=f"Created key system {system.system_code}",
    )
    return content_response(system.to_dict(), 201)


@inventory_bp.route("/key-systems/<int:system_id>", methods=["PUT"])
@login_required
def edit_key_system(system_id: int):
    try:
        fields = _read_fields(payloads.json_object(request), KEY_SYSTEM_PAYLOAD_FIELDS)
    except PayloadError as exc:
        return _payload_error(exc)

    result = update_key_system(system_id, fields)
    if not result.ok:
        return error_response(result.error)

    system = result.value
    record_audit(
        "key_system_updated",
        user=current_user,
        target=system,
        summary=f"Updated key system {system.system_code}",
        meta={"fields": sorted(fields)},
    )
    return content_response(system.to_dict())


@inventory_bp.route("/key-systems/<int:system_id>", methods=["DELETE"])
@login_required
def remove_key_system(system_id: int):
    result = delete_key_system(system_id)
    if not result.ok:
        return error_response(result.error)

    record_audit(
        "key_system_deleted",
        user=current_user,
        target_type="KeySystem",
        target_id=system_id,
        summary=f"Deleted key system {result.value['systemCode']}",
    )
    return content_response(result.value)


# --- Key notes ---
@inventory_bp.route("/key-notes/by-rental-object/<string:rental_object_code>", methods=["GET"])
@login_required
def key_notes_by_rental_object(rental_object_code: str):
    notes = key_notes_for_rental_object(rental_object_code)
    return content_response([note.to_dict() for note in notes])


@inventory_bp.route("/key-notes/<int:note_id>", methods=["GET"])
@login_required
def key_note_detail(note_id: int):
    found = get_key_note(note_id)
    if not found.ok:
        return error_response(found.error)
    return content_response(found.value.to_dict())


@inventory_bp.route("/key-notes", methods=["POST"])
@login_required
def add_key_note():
    try:
        fields = _read_fields(payloads.json_object(request), KEY_NOTE_PAYLOAD_FIELDS)
    except PayloadError as exc:
        return _payload_error(exc)

    result = create_key_note(fields)
    if not result.ok:
        return error_response(result.error)

    note = result.value
    record_audit(
        "key_note_created",
        user=current_user,
        target=note,
        summary=f"Added key note for {note.rental_object_code}",
    )
    return content_response(note.to_dict(), 201)


@inventory_bp.route("/key-notes/<int:note_id>", methods=["PUT", "PATCH"])
@login_required
def edit_key_note(note_id: int):
    try:
        fields = _read_fields(payloads.json_object(request), KEY_NOTE_PAYLOAD_FIELDS)
    except PayloadError as exc:
        return _payload_error(exc)

    result = update_key_note(note_id, fields)
    if not result.ok:
        return error_response(result.error)

    note = result.value
    record_audit(
        "key_note_updated",
        user=current_user,
        target=note,
        summary=f"Updated key note for {note.rental_object_code}",
    )
    return content_response(note.to_dict())
