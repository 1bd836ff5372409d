# events/views.py
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required, current_user

from events.service import create_event, events_for_key, get_event, list_events, update_event
from search.pagination import parse_page_request
from utilities import payloads
from utilities.audit import record_audit
from utilities.database import KEY_EVENT_STATUSES, KEY_EVENT_TYPES
from utilities.payloads import PayloadError
from utilities.responses import content_response, error_response, result_response
from utilities.results import ValidationError

events_bp = Blueprint("events", __name__)


def _payload_error(exc: PayloadError):
    return error_response(ValidationError(str(exc), {"field": exc.field}))


@events_bp.route("", methods=["GET"])
@login_required
def list_key_events():
    page_request = parse_page_request(
        request.args,
        default_limit=current_app.config["PAGE_LIMIT_DEFAULT"],
        max_limit=current_app.config["PAGE_LIMIT_MAX"],
    )
    if not page_request.ok:
        return error_response(page_request.error)
    page = list_events(page_request.value)
    return jsonify(page.to_dict(lambda event: event.to_dict())), 200


@events_bp.route("/<int:event_id>", methods=["GET"])
@login_required
def key_event_detail(event_id: int):
    return result_response(get_event(event_id), lambda event: event.to_dict())


@events_bp.route("/by-key/<int:key_id>", methods=["GET"])
@login_required
def key_events_for_key(key_id: int):
    return content_response([event.to_dict() for event in events_for_key(key_id)])


@events_bp.route("", methods=["POST"])
@login_required
def add_key_event():
    try:
        payload = payloads.json_object(request)
        key_ids = payloads.id_list(payload, "keys") or []
        event_type = payloads.choice(payload, "type", KEY_EVENT_TYPES, required=True)
        status = payloads.choice(payload, "status", KEY_EVENT_STATUSES)
        work_order_id = payloads.text(payload, "workOrderId", max_length=100)
    except PayloadError as exc:
        return _payload_error(exc)

    result = create_event(key_ids, event_type, status=status, work_order_id=work_order_id)
    if not result.ok:
        return error_response(result.error)

    event = result.value
    record_audit(
        "key_event_created",
        user=current_user,
        target=event,
        summary=f"{event.type} event for {len(event.key_ids)} key(s)",
        meta={"keys": event.key_ids, "status": event.status},
    )
    return content_response(event.to_dict(), 201)


@events_bp.route("/<int:event_id>", methods=["PUT"])
@login_required
def edit_key_event(event_id: int):
    try:
        payload = payloads.json_object(request)
        status = payloads.choice(payload, "status", KEY_EVENT_STATUSES)
        work_order_id = payloads.text(payload, "workOrderId", max_length=100)
    except PayloadError as exc:
        return _payload_error(exc)

    result = update_event(event_id, status=status, work_order_id=work_order_id)
    if not result.ok:
        return error_response(result.error)

    event = result.value
    record_audit(
        "key_event_updated",
        user=current_user,
        target=event,
        summary=f"{event.type} event is now {event.status}",
    )
    return content_response(event.to_dict())
