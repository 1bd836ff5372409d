# loans/views.py
from flask import Blueprint, request
from flask_login import login_required, current_user

from loans.lifecycle import activate_loan
from loans.lookups import loan_details, loans_by_contact, loans_for_bundle, loans_for_keys
from loans.reservations import delete_loan, reserve, return_loan, update_loan
from search import LOAN_SEARCH, list_resource, search_resource
from utilities import payloads
from utilities.audit import record_audit
from utilities.database import KeyLoan, LOAN_TYPES
from utilities.payloads import PayloadError
from utilities.responses import content_response, error_response, page_response, result_response
from utilities.results import ValidationError

loans_bp = Blueprint("loans", __name__)

# wire name -> (model attribute, reader)
LOAN_PAYLOAD_FIELDS = {
    "loanType": ("loan_type", lambda p, n: payloads.choice(p, n, LOAN_TYPES)),
    "contact": ("contact", payloads.text),
    "contact2": ("contact2", payloads.text),
    "description": ("description", lambda p, n: payloads.text(p, n, max_length=2000)),
    "pickedUpAt": ("picked_up_at", payloads.timestamp),
    "returnedAt": ("returned_at", payloads.timestamp),
    "availableToNextTenantFrom": ("available_to_next_tenant_from", payloads.timestamp),
    "keys": ("key_ids", payloads.id_list),
    "keyCards": ("card_ids", payloads.string_list),
}


# --- Helpers ---
def _actor() -> str:
    return current_user.name


def _loan_fields(payload) -> dict:
    """Only the fields present in the body; an explicit null clears the field."""
    fields = {}
    for wire_name, (attribute, reader) in LOAN_PAYLOAD_FIELDS.items():
        if wire_name in payload:
            fields[attribute] = reader(payload, wire_name)
    return fields


def _payload_error(exc: PayloadError):
    return error_response(ValidationError(str(exc), {"field": exc.field}))


def _lookup_filters():
    loan_type = (request.args.get("loanType") or "").strip() or None
    if loan_type is not None and loan_type not in LOAN_TYPES:
        raise PayloadError("loanType", f"loanType must be one of {', '.join(LOAN_TYPES)}")
    raw_returned = (request.args.get("returned") or "").strip().lower()
    if not raw_returned:
        returned = None
    elif raw_returned in ("true", "1"):
        returned = True
    elif raw_returned in ("false", "0"):
        returned = False
    else:
        raise PayloadError("returned", "returned must be true or false")
    return loan_type, returned


def _serialize(loan: KeyLoan) -> dict:
    return loan.to_dict()


def _audit(action: str, loan_id: int, summary: str, meta=None) -> None:
    record_audit(action, user=current_user, target_type="KeyLoan", target_id=loan_id, summary=summary, meta=meta)


# --- Listing + search ---
@loans_bp.route("", methods=["GET"])
@login_required
def list_loans():
    return page_response(list_resource(LOAN_SEARCH, request.args), _serialize)


@loans_bp.route("/search", methods=["GET"])
@login_required
def search_loans():
    return page_response(search_resource(LOAN_SEARCH, request.args), _serialize)


@loans_bp.route("/<int:loan_id>", methods=["GET"])
@login_required
def get_loan(loan_id: int):
    result = loan_details(
        loan_id,
        include_key_system=payloads.flag(request.args.get("includeKeySystem")),
        include_cards=payloads.flag(request.args.get("includeCards")),
        include_loans=payloads.flag(request.args.get("includeLoans")),
        include_events=payloads.flag(request.args.get("includeEvents")),
    )
    return result_response(result)


# --- Mutations ---
@loans_bp.route("", methods=["POST"])
@login_required
def create_loan():
    try:
        fields = _loan_fields(payloads.json_object(request))
    except PayloadError as exc:
        return _payload_error(exc)

    key_ids = fields.pop("key_ids", None) or []
    card_ids = fields.pop("card_ids", None) or []
    result = reserve(key_ids, card_ids, fields, actor=_actor())
    if not result.ok:
        return error_response(result.error)

    loan = result.value
    _audit(
        "key_loan_created",
        loan.id,
        f"Loaned {len(loan.key_ids)} key(s) to {loan.contact}",
        {"keys": loan.key_ids, "keyCards": loan.card_ids, "loanType": loan.loan_type},
    )
    return content_response(loan.to_dict(), 201)


@loans_bp.route("/<int:loan_id>", methods=["PUT"])
@login_required
def edit_loan(loan_id: int):
    try:
        patch = _loan_fields(payloads.json_object(request))
    except PayloadError as exc:
        return _payload_error(exc)

    result = update_loan(loan_id, patch, actor=_actor())
    if not result.ok:
        return error_response(result.error)

    loan = result.value
    _audit(
        "key_loan_updated",
        loan.id,
        f"Updated key loan for {loan.contact}",
        {"fields": sorted(patch), "state": loan.state},
    )
    return content_response(loan.to_dict())


@loans_bp.route("/<int:loan_id>", methods=["DELETE"])
@login_required
def remove_loan(loan_id: int):
    result = delete_loan(loan_id)
    if not result.ok:
        return error_response(result.error)

    snapshot = result.value
    _audit(
        "key_loan_deleted",
        loan_id,
        f"Deleted key loan for {snapshot['contact']}",
        {"keys": snapshot["keys"], "keyCards": snapshot["keyCards"]},
    )
    return content_response(snapshot)


@loans_bp.route("/<int:loan_id>/activate", methods=["POST"])
@login_required
def activate(loan_id: int):
    result = activate_loan(loan_id, actor=_actor())
    if not result.ok:
        return error_response(result.error)

    outcome = result.value
    if outcome["activated"]:
        _audit(
            "key_loan_activated",
            loan_id,
            f"Keys handed over to {outcome['loan'].contact}",
            {"keyEventsCompleted": outcome["keyEventsCompleted"]},
        )
    return content_response(
        {
            "loan": outcome["loan"].to_dict(),
            "activated": outcome["activated"],
            "keyEventsCompleted": outcome["keyEventsCompleted"],
        }
    )


@loans_bp.route("/<int:loan_id>/return", methods=["POST"])
@login_required
def return_keys(loan_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        returned_at = payloads.timestamp(payload, "returnedAt")
        available_from = payloads.timestamp(payload, "availableToNextTenantFrom")
    except PayloadError as exc:
        return _payload_error(exc)

    result = return_loan(loan_id, returned_at, available_from, actor=_actor())
    if not result.ok:
        return error_response(result.error)

    loan = result.value
    _audit(
        "key_loan_returned",
        loan.id,
        f"{len(loan.key_ids)} key(s) returned by {loan.contact}",
        {"keys": loan.key_ids, "availableToNextTenantFrom": loan.to_dict()["availableToNextTenantFrom"]},
    )
    return content_response(loan.to_dict())


# --- Lookups ---
@loans_bp.route("/by-key/<int:key_id>", methods=["GET"])
@login_required
def loans_for_key(key_id: int):
    return content_response([loan.to_dict() for loan in loans_for_keys([key_id])])


@loans_bp.route("/by-contact/<contact>", methods=["GET"])
@login_required
def loans_for_contact(contact: str):
    try:
        loan_type, returned = _lookup_filters()
    except PayloadError as exc:
        return _payload_error(exc)
    loans = loans_by_contact(contact, loan_type=loan_type, returned=returned)
    return content_response([loan.to_dict() for loan in loans])


@loans_bp.route("/by-bundle/<int:bundle_id>", methods=["GET"])
@login_required
def loans_for_bundle_keys(bundle_id: int):
    try:
        loan_type, returned = _lookup_filters()
    except PayloadError as exc:
        return _payload_error(exc)
    result = loans_for_bundle(bundle_id, loan_type=loan_type, returned=returned)
    return result_response(result, lambda loans: [loan.to_dict() for loan in loans])
