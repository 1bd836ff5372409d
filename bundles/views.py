# bundles/views.py
from flask import Blueprint, request
from flask_login import login_required, current_user

from bundles.aggregator import bundles_with_loaned_keys, details_with_loan_status
from bundles.service import bundles_for_key, delete_bundle, get_bundle, save_bundle
from search import BUNDLE_SEARCH, list_resource, search_resource
from utilities import payloads
from utilities.audit import record_audit
from utilities.database import KeyBundle
from utilities.payloads import PayloadError
from utilities.responses import content_response, error_response, page_response, result_response
from utilities.results import ValidationError

bundles_bp = Blueprint("bundles", __name__)


def _bundle_fields(payload) -> dict:
    fields = {}
    if "name" in payload:
        fields["name"] = payloads.text(payload, "name")
    if "description" in payload:
        fields["description"] = payloads.text(payload, "description", max_length=2000)
    if "keys" in payload:
        fields["key_ids"] = payloads.id_list(payload, "keys")
    return fields


def _serialize(bundle: KeyBundle) -> dict:
    return bundle.to_dict()


@bundles_bp.route("", methods=["GET"])
@login_required
def list_bundles():
    return page_response(list_resource(BUNDLE_SEARCH, request.args), _serialize)


@bundles_bp.route("/search", methods=["GET"])
@login_required
def search_bundles():
    return page_response(search_resource(BUNDLE_SEARCH, request.args), _serialize)


@bundles_bp.route("/<int:bundle_id>", methods=["GET"])
@login_required
def bundle_detail(bundle_id: int):
    return result_response(get_bundle(bundle_id), _serialize)


@bundles_bp.route("/<int:bundle_id>/keys-with-loan-status", methods=["GET"])
@login_required
def keys_with_loan_status(bundle_id: int):
    result = details_with_loan_status(
        bundle_id,
        include_loans=payloads.flag(request.args.get("includeLoans")),
        include_events=payloads.flag(request.args.get("includeEvents")),
        include_key_system=payloads.flag(request.args.get("includeKeySystem")),
    )
    return result_response(result)


@bundles_bp.route("/by-key/<int:key_id>", methods=["GET"])
@login_required
def bundles_containing_key(key_id: int):
    return content_response([bundle.to_dict() for bundle in bundles_for_key(key_id)])


@bundles_bp.route("/by-contact/<contact>", methods=["GET"])
@login_required
def bundles_for_contact(contact: str):
    return content_response(bundles_with_loaned_keys(contact))


@bundles_bp.route("", methods=["POST"])
@login_required
def create_bundle():
    try:
        fields = _bundle_fields(payloads.json_object(request))
    except PayloadError as exc:
        return error_response(ValidationError(str(exc), {"field": exc.field}))

    result = save_bundle(None, fields)
    if not result.ok:
        return error_response(result.error)

    bundle = result.value
    record_audit(
        "key_bundle_created",
        user=current_user,
        target=bundle,
        summary=f"Created bundle {bundle.name}",
        meta={"keys": bundle.key_ids},
    )
    return content_response(bundle.to_dict(), 201)


@bundles_bp.route("/<int:bundle_id>", methods=["PUT"])
@login_required
def edit_bundle(bundle_id: int):
    try:
        fields = _bundle_fields(payloads.json_object(request))
    except PayloadError as exc:
        return error_response(ValidationError(str(exc), {"field": exc.field}))

    result = save_bundle(bundle_id, fields)
    if not result.ok:
        return error_response(result.error)

    bundle = result.value
    record_audit(
        "key_bundle_updated",
        user=current_user,
        target=bundle,
        summary=f"Updated bundle {bundle.name}",
        meta={"fields": sorted(fields), "keys": bundle.key_ids},
    )
    return content_response(bundle.to_dict())


@bundles_bp.route("/<int:bundle_id>", methods=["DELETE"])
@login_required
def remove_bundle(bundle_id: int):
    result = delete_bundle(bundle_id)
    if not result.ok:
        return error_response(result.error)

    record_audit(
        "key_bundle_deleted",
        user=current_user,
        target_type="KeyBundle",
        target_id=bundle_id,
        summary=f"Deleted bundle {result.value['name']}",
    )
    return content_response(result.value)
