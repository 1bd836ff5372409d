"""Map service outcomes onto the JSON envelopes returned by every blueprint."""

from typing import Any, Callable, Optional

from flask import jsonify

from utilities.results import InternalError, Result, ServiceError


def error_response(error: ServiceError):
    if isinstance(error, InternalError):
        # Internal detail stays in the log
        return jsonify({"error": "Internal server error"}), error.status

    body = {"reason": error.reason, "error": error.code}
    body.update(error.details)
    return jsonify(body), error.status


def content_response(content: Any, status: int = 200):
    return jsonify({"content": content}), status


def result_response(result: Result, serializer: Optional[Callable[[Any], Any]] = None, status: int = 200):
    if not result.ok:
        return error_response(result.error)
    value = result.value
    return content_response(serializer(value) if serializer else value, status)


def page_response(result: Result, serializer: Callable[[Any], Any]):
    if not result.ok:
        return error_response(result.error)
    return jsonify(result.value.to_dict(serializer)), 200
