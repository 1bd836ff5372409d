"""Readers for JSON request bodies. Each raises PayloadError naming the offending field."""

from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence

from utilities.database import fits_int64
from utilities.dates import parse_datetime


class PayloadError(ValueError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def text(payload: Mapping[str, Any], name: str, *, max_length: int = 255, required: bool = False) -> Optional[str]:
    value = _clean(payload.get(name))
    if value is None:
        if required:
            raise PayloadError(name, f"{name} is required")
        return None
    if not isinstance(value, str):
        raise PayloadError(name, f"{name} must be a string")
    if len(value) > max_length:
        raise PayloadError(name, f"{name} must be at most {max_length} characters")
    return value


def choice(payload: Mapping[str, Any], name: str, choices: Sequence[str], *, required: bool = False) -> Optional[str]:
    value = text(payload, name, required=required)
    if value is not None and value not in choices:
        raise PayloadError(name, f"{name} must be one of {', '.join(choices)}")
    return value


def integer(payload: Mapping[str, Any], name: str, *, required: bool = False) -> Optional[int]:
    value = _clean(payload.get(name))
    if value is None:
        if required:
            raise PayloadError(name, f"{name} is required")
        return None
    if isinstance(value, bool):
        raise PayloadError(name, f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        raise PayloadError(name, f"{name} must be an integer")
    if not fits_int64(number):
        raise PayloadError(name, f"{name} is out of range")
    return number


def boolean(payload: Mapping[str, Any], name: str) -> Optional[bool]:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise PayloadError(name, f"{name} must be true or false")
    return value


def timestamp(payload: Mapping[str, Any], name: str) -> Optional[datetime]:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadError(name, f"{name} must be an ISO-8601 string")
    try:
        return parse_datetime(value)
    except ValueError:
        raise PayloadError(name, f"{name} must be an ISO-8601 date or datetime")


def id_list(payload: Mapping[str, Any], name: str) -> Optional[List[int]]:
    """Deduplicated integer ids, order preserved."""
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, list):
        raise PayloadError(name, f"{name} must be a list of ids")
    ids: List[int] = []
    for item in value:
        if isinstance(item, bool):
            raise PayloadError(name, f"{name} must only contain integer ids")
        try:
            item_id = int(item)
        except (TypeError, ValueError, OverflowError):
            raise PayloadError(name, f"{name} must only contain integer ids")
        if not fits_int64(item_id):
            raise PayloadError(name, f"{name} contains an id out of range")
        if item_id not in ids:
            ids.append(item_id)
    return ids


def string_list(payload: Mapping[str, Any], name: str, *, max_length: int = 100) -> Optional[List[str]]:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, list):
        raise PayloadError(name, f"{name} must be a list of strings")
    items: List[str] = []
    for item in value:
        cleaned = _clean(item)
        if not isinstance(cleaned, str):
            raise PayloadError(name, f"{name} must only contain non-empty strings")
        if len(cleaned) > max_length:
            raise PayloadError(name, f"{name} entries must be at most {max_length} characters")
        if cleaned not in items:
            items.append(cleaned)
    return items


def flag(value: Optional[str]) -> bool:
    """Query-string switch such as ?includeLoans=true."""
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def json_object(request) -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise PayloadError("body", "Request body must be a JSON object")
    return payload
