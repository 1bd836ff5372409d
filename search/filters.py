"""
Filter spec parser.

Turns raw query-string parameters into a typed ``FilterSpec``. Values
prefixed with ``>=``, ``<=``, ``>`` or ``<`` become comparisons, everything
else an equality check. Repeating a parameter adds another predicate on the
same field and all of them must hold, so ``createdAt=>=2024-01-01&createdAt=<=2024-12-31``
is a closed range.

Unknown parameter names are rejected rather than ignored.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from search.resources import BOOL, DATETIME, ENUM, INT, TEXT, Field, SearchResource
from utilities.database import fits_int64
from utilities.dates import parse_datetime
from utilities.results import Err, InvalidSearchParameters, Ok, Result

OPERATOR_PATTERN = re.compile(r"^(>=|<=|>|<)(.+)$")
TRUE_VALUES = {"true", "1"}
FALSE_VALUES = {"false", "0"}


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Presence:
    field: str
    present: bool


@dataclass(frozen=True)
class TextOr:
    fields: Tuple[str, ...]
    text: str


@dataclass(frozen=True)
class CountRange:
    relation: str
    minimum: Optional[int] = None
    maximum: Optional[int] = None


@dataclass(frozen=True)
class Joined:
    """A predicate evaluated against rows reached through a link table."""
    relation: str
    predicate: Union[Equals, TextOr]


@dataclass(frozen=True)
class FilterSpec:
    or_group: Optional[TextOr] = None
    and_predicates: Tuple[Union[Equals, Compare], ...] = ()
    presence_predicates: Tuple[Presence, ...] = ()
    derived_predicates: Tuple[Joined, ...] = ()
    count_predicate: Optional[CountRange] = None

    def is_empty(self) -> bool:
        return not (
            self.or_group
            or self.and_predicates
            or self.presence_predicates
            or self.derived_predicates
            or self.count_predicate
        )


class _Rejected(Exception):
    def __init__(self, reason: str, parameter: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.parameter = parameter


def normalize_params(params: Mapping[str, Any]) -> Dict[str, List[str]]:
    """Return name -> non-blank stripped values; accepts MultiDicts and plain dicts."""
    normalized: Dict[str, List[str]] = {}
    for name in params.keys():
        if hasattr(params, "getlist"):
            raw_values = params.getlist(name)
        else:
            raw = params[name]
            raw_values = raw if isinstance(raw, (list, tuple)) else [raw]
        values = [str(value).strip() for value in raw_values if value is not None]
        values = [value for value in values if value]
        if values:
            normalized[name] = values
    return normalized


def coerce_value(name: str, field: Field, raw: str) -> Any:
    if field.kind == TEXT:
        return raw
    if field.kind == INT:
        try:
            value = int(raw)
        except ValueError:
            raise _Rejected(f"'{raw}' is not a valid integer for {name}", name)
        if not fits_int64(value):
            raise _Rejected(f"'{raw}' is out of range for {name}", name)
        return value
    if field.kind == BOOL:
        lowered = raw.lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise _Rejected(f"'{raw}' is not a valid boolean for {name}", name)
    if field.kind == DATETIME:
        try:
            return parse_datetime(raw)
        except ValueError:
            raise _Rejected(f"'{raw}' is not a valid ISO-8601 date for {name}", name)
    if field.kind == ENUM:
        if raw not in field.choices:
            raise _Rejected(f"{name} must be one of {', '.join(field.choices)}", name)
        return raw
    raise _Rejected(f"{name} cannot be filtered on", name)


def _field_predicate(name: str, field: Field, raw: str) -> Union[Equals, Compare]:
    match = OPERATOR_PATTERN.match(raw)
    if match is None:
        return Equals(name, coerce_value(name, field, raw))

    if field.kind in (BOOL, ENUM):
        raise _Rejected(f"Comparison operators are not supported for {name}", name)
    op, operand = match.group(1), match.group(2).strip()
    if not operand:
        raise _Rejected(f"Missing value after '{op}' for {name}", name)
    return Compare(name, op, coerce_value(name, field, operand))


def _presence(name: str, raw: str) -> bool:
    lowered = raw.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise _Rejected(f"{name} must be true or false", name)


def _count_bound(name: str, values: List[str]) -> int:
    if len(values) > 1:
        raise _Rejected(f"{name} may only be given once", name)
    try:
        bound = int(values[0])
    except ValueError:
        raise _Rejected(f"{name} must be a non-negative integer", name)
    if bound < 0:
        raise _Rejected(f"{name} must be a non-negative integer", name)
    if not fits_int64(bound):
        raise _Rejected(f"{name} is out of range", name)
    return bound


def _search_fields(resource: SearchResource, raw: str) -> Tuple[str, ...]:
    names = tuple(part.strip() for part in raw.split(",") if part.strip())
    if not names:
        raise _Rejected("fields must name at least one field", "fields")
    allowed = resource.text_fields()
    for name in names:
        if name not in allowed:
            raise _Rejected(
                f"'{name}' is not a searchable field; use one of {', '.join(allowed)}",
                "fields",
            )
    return names


def _parse(params, resource: SearchResource, min_query_length: int, require_predicates: bool) -> FilterSpec:
    values = normalize_params(params)

    q_values = values.pop("q", [])
    fields_values = values.pop("fields", [])
    if len(q_values) > 1:
        raise _Rejected("Only one free-text query (q) is allowed per request", "q")
    if len(fields_values) > 1:
        raise _Rejected("fields may only be given once", "fields")
    if fields_values and not q_values:
        raise _Rejected("fields requires a free-text query (q)", "fields")

    and_predicates: List[Union[Equals, Compare]] = []
    presence_predicates: List[Presence] = []
    derived_predicates: List[Joined] = []
    minimum = maximum = None

    for name, raw_values in values.items():
        if name in resource.reserved:
            continue
        if name in resource.presence:
            field_name = resource.presence[name]
            for raw in raw_values:
                presence_predicates.append(Presence(field_name, _presence(name, raw)))
        elif name in resource.derived:
            derived = resource.derived[name]
            relation = resource.relations[derived.relation]
            for raw in raw_values:
                if derived.exact:
                    field_name = derived.fields[0]
                    predicate = Equals(field_name, coerce_value(name, relation.fields[field_name], raw))
                else:
                    predicate = TextOr(derived.fields, raw)
                derived_predicates.append(Joined(derived.relation, predicate))
        elif resource.count and name == resource.count.minimum:
            minimum = _count_bound(name, raw_values)
        elif resource.count and name == resource.count.maximum:
            maximum = _count_bound(name, raw_values)
        elif name in resource.fields:
            field = resource.fields[name]
            for raw in raw_values:
                and_predicates.append(_field_predicate(name, field, raw))
        else:
            raise _Rejected(f"Unknown search parameter '{name}'", name)

    count_predicate = None
    if minimum is not None or maximum is not None:
        if minimum is not None and maximum is not None and minimum > maximum:
            raise _Rejected(
                f"{resource.count.minimum} cannot be greater than {resource.count.maximum}",
                resource.count.minimum,
            )
        count_predicate = CountRange(resource.count.relation, minimum, maximum)

    or_group = None
    short_query = False
    if q_values:
        fields = _search_fields(resource, fields_values[0]) if fields_values else resource.default_search_fields
        text = q_values[0]
        if len(text) >= min_query_length:
            or_group = TextOr(tuple(fields), text)
        else:
            short_query = True

    spec = FilterSpec(
        or_group=or_group,
        and_predicates=tuple(and_predicates),
        presence_predicates=tuple(presence_predicates),
        derived_predicates=tuple(derived_predicates),
        count_predicate=count_predicate,
    )

    if short_query and spec.is_empty():
        raise _Rejected(f"Search query must be at least {min_query_length} characters", "q")
    if require_predicates and spec.is_empty():
        raise _Rejected("At least one search parameter is required")
    return spec


def parse_filter_spec(
    params: Mapping[str, Any],
    resource: SearchResource,
    *,
    min_query_length: int = 3,
    require_predicates: bool = True,
) -> Result[FilterSpec]:
    try:
        return Ok(_parse(params, resource, min_query_length, require_predicates))
    except _Rejected as exc:
        details = {"parameter": exc.parameter} if exc.parameter else {}
        return Err(InvalidSearchParameters(exc.reason, details))
