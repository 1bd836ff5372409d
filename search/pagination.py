from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from search.filters import normalize_params
from utilities.database import INT64_MAX
from utilities.results import Err, Ok, Result, ValidationError


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    limit: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class Page:
    page: int
    limit: int
    total: int
    content: List[Any] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.content)

    def to_dict(self, serializer: Callable[[Any], Any]) -> Dict[str, Any]:
        return {
            "content": [serializer(row) for row in self.content],
            "meta": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "count": self.count,
            },
        }


def _positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be a positive integer")
    if value < 1:
        raise ValueError(f"{name} must be a positive integer")
    if value > INT64_MAX:
        raise ValueError(f"{name} is out of range")
    return value


def parse_page_request(params: Mapping[str, Any], default_limit: int = 20, max_limit: int = 100) -> Result[PageRequest]:
    """Read page/limit; limits above the maximum are clamped."""
    values = normalize_params(params)
    try:
        page = _positive_int("page", values["page"][0]) if "page" in values else 1
        limit = _positive_int("limit", values["limit"][0]) if "limit" in values else default_limit
    except ValueError as exc:
        return Err(ValidationError(str(exc)))
    request = PageRequest(page=page, limit=min(limit, max_limit))
    if request.offset > INT64_MAX:
        return Err(ValidationError("page is out of range"))
    return Ok(request)
