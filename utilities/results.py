"""
Typed outcomes returned by the service layer.

Services never raise for expected outcomes such as a key already being on
loan. They return ``Ok(value)`` or ``Err(error)`` and the blueprints map the
error kind to a status code (see ``utilities.responses``).
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class ServiceError:
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    status: ClassVar[int] = 500
    code: ClassVar[str] = "internal_error"


@dataclass(frozen=True)
class ValidationError(ServiceError):
    status: ClassVar[int] = 400
    code: ClassVar[str] = "validation_error"


@dataclass(frozen=True)
class InvalidSearchParameters(ValidationError):
    code: ClassVar[str] = "invalid_search_parameters"


@dataclass(frozen=True)
class ConflictError(ServiceError):
    status: ClassVar[int] = 409
    code: ClassVar[str] = "conflict"


@dataclass(frozen=True)
class NotFoundError(ServiceError):
    status: ClassVar[int] = 404
    code: ClassVar[str] = "not_found"


@dataclass(frozen=True)
class ForbiddenError(ServiceError):
    status: ClassVar[int] = 403
    code: ClassVar[str] = "forbidden"


@dataclass(frozen=True)
class ActiveLoanError(ServiceError):
    status: ClassVar[int] = 409
    code: ClassVar[str] = "active_loan"


@dataclass(frozen=True)
class InternalError(ServiceError):
    status: ClassVar[int] = 500
    code: ClassVar[str] = "internal_error"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    error: ServiceError
    ok: ClassVar[bool] = False


Result = Union[Ok[T], Err]
