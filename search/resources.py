"""
Searchable resources.

Each resource names the query parameters it understands, the column and
type behind each of them, the fields an OR-group searches by default and the
link tables used for joined (derived) predicates and key-count bounds.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy.orm import selectinload

from utilities.database import (
    Key,
    KeyBundle,
    KeyBundleKey,
    KeyLoan,
    KeyLoanCard,
    KeyLoanKey,
    KeySystem,
    KEY_SYSTEM_TYPES,
    KEY_TYPES,
    LOAN_TYPES,
)

TEXT = "text"
INT = "int"
BOOL = "bool"
DATETIME = "datetime"
ENUM = "enum"


@dataclass(frozen=True)
class Field:
    column: str
    kind: str = TEXT
    choices: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Relation:
    """Rows reachable from the resource through a link table."""
    link_model: Any
    owner_column: str
    fields: Mapping[str, Field]
    # None when the searchable fields live on the link table itself (cards)
    target_model: Any = None
    target_column: Optional[str] = None


@dataclass(frozen=True)
class DerivedParam:
    relation: str
    fields: Tuple[str, ...]
    exact: bool = False


@dataclass(frozen=True)
class CountParams:
    relation: str
    minimum: str
    maximum: str


@dataclass(frozen=True)
class SearchResource:
    name: str
    model: Any
    fields: Mapping[str, Field]
    default_search_fields: Tuple[str, ...]
    presence: Mapping[str, str] = field(default_factory=dict)
    derived: Mapping[str, DerivedParam] = field(default_factory=dict)
    relations: Mapping[str, Relation] = field(default_factory=dict)
    count: Optional[CountParams] = None
    reserved: FrozenSet[str] = frozenset({"q", "fields", "page", "limit"})
    load_options: Callable[[], List[Any]] = lambda: []
    # (column, direction) pairs; the trailing id keeps pages stable
    ordering: Tuple[Tuple[str, str], ...] = (("created_at", "desc"), ("id", "desc"))

    def text_fields(self) -> Tuple[str, ...]:
        return tuple(name for name, spec in self.fields.items() if spec.kind == TEXT)


KEY_FIELDS: Dict[str, Field] = {
    "id": Field("id", INT),
    "keyName": Field("key_name"),
    "keySequenceNumber": Field("key_sequence_number", INT),
    "flexNumber": Field("flex_number", INT),
    "keyType": Field("key_type", ENUM, tuple(KEY_TYPES)),
    "rentalObjectCode": Field("rental_object_code"),
    "keySystemId": Field("key_system_id", INT),
    "disposed": Field("disposed", BOOL),
    "createdAt": Field("created_at", DATETIME),
    "updatedAt": Field("updated_at", DATETIME),
}

CARD_FIELDS: Dict[str, Field] = {
    "cardId": Field("card_id"),
}

LOAN_FIELDS: Dict[str, Field] = {
    "id": Field("id", INT),
    "loanType": Field("loan_type", ENUM, tuple(LOAN_TYPES)),
    "contact": Field("contact"),
    "contact2": Field("contact2"),
    "description": Field("description"),
    "pickedUpAt": Field("picked_up_at", DATETIME),
    "returnedAt": Field("returned_at", DATETIME),
    "availableToNextTenantFrom": Field("available_to_next_tenant_from", DATETIME),
    "createdAt": Field("created_at", DATETIME),
    "updatedAt": Field("updated_at", DATETIME),
    "createdBy": Field("created_by"),
    "updatedBy": Field("updated_by"),
}

BUNDLE_FIELDS: Dict[str, Field] = {
    "id": Field("id", INT),
    "name": Field("name"),
    "description": Field("description"),
    "createdAt": Field("created_at", DATETIME),
    "updatedAt": Field("updated_at", DATETIME),
}


LOAN_SEARCH = SearchResource(
    name="key_loans",
    model=KeyLoan,
    fields=LOAN_FIELDS,
    default_search_fields=("contact", "contact2"),
    presence={
        "hasPickedUp": "pickedUpAt",
        "hasReturned": "returnedAt",
    },
    derived={
        "keyNameOrObjectCode": DerivedParam("keys", ("keyName", "rentalObjectCode")),
        "rentalObjectCode": DerivedParam("keys", ("rentalObjectCode",), exact=True),
        "keyId": DerivedParam("keys", ("id",), exact=True),
        "cardId": DerivedParam("cards", ("cardId",), exact=True),
    },
    relations={
        "keys": Relation(
            link_model=KeyLoanKey,
            owner_column="key_loan_id",
            fields=KEY_FIELDS,
            target_model=Key,
            target_column="key_id",
        ),
        "cards": Relation(
            link_model=KeyLoanCard,
            owner_column="key_loan_id",
            fields=CARD_FIELDS,
        ),
    },
    count=CountParams("keys", "minKeys", "maxKeys"),
    reserved=frozenset({"q", "fields", "page", "limit", "includeKeySystem", "includeCards"}),
    load_options=lambda: [selectinload(KeyLoan.key_links), selectinload(KeyLoan.card_links)],
)

BUNDLE_SEARCH = SearchResource(
    name="key_bundles",
    model=KeyBundle,
    fields=BUNDLE_FIELDS,
    default_search_fields=("name", "description"),
    derived={
        "keyNameOrObjectCode": DerivedParam("keys", ("keyName", "rentalObjectCode")),
        "keyId": DerivedParam("keys", ("id",), exact=True),
    },
    relations={
        "keys": Relation(
            link_model=KeyBundleKey,
            owner_column="key_bundle_id",
            fields=KEY_FIELDS,
            target_model=Key,
            target_column="key_id",
        ),
    },
    count=CountParams("keys", "minKeys", "maxKeys"),
    load_options=lambda: [selectinload(KeyBundle.key_links)],
)

KEY_SEARCH = SearchResource(
    name="keys",
    model=Key,
    fields=KEY_FIELDS,
    default_search_fields=("keyName", "rentalObjectCode"),
    reserved=frozenset({"q", "fields", "page", "limit", "includeKeySystem"}),
    load_options=lambda: [selectinload(Key.key_system)],
)

KEY_SYSTEM_FIELDS: Dict[str, Field] = {
    "id": Field("id", INT),
    "systemCode": Field("system_code"),
    "name": Field("name"),
    "manufacturer": Field("manufacturer"),
    "type": Field("type", ENUM, tuple(KEY_SYSTEM_TYPES)),
    "isActive": Field("is_active", BOOL),
    "description": Field("description"),
    "createdAt": Field("created_at", DATETIME),
    "updatedAt": Field("updated_at", DATETIME),
}

KEY_SYSTEM_SEARCH = SearchResource(
    name="key-systems",
    model=KeySystem,
    fields=KEY_SYSTEM_FIELDS,
    default_search_fields=("systemCode",),
    ordering=(("system_code", "asc"), ("id", "asc")),
)
