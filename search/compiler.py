"""
Query compiler.

Builds a single SQLAlchemy query from a ``FilterSpec``:

1. AND and presence predicates become plain conditions.
2. The OR-group becomes a case-insensitive substring disjunction.
3. Joined and count predicates become correlated EXISTS / COUNT subqueries
   over the link tables.
4. Rows are ordered by ``created_at DESC, id DESC`` so paging is stable.
5. LIMIT/OFFSET is applied last, after the total has been counted.
"""

import operator

from flask import current_app
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from search.filters import Compare, CountRange, Equals, FilterSpec, Joined, Presence, TextOr
from search.pagination import Page, PageRequest
from search.resources import Relation, SearchResource
from utilities.database import db
from utilities.results import Err, InternalError, Ok, Result

OPERATORS = {
    "=": operator.eq,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

LIKE_ESCAPE = "\\"


def escape_like(text: str) -> str:
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def _column(model, fields, name):
    return getattr(model, fields[name].column)


def _condition(model, fields, predicate):
    if isinstance(predicate, Equals):
        return _column(model, fields, predicate.field) == predicate.value
    if isinstance(predicate, Compare):
        return OPERATORS[predicate.op](_column(model, fields, predicate.field), predicate.value)
    if isinstance(predicate, Presence):
        column = _column(model, fields, predicate.field)
        return column.isnot(None) if predicate.present else column.is_(None)
    if isinstance(predicate, TextOr):
        pattern = f"%{escape_like(predicate.text)}%"
        return or_(
            *[_column(model, fields, name).ilike(pattern, escape=LIKE_ESCAPE) for name in predicate.fields]
        )
    raise TypeError(f"Unsupported predicate {predicate!r}")


def _link_owner(resource: SearchResource, relation: Relation):
    return getattr(relation.link_model, relation.owner_column) == resource.model.id


def _joined_condition(resource: SearchResource, joined: Joined):
    relation = resource.relations[joined.relation]
    link = relation.link_model

    if relation.target_model is None:
        # Attributes live on the link rows themselves
        target = link
        subquery = select(link).where(_link_owner(resource, relation))
    else:
        target = relation.target_model
        subquery = (
            select(target.id)
            .select_from(link)
            .join(target, getattr(link, relation.target_column) == target.id)
            .where(_link_owner(resource, relation))
        )

    subquery = subquery.where(_condition(target, relation.fields, joined.predicate))
    return subquery.correlate(resource.model).exists()


def _count_conditions(resource: SearchResource, count: CountRange):
    relation = resource.relations[count.relation]
    cardinality = (
        select(func.count())
        .select_from(relation.link_model)
        .where(_link_owner(resource, relation))
        .correlate(resource.model)
        .scalar_subquery()
    )
    conditions = []
    if count.minimum is not None:
        conditions.append(cardinality >= count.minimum)
    if count.maximum is not None:
        conditions.append(cardinality <= count.maximum)
    return conditions


def compile_filter(resource: SearchResource, spec: FilterSpec):
    model = resource.model
    conditions = []

    for predicate in spec.and_predicates:
        conditions.append(_condition(model, resource.fields, predicate))
    for predicate in spec.presence_predicates:
        conditions.append(_condition(model, resource.fields, predicate))
    if spec.or_group is not None:
        conditions.append(_condition(model, resource.fields, spec.or_group))
    for joined in spec.derived_predicates:
        conditions.append(_joined_condition(resource, joined))
    if spec.count_predicate is not None:
        conditions.extend(_count_conditions(resource, spec.count_predicate))

    query = db.session.query(model)
    if conditions:
        query = query.filter(*conditions)
    ordering = [getattr(getattr(model, column), direction)() for column, direction in resource.ordering]
    return query.order_by(*ordering)


def execute_search(resource: SearchResource, spec: FilterSpec, page_request: PageRequest) -> Result[Page]:
    try:
        query = compile_filter(resource, spec)
        total = query.order_by(None).count()
        rows = (
            query.options(*resource.load_options())
            .limit(page_request.limit)
            .offset(page_request.offset)
            .all()
        )
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Search on %s failed (spec=%r, page=%s, limit=%s)",
            resource.name,
            spec,
            page_request.page,
            page_request.limit,
        )
        return Err(InternalError("Search failed", {"resource": resource.name}))

    return Ok(Page(page=page_request.page, limit=page_request.limit, total=total, content=rows))
