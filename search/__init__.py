from typing import Any, Mapping

from flask import current_app

from .compiler import compile_filter, execute_search
from .filters import FilterSpec, parse_filter_spec
from .pagination import Page, PageRequest, parse_page_request
from .resources import BUNDLE_SEARCH, KEY_SEARCH, KEY_SYSTEM_SEARCH, LOAN_SEARCH, SearchResource


def _page_request(params: Mapping[str, Any]):
    return parse_page_request(
        params,
        default_limit=current_app.config["PAGE_LIMIT_DEFAULT"],
        max_limit=current_app.config["PAGE_LIMIT_MAX"],
    )


def list_resource(resource: SearchResource, params: Mapping[str, Any]):
    """Unfiltered listing; only page and limit are read."""
    page_result = _page_request(params)
    if not page_result.ok:
        return page_result
    return execute_search(resource, FilterSpec(), page_result.value)


def search_resource(resource: SearchResource, params: Mapping[str, Any]):
    page_result = _page_request(params)
    if not page_result.ok:
        return page_result
    spec_result = parse_filter_spec(
        params,
        resource,
        min_query_length=current_app.config["SEARCH_MIN_QUERY_LENGTH"],
    )
    if not spec_result.ok:
        return spec_result
    return execute_search(resource, spec_result.value, page_result.value)


__all__ = [
    "BUNDLE_SEARCH",
    "KEY_SEARCH",
    "KEY_SYSTEM_SEARCH",
    "LOAN_SEARCH",
    "FilterSpec",
    "Page",
    "PageRequest",
    "SearchResource",
    "compile_filter",
    "execute_search",
    "list_resource",
    "parse_filter_spec",
    "parse_page_request",
    "search_resource",
]
