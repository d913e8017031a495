"""Builders for IGDB's Apicalypse query bodies."""

from __future__ import annotations

import numbers
from typing import Any, Iterable

IGDB_MAX_PAGE_SIZE = 500


def resolve_igdb_page_size(batch_size: Any, *, max_page_size: int = IGDB_MAX_PAGE_SIZE) -> int:
    """Return a sanitized IGDB page size respecting API constraints."""

    try:
        size = int(batch_size)
    except (TypeError, ValueError):
        return max_page_size
    if size <= 0:
        return max_page_size
    return min(size, max_page_size)


def format_filter_value(value: Any) -> str:
    """Render ``value`` for use inside a ``where field = (...)`` clause."""

    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return _format_scalar(value)
    return ",".join(_format_scalar(item) for item in value)


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, numbers.Integral):
        return str(int(value))
    if isinstance(value, numbers.Real) and float(value).is_integer():
        return str(int(value))
    return str(value).strip()


def build_query(
    fields: str | Iterable[str],
    *,
    filter_field: str | None = None,
    filter_value: Any = None,
    where: str | None = None,
    limit: Any = IGDB_MAX_PAGE_SIZE,
    offset: Any = 0,
    sort_field: str | None = "id",
) -> str:
    """Return the query text for one page of an IGDB endpoint.

    ``limit`` is clamped to the API maximum rather than rejected. ``where``
    is a static predicate that is joined with the filter using ``&``.
    """

    if isinstance(fields, str):
        field_list = fields.strip() or "*"
    else:
        field_list = ",".join(str(name).strip() for name in fields if str(name).strip()) or "*"

    predicates: list[str] = []
    if where:
        predicates.append(where.strip().rstrip(";"))
    if filter_field and filter_value is not None:
        predicates.append(f"{filter_field} = ({format_filter_value(filter_value)})")

    try:
        offset_value = max(0, int(offset))
    except (TypeError, ValueError):
        offset_value = 0

    parts = [f"fields {field_list};"]
    if predicates:
        parts.append(f"where {' & '.join(predicates)};")
    parts.append(f"limit {resolve_igdb_page_size(limit)};")
    parts.append(f"offset {offset_value};")
    if sort_field:
        parts.append(f"sort {sort_field} asc;")
    return " ".join(parts)


__all__ = [
    "IGDB_MAX_PAGE_SIZE",
    "build_query",
    "format_filter_value",
    "resolve_igdb_page_size",
]
