"""Page/per_page parsing and the paginated response envelope."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, Request

from reporting_api.dependencies import SettingsDep


@dataclass(frozen=True)
class Pagination:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


def _parse_positive(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 1 else default


def parse_pagination(query: Mapping[str, str], *, default_size: int, max_size: int) -> Pagination:
    """Read ``page`` and ``per_page`` leniently.

    Missing, non-numeric or non-positive values fall back to the defaults;
    ``per_page`` is clamped to *max_size*.
    """
    page = _parse_positive(query.get("page"), 1)
    per_page = min(_parse_positive(query.get("per_page"), default_size), max_size)
    return Pagination(page=page, per_page=per_page)


def get_pagination(request: Request, settings: SettingsDep) -> Pagination:
    """FastAPI dependency reading pagination from the query string."""
    return parse_pagination(
        request.query_params,
        default_size=settings.default_page_size,
        max_size=settings.max_page_size,
    )


PaginationDep = Annotated[Pagination, Depends(get_pagination)]


def paginated(data: list[dict[str, Any]], total: int, pagination: Pagination) -> dict[str, Any]:
    return {
        "data": data,
        "pagination": {
            "page": pagination.page,
            "per_page": pagination.per_page,
            "total": total,
            "total_pages": math.ceil(total / pagination.per_page) if pagination.per_page else 0,
        },
    }
