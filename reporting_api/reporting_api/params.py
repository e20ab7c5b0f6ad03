"""Query-string value parsing shared by the report routers.

Bad values become a 400 with the parameter name; the raw value is not
echoed back.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from fastapi import HTTPException


def parse_date(value: str | None, name: str) -> date | None:
    """ISO date (``2025-01-31``) or timestamp, truncated to its date."""
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date for '{name}'") from None


def parse_timestamp(value: str | None, name: str) -> datetime | None:
    """ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid timestamp for '{name}'") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}
