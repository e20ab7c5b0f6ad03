"""Uniform JSON error envelope: ``{"error": ..., "status": ..., "detail"?: ...}``."""

from __future__ import annotations

import asyncio
from http import HTTPStatus
from typing import Any

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from starlette.responses import JSONResponse


def error_body(status_code: int, error: str | None = None, detail: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": error or _reason(status_code),
        "status": status_code,
    }
    if detail:
        body["detail"] = detail
    return body


def error_response(
    status_code: int,
    error: str | None = None,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(status_code, error, detail), headers=headers)


def _reason(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def is_timeout_error(exc: BaseException) -> bool:
    """True for driver/statement timeouts that merit a retryable 504."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        if orig is not None and type(orig).__name__ in {"QueryCanceledError", "QueryCanceled", "TimeoutError"}:
            return True
    if isinstance(exc, SQLAlchemyError):
        return "timeout" in str(exc).lower() or "canceling statement" in str(exc).lower()
    return False
