"""
api/errors.py -- The one place where AuthFailure values become HTTP errors.

Route handlers call raise_for_failure() on every service result. Failures
become HTTPException with the {"code", "message"} detail dict; the app-level
handler in api/main.py wraps that into the ErrorResponse envelope. Rate-limited
failures also carry the Retry-After header and a "retryAfter" field.
"""

from __future__ import annotations

from typing import TypeVar

from fastapi import HTTPException

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthFailure

T = TypeVar("T")


def error_body(code: str, message: str, detail: str | None = None, retry_after: int | None = None) -> dict:
    """Serialized ErrorResponse envelope. Fields that are None are omitted."""
    return ErrorResponse(
        error=ErrorDetail(code=code, message=message, detail=detail, retry_after=retry_after)
    ).model_dump(by_alias=True, exclude_none=True)


def raise_for_failure(result: T | AuthFailure) -> T:
    """Return result unchanged, or raise the HTTPException its failure maps to.

        user = raise_for_failure(await service.verify_email(body.token))
    """
    if not isinstance(result, AuthFailure):
        return result
    detail: dict = {"code": result.code, "message": result.message}
    headers: dict[str, str] | None = None
    if result.retry_after is not None:
        detail["retryAfter"] = result.retry_after
        headers = {"Retry-After": str(result.retry_after)}
    elif result.status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    raise HTTPException(status_code=result.status_code, detail=detail, headers=headers)
