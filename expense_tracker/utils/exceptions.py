"""Common exception utilities for FastAPI routers."""

from typing import Any, NoReturn

from fastapi import HTTPException, status


def raise_not_found(resource_name: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{resource_name} not found",
    ) from cause


def raise_bad_request(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    ) from cause


def raise_conflict(detail: str | dict[str, Any], *, cause: Exception | None = None) -> NoReturn:
    """409 with either a message or a structured body the client must act on."""
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    ) from cause
