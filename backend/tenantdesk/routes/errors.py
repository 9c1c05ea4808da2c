"""Mapping of service outcomes onto HTTP errors."""
from __future__ import annotations

from fastapi import HTTPException, status

from tenantdesk.services.context import OperationResult

RESULT_STATUS: dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "invalid": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def unwrap(outcome: OperationResult) -> dict:
    """Return the result data, or raise the matching ``HTTPException``."""
    if not outcome.success:
        raise HTTPException(
            status_code=RESULT_STATUS.get(outcome.code or "invalid", 422),
            detail=outcome.error,
        )
    return outcome.data or {}
