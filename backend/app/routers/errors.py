"""Translate reconciliation errors into HTTP responses."""

from fastapi import HTTPException, status

from app.core.config import get_settings
from app.core.errors import (
    PartialFailure,
    PreconditionViolation,
    RecordNotFound,
    ReconciliationError,
    SignatureInvalid,
    UpstreamUnavailable,
)


def _internal_detail(error: ReconciliationError) -> str:
    return error.message if get_settings().debug else "Internal error"


def user_http_error(error: ReconciliationError) -> HTTPException:
    """Error for a user-facing payment endpoint."""
    if isinstance(error, RecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, PreconditionViolation):
        return HTTPException(status_code=error.status_code, detail=error.message)
    if isinstance(error, UpstreamUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please try again",
        )
    if isinstance(error, PartialFailure):
        return HTTPException(
            status_code=status.HTTP_202_ACCEPTED,
            detail="Payment received, confirmation pending",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=_internal_detail(error))


def provider_http_error(error: ReconciliationError) -> HTTPException:
    """Error for a provider webhook; anything non-2xx makes the provider redeliver."""
    if isinstance(error, SignatureInvalid):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    if isinstance(error, UpstreamUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=error.message)
    if isinstance(error, PreconditionViolation):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=_internal_detail(error))
