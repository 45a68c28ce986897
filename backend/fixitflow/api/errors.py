"""Translate engine exceptions into HTTP responses."""

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.billing.errors import (
    BillingError,
    InvalidSignatureError,
    ProviderError,
    ProviderUnavailableError,
    StateConflictError,
)


def http_error(error: BillingError) -> HTTPException:
    """Map a :class:`BillingError` onto the status code clients and providers expect."""
    if isinstance(error, ProviderUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(error, InvalidSignatureError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, ProviderError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, StateConflictError):
        code = status.HTTP_409_CONFLICT
    else:
        # ValidationError, AlreadyEntitledError
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))


async def fail(db: AsyncSession, error: BillingError) -> HTTPException:
    """Commit what the request already applied (e.g. an inline expiry), then build the error."""
    await db.commit()
    return http_error(error)
