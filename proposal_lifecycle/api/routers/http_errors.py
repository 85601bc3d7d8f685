import logging
from typing import NoReturn

from fastapi import HTTPException, status

from proposal_lifecycle.core.errors import (
    BusinessError,
    ConcurrencyError,
    LifecycleError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

# Renamed to HTTP_422_UNPROCESSABLE_CONTENT in newer Starlette releases.
HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def lifecycle_status_code(exc: LifecycleError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConcurrencyError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, BusinessError):
        return HTTP_422_UNPROCESSABLE
    return status.HTTP_400_BAD_REQUEST


def raise_lifecycle_http_exception(exc: Exception) -> NoReturn:
    """Translate a domain failure into an HTTP error carrying its code and context."""
    if not isinstance(exc, LifecycleError):
        raise exc
    status_code = lifecycle_status_code(exc)
    logger.info(
        "request.rejected",
        extra={
            "extra_fields": {
                "code": exc.code,
                "status_code": status_code,
                **exc.context,
            }
        },
    )
    raise HTTPException(status_code=status_code, detail=exc.to_dict()) from exc
