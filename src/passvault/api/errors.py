"""Engine error → HTTP status mapping shared by the routers."""

from fastapi import HTTPException

from ..core.errors import (
    ConflictError,
    CorruptPayloadError,
    DependencyFailureError,
    InvalidStateError,
    NotFoundError,
)

_STATUS_BY_ERROR = (
    (ConflictError, 409),
    (NotFoundError, 404),
    (InvalidStateError, 400),
    (CorruptPayloadError, 422),
    (DependencyFailureError, 502),
)


def http_error(exc: Exception) -> HTTPException:
    """HTTPException for an engine error or a ValueError from input validation."""
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(
                status_code=status_code,
                detail={"message": str(exc), "code": exc.code},
            )
    return HTTPException(status_code=400, detail={"message": str(exc), "code": "INVALID_INPUT"})
