"""Translate coordination failures into HTTP responses."""

from fastapi import HTTPException

from services.errors import (
    CoordinationError,
    DocumentExistsError,
    DocumentNotFoundError,
    DuplicateRatingError,
    GenerationError,
    NotAuthorizedError,
    SessionConflictError,
    SessionStateError,
    TransactionConflictError,
)

_STATUS_CODES = (
    (DocumentNotFoundError, 404),
    (NotAuthorizedError, 403),
    (SessionConflictError, 409),
    (DuplicateRatingError, 409),
    (DocumentExistsError, 409),
    (TransactionConflictError, 409),
    (SessionStateError, 400),
    (GenerationError, 502),
)


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    if isinstance(exc, CoordinationError):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=500, detail="Unexpected coordination failure.")
