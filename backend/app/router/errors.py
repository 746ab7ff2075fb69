# backend/app/router/errors.py
from __future__ import annotations

import sys
import traceback
from fastapi import HTTPException, status

from app.core.errors import (
    ConflictError,
    IngestError,
    NotFoundError,
    StorageError,
    ValidationError,
)

import logging
logger = logging.getLogger("geo.api")

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def to_http(e: Exception, action: str) -> HTTPException:
    """Translate a domain error (or an unexpected one) into an HTTPException."""
    if isinstance(e, IngestError):
        for error_type, code in _STATUS_BY_ERROR:
            if isinstance(e, error_type):
                break
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        log = logger.warning if code < 500 else logger.error
        log("%s failed [%s]: %s", action, type(e).__name__, e)
        return HTTPException(status_code=code, detail=str(e))

    exc_type, exc_obj, tb = sys.exc_info()
    tb_frame = traceback.extract_tb(tb)[-1] if tb else None
    func_name = tb_frame.name if tb_frame else "?"
    line_no = tb_frame.lineno if tb_frame else "?"
    error_type = type(e).__name__

    logger.error(
        f"Unhandled Exception [{error_type}] in {func_name}() line {line_no}\n"
        f"Message: {e}\n"
        f"Traceback:\n{''.join(traceback.format_exception(exc_type, exc_obj, tb))}"
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action} failed: {error_type} in {func_name}() line {line_no}",
    )
