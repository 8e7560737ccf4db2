"""Middleware: API key authentication and prediction error responses."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from animegenre.ml.errors import DecodeError, InferenceError, NotReadyError, PredictorError

if TYPE_CHECKING:
    from fastapi import FastAPI

    from animegenre.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

_ERROR_STATUS: dict[type[PredictorError], int] = {
    DecodeError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    NotReadyError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InferenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject requests without the configured Bearer token.

    Authentication is off unless ANIMEGENRE_API_KEY is set.
    """
    settings: Settings = request.app.state.settings
    expected = settings.api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _status_for(exc: Exception) -> int:
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _predictor_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = _status_for(exc)
    if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _queue_timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s %s timed out waiting for an inference slot", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference queue is full, retry later"},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Turn prediction failures into JSON error responses."""
    app.add_exception_handler(PredictorError, _predictor_error_handler)
    app.add_exception_handler(TimeoutError, _queue_timeout_handler)
