"""
Mapping of saaslib errors onto HTTP responses.

Body shape: {"error": <code>, "detail": <message>}
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from saaslib.core.errors import AuthError, SaaslibError

logger = logging.getLogger(__name__)


def error_response(exc: SaaslibError) -> JSONResponse:
    headers = {}
    if isinstance(exc, AuthError):
        headers["WWW-Authenticate"] = "Bearer"
    if exc.retryable:
        headers["Retry-After"] = "1"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
        headers=headers,
    )


async def saaslib_error_handler(request: Request, exc: SaaslibError) -> JSONResponse:
    if exc.retryable:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return error_response(exc)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SaaslibError, saaslib_error_handler)
