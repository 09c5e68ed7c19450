"""Error taxonomy for group sessions and its FastAPI translation."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def error_payload(*, error: str, type_: str, code: str | None = None, details: Any | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": error, "code": code, "type": type_}
    if details is not None:
        payload["details"] = details
    return payload


class GrubMatchError(Exception):
    """Base exception raised by the store and the group service.

    Handlers registered by `register_exception_handlers` turn these into JSON
    responses; the WebSocket loop turns them into `error` events.
    """

    status_code: int = 400
    default_code: str | None = None

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.message = message
        self.code = code if code is not None else self.default_code
        super().__init__(message)


class NotFoundError(GrubMatchError):
    """Group, member or candidate does not exist (or the session has ended)."""

    status_code = 404
    default_code = "not_found"


class UnauthorizedError(GrubMatchError):
    """Binding missing or not matching the claimed member, or a non-host host action."""

    status_code = 403
    default_code = "unauthorized"


class InvalidRequestError(GrubMatchError):
    status_code = 400
    default_code = "invalid_request"


class UpstreamUnavailableError(GrubMatchError):
    """Candidate or ratings provider failed; callers degrade to fallback data."""

    status_code = 503
    default_code = "upstream_unavailable"


class StoreError(GrubMatchError):
    """Persistent store failure. The message is logged, never sent to clients."""

    status_code = 500
    default_code = "store_error"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StoreError)
    async def _store_error_handler(_request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store failure: %s", exc.message, exc_info=exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(error="Internal server error", code=exc.code, type_="InternalServerError"),
        )

    @app.exception_handler(GrubMatchError)
    async def _grubmatch_error_handler(_request: Request, exc: GrubMatchError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(error=exc.message, code=exc.code, type_=exc.__class__.__name__),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=error_payload(
                error="Validation error",
                code="validation_error",
                type_=exc.__class__.__name__,
                details=jsonable_encoder(exc.errors()),
            ),
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content=error_payload(error="Internal server error", code="internal_error", type_="InternalServerError"),
        )
