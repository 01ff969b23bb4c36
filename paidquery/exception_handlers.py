"""Map exceptions to `{"error": ...}` JSON bodies."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import metrics
from .errors import InternalError, PaidQueryError, ValidationError
from .services import validation_error_from

logger = logging.getLogger(__name__)


async def paidquery_error_handler(request: Request, exc: PaidQueryError) -> JSONResponse:
    if exc.status_code == 500 and not isinstance(exc, InternalError):
        # never echo unexpected internals to the client
        logger.error("unhandled %s: %s", type(exc).__name__, exc.message)
        metrics.error_count.inc()
        exc = InternalError()
    content = {"error": exc.message}
    if isinstance(exc, ValidationError) and exc.fields:
        content["fields"] = exc.fields
    return JSONResponse(status_code=exc.status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = validation_error_from(exc)
    return JSONResponse(status_code=400, content={"error": err.message, "fields": err.fields})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaidQueryError, paidquery_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
