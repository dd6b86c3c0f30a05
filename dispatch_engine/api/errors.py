"""Translation of ``DispatchError`` into HTTP responses."""

from fastapi import Request
from fastapi.responses import JSONResponse

from dispatch_engine.domain.errors import DispatchError


def error_body(exc: DispatchError) -> dict:
    return {
        "detail": str(exc),
        "code": exc.code,
        "retry_suggested": exc.retry_suggested,
    }


def error_response(exc: DispatchError, **extra) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={**error_body(exc), **extra})


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    return error_response(exc)
