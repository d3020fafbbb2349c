import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def _describe(error: RequestValidationError) -> str:
    problems = []
    for item in error.errors():
        # Drop the leading "body" so the caller sees the field it sent
        location = [str(part) for part in item.get("loc", ()) if part != "body"]
        prefix = ".".join(location) + ": " if location else ""
        problems.append(f"{prefix}{item.get('msg', 'invalid value')}")
    return "Invalid request. " + "; ".join(problems)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": _describe(exc)},
    )


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
