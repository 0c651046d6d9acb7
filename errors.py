import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from settings import IS_PRODUCTION

logger = logging.getLogger(__name__)


def log_error(context: str, exc: BaseException) -> None:
    """Log an error with context; production logs keep the message only."""
    if IS_PRODUCTION:
        logger.error("[%s] %s", context, exc)
    else:
        logger.error("[%s] %s", context, exc, exc_info=exc)


def field_errors(exc: RequestValidationError) -> dict:
    errors = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        key = ".".join(loc) or "body"
        errors.setdefault(key, err.get("msg", "Invalid value"))
    return errors


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "errors": field_errors(exc)},
    )


async def database_error_handler(request: Request, exc: PyMongoError):
    log_error(f"{request.method} {request.url.path}", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
