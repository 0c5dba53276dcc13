from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class SchedulingError(Exception):
    """
    Base for domain errors.

    Subclasses fix the `error_code` reported in `meta.error_code` and the HTTP
    status the API answers with.
    """

    error_code = "SCHEDULING_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class ValidationError(SchedulingError):
    """Template configuration is invalid (bad offset, weekday or order)."""

    error_code = "VALIDATION_ERROR"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(SchedulingError):
    error_code = "CONFLICT"
    http_status = status.HTTP_409_CONFLICT


class TemplateReferenceError(SchedulingError):
    """A group, subgroup or action template is missing or inactive."""

    error_code = "REFERENCE_ERROR"


class TimezoneError(SchedulingError):
    error_code = "TIMEZONE_ERROR"


class InvalidTransitionError(SchedulingError):
    error_code = "INVALID_TRANSITION"
    http_status = status.HTTP_409_CONFLICT


class NotFoundError(SchedulingError):
    error_code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Resource not found", error_code: Optional[str] = None):
        super().__init__(message, error_code)


class DeliveryError(SchedulingError):
    """
    The delivery provider rejected or failed a request.

    `status_code` is the provider's HTTP status when it answered at all.
    """

    error_code = "DELIVERY_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, error_code)
        self.status_code = status_code


def setup_error_handlers(app: FastAPI):
    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        log = logger.warning if exc.http_status < 500 else logger.error
        log(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=exc.http_status,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.warning(f"Rejected request body on {request.url.path}: {errors}")
        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=errors,
            error_code="REQUEST_VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.opt(exception=exc).error(f"Database error on {request.url.path}")
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled error on {request.url.path}")
        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
