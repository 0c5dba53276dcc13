import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cohort_scheduler.utils.context import request_id_scope
from cohort_scheduler.utils.logging import get_logger

REQUEST_ID_HEADER = "X-Request-ID"

logger = get_logger()


def resolve_request_id(request: Request) -> str:
    """Reuse a well-formed incoming X-Request-ID, otherwise mint a new one."""
    try:
        return str(uuid.UUID(request.headers.get(REQUEST_ID_HEADER)))
    except (ValueError, TypeError):
        return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request)
        request.state.request_id = request_id

        with request_id_scope(request_id):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)"
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
