from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_context.get()


@contextmanager
def request_id_scope(request_id: Optional[str]) -> Iterator[Optional[str]]:
    """Bind a request id for the duration of a request or task run."""
    token = request_id_context.set(request_id)
    try:
        yield request_id
    finally:
        request_id_context.reset(token)
