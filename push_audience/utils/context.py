from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_context.get()


@contextmanager
def bound_request_id(request_id: str) -> Iterator[None]:
    """Bind a request ID (usually a Celery request id) for the enclosed block."""
    token = request_id_context.set(request_id)
    try:
        yield
    finally:
        request_id_context.reset(token)
