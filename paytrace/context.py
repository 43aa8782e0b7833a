"""Per-request execution context for correlation, request and user ids."""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Final, Iterator, Optional

# Each asyncio task and each threadpool call runs on its own copy of these, so
# interleaved requests never see each other's ids.
CORRELATION_ID_CONTEXT: Final[contextvars.ContextVar[Optional[str]]] = contextvars.ContextVar(
    "correlation_id", default=None
)
REQUEST_ID_CONTEXT: Final[contextvars.ContextVar[Optional[str]]] = contextvars.ContextVar(
    "request_id", default=None
)
USER_ID_CONTEXT: Final[contextvars.ContextVar[Optional[str]]] = contextvars.ContextVar(
    "user_id", default=None
)

_UNSET = object()


@dataclass(frozen=True)
class ExecutionContext:
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None

    def as_fields(self) -> dict[str, str]:
        """Return the ids that are set, keyed the way log records name them."""

        fields: dict[str, str] = {}
        if self.correlation_id is not None:
            fields["correlationId"] = self.correlation_id
        if self.request_id is not None:
            fields["requestId"] = self.request_id
        if self.user_id is not None:
            fields["userId"] = self.user_id
        return fields


def set_correlation_id(correlation_id: Optional[str]) -> None:
    CORRELATION_ID_CONTEXT.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return CORRELATION_ID_CONTEXT.get()


def set_request_id(request_id: Optional[str]) -> None:
    REQUEST_ID_CONTEXT.set(request_id)


def get_request_id() -> Optional[str]:
    return REQUEST_ID_CONTEXT.get()


def set_user_id(user_id: Optional[str]) -> None:
    USER_ID_CONTEXT.set(user_id)


def get_user_id() -> Optional[str]:
    return USER_ID_CONTEXT.get()


def current_context() -> ExecutionContext:
    return ExecutionContext(
        correlation_id=CORRELATION_ID_CONTEXT.get(),
        request_id=REQUEST_ID_CONTEXT.get(),
        user_id=USER_ID_CONTEXT.get(),
    )


@contextmanager
def bind_context(
    *,
    correlation_id: object = _UNSET,
    request_id: object = _UNSET,
    user_id: object = _UNSET,
) -> Iterator[ExecutionContext]:
    """
    Set the given ids for the duration of the block.

    Fields that are not passed keep their current value. Previous values are
    restored on exit, including when the block raises.
    """

    tokens = []
    for var, value in (
        (CORRELATION_ID_CONTEXT, correlation_id),
        (REQUEST_ID_CONTEXT, request_id),
        (USER_ID_CONTEXT, user_id),
    ):
        if value is not _UNSET:
            tokens.append((var, var.set(value)))  # type: ignore[arg-type]

    try:
        yield current_context()
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
