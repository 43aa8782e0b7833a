"""Per-service structured logger that tags every record with its service and ids."""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Final, Mapping, Optional

from .context import ExecutionContext, current_context
from .emitter import LogEmitter
from .emitter import logger as default_emitter
from .formatting import describe_error

SLOW_OPERATION_THRESHOLD_MS: Final[float] = 5000


class StructuredLogger:
    """
    Logging facade bound to one service name.

    Base metadata (service, ids, timestamp) goes under the caller's metadata,
    so callers win on collision, except for ``service`` which is always this
    logger's own.
    """

    def __init__(
        self,
        service: str,
        emitter: Optional[LogEmitter] = None,
        context_provider: Callable[[], ExecutionContext] = current_context,
    ) -> None:
        self.service = service
        self._emitter = emitter or default_emitter
        self._context_provider = context_provider

    def base_metadata(self) -> dict[str, Any]:
        now = dt.datetime.now(dt.timezone.utc)
        return {
            "service": self.service,
            **self._context_provider().as_fields(),
            "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    def _merge(self, *parts: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        merged = self.base_metadata()
        for part in parts:
            if part:
                merged.update(part)
        merged["service"] = self.service
        return merged

    def log(self, level: str, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self._emitter.log(level, message, self._merge(metadata))

    def debug(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("DEBUG", message, metadata)

    def info(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("INFO", message, metadata)

    def warn(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("WARN", message, metadata)

    def error(
        self,
        message: str,
        error: Any = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if isinstance(error, BaseException):
            error_fields = describe_error(error)
        elif error is not None:
            error_fields = {"error": error}
        else:
            error_fields = {}
        self._emitter.log("ERROR", message, self._merge(error_fields, metadata))

    def performance(
        self,
        operation: str,
        duration_ms: float,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        level = "WARN" if duration_ms > SLOW_OPERATION_THRESHOLD_MS else "INFO"
        self.log(
            level,
            f"Performance: {operation}",
            {"operation": operation, "durationMs": duration_ms, **(metadata or {})},
        )


def create_logger(service: str) -> StructuredLogger:
    return StructuredLogger(service)
