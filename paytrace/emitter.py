"""Log emitter: level-based logging calls that carry structured metadata."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .config import LOG_LEVELS
from .formatting import FIELDS_ATTR, ensure_serializable, normalize_fields


class LogEmitter:
    """
    Emit structured records through stdlib logging.

    Console output and remote shipping are decided by the handlers that
    ``configure_logging`` installs. The only error raised to callers is
    ``SerializationError`` for metadata that cannot be rendered as JSON.
    """

    def __init__(self, name: str = "paytrace") -> None:
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def log(self, level: str, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        key = level.upper()
        if key == "WARNING":
            key = "WARN"
        if key not in LOG_LEVELS:
            raise ValueError(f"unknown log level: {level!r}")

        fields = normalize_fields(metadata)
        ensure_serializable(fields)
        self._logger.log(LOG_LEVELS[key], message, extra={FIELDS_ATTR: fields})

    def error(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("ERROR", message, metadata)

    def warn(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("WARN", message, metadata)

    def info(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("INFO", message, metadata)

    def debug(self, message: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("DEBUG", message, metadata)


logger = LogEmitter()
