"""Central logging configuration for paytrace services."""

from __future__ import annotations

import logging
import sys
from typing import Any, Final, Optional

from .cloudwatch import CloudWatchLogHandler
from .config import Settings
from .context import current_context
from .formatting import CONTEXT_ATTR, ConsoleFormatter

# Marks handlers installed here so reconfiguration only touches our own.
_HANDLER_MARK: Final[str] = "_paytrace_handler"

# Chatty libraries that would otherwise print at DEBUG on every request.
_QUIET_LOGGERS: Final[tuple[str, ...]] = (
    "botocore",
    "boto3",
    "urllib3",
    "s3transfer",
    "httpx",
    "httpcore",
)


class ContextFilter(logging.Filter):
    """Stamps the ids active at emission time onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, CONTEXT_ATTR):
            setattr(record, CONTEXT_ATTR, current_context())
        return True


def _installed_handlers(root_logger: logging.Logger) -> list[logging.Handler]:
    return [h for h in root_logger.handlers if getattr(h, _HANDLER_MARK, False)]


def configure_logging(
    settings: Optional[Settings] = None,
    *,
    log_client: Optional[Any] = None,
    force: bool = False,
) -> None:
    """
    Configure the root logger for console output and optional CloudWatch shipping.

    Console output always receives every level. The CloudWatch handler is only
    attached when remote shipping is enabled and filters on ``LOG_LEVEL``.

    This function is idempotent so it can be called safely on import/reload;
    pass ``force=True`` to rebuild the handlers from new settings.
    """

    root_logger = logging.getLogger()
    existing = _installed_handlers(root_logger)
    if existing and not force:
        return
    for handler in existing:
        root_logger.removeHandler(handler)
        handler.close()

    settings = settings or Settings.from_env()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter())
    console.addFilter(ContextFilter())
    setattr(console, _HANDLER_MARK, True)
    root_logger.addHandler(console)

    if settings.cloudwatch_enabled:
        remote = CloudWatchLogHandler.from_settings(settings, client=log_client)
        remote.addFilter(ContextFilter())
        setattr(remote, _HANDLER_MARK, True)
        root_logger.addHandler(remote)

    root_logger.setLevel(logging.DEBUG)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
