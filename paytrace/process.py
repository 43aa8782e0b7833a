"""Process-level hooks that report crashes before the interpreter goes down."""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import Any, Optional

from .emitter import logger
from .metrics import put_metric

_HANDLERS_REGISTERED = False


def _report(message: str, metric: str, error: Optional[BaseException]) -> None:
    # Both calls already absorb transport failures; the guard covers
    # serialization surprises raised while the process is going down.
    try:
        logger.error(message, {"error": error} if error is not None else None)
        put_metric(metric, 1, "Count")
    except Exception as exc:  # noqa: BLE001
        sys.stderr.write(f"Error reporting {message}: {exc}\n")


def _excepthook(exc_type, exc_value, exc_tb) -> None:
    if not issubclass(exc_type, KeyboardInterrupt):
        _report("uncaughtException", "UncaughtException", exc_value)
    _previous_excepthook(exc_type, exc_value, exc_tb)


def _threading_excepthook(args: threading.ExceptHookArgs) -> None:
    if args.exc_type is not SystemExit:
        _report("uncaughtException", "UncaughtException", args.exc_value)
    _previous_threading_excepthook(args)


def asyncio_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Loop exception handler for errors nobody awaited (e.g. orphaned tasks)."""

    error = context.get("exception")
    if error is None:
        error = RuntimeError(str(context.get("message", "unhandled asyncio error")))
    _report("unhandledRejection", "UnhandledRejection", error)
    loop.default_exception_handler(context)


_previous_excepthook = sys.excepthook
_previous_threading_excepthook = threading.excepthook


def register_process_handlers(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    """Install the crash reporting hooks once per process."""

    global _HANDLERS_REGISTERED, _previous_excepthook, _previous_threading_excepthook

    if loop is not None:
        loop.set_exception_handler(asyncio_exception_handler)

    if _HANDLERS_REGISTERED:
        return

    _previous_excepthook = sys.excepthook
    _previous_threading_excepthook = threading.excepthook
    sys.excepthook = _excepthook
    threading.excepthook = _threading_excepthook
    _HANDLERS_REGISTERED = True
