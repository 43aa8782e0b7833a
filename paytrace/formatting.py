"""Canonical log records and their console / remote JSON renderings."""

from __future__ import annotations

import dataclasses
import datetime as dt
import decimal
import enum
import json
import logging
import traceback
import uuid
from typing import Any, Final, Mapping, Optional

from pythonjsonlogger.json import JsonFormatter

from .errors import SerializationError

# Record attributes used to carry paytrace data through stdlib logging.
FIELDS_ATTR: Final[str] = "paytrace_fields"
CONTEXT_ATTR: Final[str] = "paytrace_context"

_STANDARD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName", FIELDS_ATTR, CONTEXT_ATTR}

# Keys shown in the console prefix rather than in the trailing JSON.
_CONSOLE_PREFIX_KEYS: Final[frozenset[str]] = frozenset(
    {"timestamp", "level", "message", "correlationId", "requestId"}
)


def format_timestamp(created: float) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. ``2024-01-26T01:22:47.890Z``."""

    moment = dt.datetime.fromtimestamp(created, tz=dt.timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


def json_default(obj: Any) -> Any:
    """Strict ``json.dumps`` hook: convert well-known types, reject the rest."""

    if isinstance(obj, (dt.datetime, dt.date, dt.time)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        return float(obj)
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, enum.Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def render_default(obj: Any) -> Any:
    # Records from third-party loggers may carry arbitrary extras.
    try:
        return json_default(obj)
    except TypeError:
        return repr(obj)


def ensure_serializable(fields: Mapping[str, Any]) -> None:
    """Raise ``SerializationError`` if ``fields`` cannot be rendered as JSON."""

    try:
        json.dumps(fields, default=json_default)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"log metadata is not JSON serializable: {exc}") from exc


def describe_error(error: BaseException) -> dict[str, Any]:
    """Derive ``error``, ``errorStack`` and, when present, ``errorCode``/``statusCode``."""

    fields: dict[str, Any] = {
        "error": str(error),
        "errorStack": "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ).rstrip(),
    }

    code = getattr(error, "error_code", None) or getattr(error, "code", None)
    if code is not None:
        fields["errorCode"] = code.value if isinstance(code, enum.Enum) else code

    status = getattr(error, "status_code", None) or getattr(error, "statusCode", None)
    if status is not None:
        fields["statusCode"] = status
    return fields


def normalize_fields(metadata: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Expand an exception under ``metadata["error"]`` ahead of the other metadata."""

    fields = dict(metadata or {})
    error = fields.get("error")
    if isinstance(error, BaseException):
        del fields["error"]
        return {**describe_error(error), **fields}
    return fields


def build_record(record: logging.LogRecord) -> dict[str, Any]:
    """
    Build the canonical structured record for ``record``.

    Order of precedence, lowest first: timestamp/level/message, the ids that
    were active when the record was emitted, fields derived from ``exc_info``,
    plain ``extra`` attributes, then paytrace caller metadata.
    """

    data: dict[str, Any] = {
        "timestamp": format_timestamp(record.created),
        "level": level_name(record.levelno),
        "message": record.getMessage(),
    }

    context = getattr(record, CONTEXT_ATTR, None)
    if context is not None:
        data.update(context.as_fields())

    if record.exc_info and record.exc_info[1] is not None:
        data.update(describe_error(record.exc_info[1]))

    for key, value in vars(record).items():
        if key not in _STANDARD_ATTRS and not key.startswith("_"):
            data[key] = value

    fields = getattr(record, FIELDS_ATTR, None)
    if fields:
        data.update(fields)
    return data


def render_console(data: Mapping[str, Any]) -> str:
    parts = [str(data.get("timestamp", "")), str(data.get("level", "")).upper()]
    for key in ("correlationId", "requestId"):
        if data.get(key) is not None:
            parts.append(f"[{data[key]}]")
    parts.append(str(data.get("message", "")))

    rest = {k: v for k, v in data.items() if k not in _CONSOLE_PREFIX_KEYS}
    if rest:
        parts.append(json.dumps(rest, default=render_default, ensure_ascii=False))
    return " ".join(parts)


class ConsoleFormatter(logging.Formatter):
    """Compact single-line rendering for local output."""

    def format(self, record: logging.LogRecord) -> str:
        return render_console(build_record(record))


class RemoteJsonFormatter(JsonFormatter):
    """JSON object rendering shipped to the remote log sink."""

    def __init__(self) -> None:
        super().__init__(json_default=render_default, json_ensure_ascii=False)

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        log_record.update(build_record(record))
