"""CloudWatch Logs shipping for paytrace log records."""

from __future__ import annotations

import contextvars
import logging
from typing import Any, Final, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .formatting import RemoteJsonFormatter

# Local-only channel for sink failures. Records on this logger never ship.
DIAGNOSTICS_LOGGER: Final[str] = "paytrace.diagnostics"
diagnostics = logging.getLogger(DIAGNOSTICS_LOGGER)

_ALREADY_EXISTS: Final[str] = "ResourceAlreadyExistsException"
_STALE_TOKEN_CODES: Final[frozenset[str]] = frozenset(
    {"InvalidSequenceTokenException", "DataAlreadyAcceptedException"}
)

# Set while a remote write is in flight so the SDK's own logging cannot recurse.
_SHIPPING: Final[contextvars.ContextVar[bool]] = contextvars.ContextVar(
    "paytrace_shipping", default=False
)


def create_client(service_name: str, settings: Settings) -> Any:
    return boto3.client(service_name, region_name=settings.aws_region)


def error_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


class RemoteLogStream:
    """
    The process-wide remote log stream and its sequence token.

    The stream is created lazily on first write. Create calls are idempotent:
    an "already exists" answer counts as success.
    """

    def __init__(self, client: Any, log_group: str, log_stream: str) -> None:
        self.client = client
        self.log_group = log_group
        self.log_stream = log_stream
        self.sequence_token: Optional[str] = None
        self.ready = False

    def ensure(self) -> None:
        if self.ready:
            return
        self._create("create_log_group", logGroupName=self.log_group)
        self._create(
            "create_log_stream",
            logGroupName=self.log_group,
            logStreamName=self.log_stream,
        )
        self.ready = True
        diagnostics.debug(
            "cloudwatch_stream_ready",
            extra={"log_group": self.log_group, "log_stream": self.log_stream},
        )

    def _create(self, operation: str, **params: str) -> None:
        try:
            getattr(self.client, operation)(**params)
        except ClientError as exc:
            if error_code(exc) != _ALREADY_EXISTS:
                raise

    def put(self, message: str, timestamp_ms: int) -> None:
        params: dict[str, Any] = {
            "logGroupName": self.log_group,
            "logStreamName": self.log_stream,
            "logEvents": [{"timestamp": timestamp_ms, "message": message}],
        }
        if self.sequence_token:
            params["sequenceToken"] = self.sequence_token
        response = self.client.put_log_events(**params)
        self.sequence_token = response.get("nextSequenceToken")

    def refresh_token(self) -> None:
        """Forget the cached token and read the stream's current one."""

        self.sequence_token = None
        response = self.client.describe_log_streams(
            logGroupName=self.log_group,
            logStreamNamePrefix=self.log_stream,
        )
        for stream in response.get("logStreams", []):
            if stream.get("logStreamName") == self.log_stream:
                self.sequence_token = stream.get("uploadSequenceToken")
                return


class CloudWatchLogHandler(logging.Handler):
    """
    Best-effort, one-call-per-record shipping to CloudWatch Logs.

    ``emit`` never raises. A stale sequence token triggers exactly one
    re-resolution of the token and the record is dropped; every other failure
    becomes one line on the diagnostics logger.
    """

    def __init__(self, stream: RemoteLogStream, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.stream = stream
        self.setFormatter(RemoteJsonFormatter())

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[Any] = None
    ) -> "CloudWatchLogHandler":
        stream = RemoteLogStream(
            client or create_client("logs", settings),
            settings.log_group,
            settings.log_stream,
        )
        return cls(stream, level=settings.remote_level)

    def filter(self, record: logging.LogRecord) -> bool:
        if _SHIPPING.get() or record.name == DIAGNOSTICS_LOGGER:
            return False
        return bool(super().filter(record))

    def emit(self, record: logging.LogRecord) -> None:
        token = _SHIPPING.set(True)
        try:
            self._ship(record)
        finally:
            _SHIPPING.reset(token)

    def _ship(self, record: logging.LogRecord) -> None:
        try:
            payload = self.format(record)
            self.stream.ensure()
            self.stream.put(payload, int(record.created * 1000))
        except (ClientError, BotoCoreError) as exc:
            if error_code(exc) in _STALE_TOKEN_CODES:
                self._refresh_token()
            diagnostics.error(
                "cloudwatch_log_failed",
                extra={"error": str(exc), "error_code": error_code(exc)},
            )
        except Exception as exc:  # noqa: BLE001 - observability must not fail callers
            diagnostics.error(
                "cloudwatch_log_failed",
                extra={"error": str(exc), "exception": exc.__class__.__name__},
            )

    def _refresh_token(self) -> None:
        try:
            self.stream.refresh_token()
        except (ClientError, BotoCoreError) as exc:
            diagnostics.error(
                "cloudwatch_token_refresh_failed",
                extra={"error": str(exc), "error_code": error_code(exc)},
            )
