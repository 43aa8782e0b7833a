"""CloudWatch custom metrics for the payment flow."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Final, Iterable, Mapping, Optional, Sequence, Tuple, Union

from botocore.exceptions import BotoCoreError, ClientError

from .cloudwatch import DIAGNOSTICS_LOGGER, create_client, error_code
from .config import Settings

diagnostics = logging.getLogger(DIAGNOSTICS_LOGGER)

ENVIRONMENT_DIMENSION: Final[str] = "Environment"

Dimension = Union[Mapping[str, str], Tuple[str, str]]


def _normalize_dimensions(dimensions: Iterable[Dimension]) -> list[tuple[str, str]]:
    pairs = []
    for dim in dimensions:
        if isinstance(dim, Mapping):
            pairs.append((str(dim["Name"]), str(dim["Value"])))
        else:
            name, value = dim
            pairs.append((str(name), str(value)))
    return pairs


@dataclass(frozen=True)
class MetricDatapoint:
    name: str
    value: float
    unit: str = "Count"
    timestamp: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    dimensions: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def build(
        cls,
        name: str,
        value: float,
        unit: str,
        environment: str,
        dimensions: Iterable[Dimension] = (),
    ) -> "MetricDatapoint":
        """Datapoint whose first dimension is always ``Environment``."""

        pairs = [(ENVIRONMENT_DIMENSION, environment)]
        pairs.extend(_normalize_dimensions(dimensions))
        return cls(name=name, value=value, unit=unit, dimensions=tuple(pairs))

    def to_cloudwatch(self) -> dict[str, Any]:
        return {
            "MetricName": self.name,
            "Value": self.value,
            "Unit": self.unit,
            "Timestamp": self.timestamp,
            "Dimensions": [{"Name": n, "Value": v} for n, v in self.dimensions],
        }


class MetricEmitter:
    """One ``put_metric_data`` call per datapoint; never raises."""

    def __init__(self, settings: Settings, client: Optional[Any] = None) -> None:
        self.settings = settings
        self._client = client
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.settings.cloudwatch_enabled

    def _get_client(self) -> Any:
        with self._lock:
            if self._client is None:
                self._client = create_client("cloudwatch", self.settings)
            return self._client

    def put_metric(
        self,
        name: str,
        value: float,
        unit: str = "Count",
        dimensions: Sequence[Dimension] = (),
    ) -> None:
        if not self.enabled:
            return

        try:
            datapoint = MetricDatapoint.build(
                name, value, unit, self.settings.environment, dimensions
            )
            self._get_client().put_metric_data(
                Namespace=self.settings.metric_namespace,
                MetricData=[datapoint.to_cloudwatch()],
            )
        except (ClientError, BotoCoreError) as exc:
            diagnostics.error(
                "cloudwatch_metric_failed",
                extra={"metric": name, "error": str(exc), "error_code": error_code(exc)},
            )
        except Exception as exc:  # noqa: BLE001 - observability must not fail callers
            diagnostics.error(
                "cloudwatch_metric_failed",
                extra={"metric": name, "error": str(exc), "exception": exc.__class__.__name__},
            )


_default_emitter: Optional[MetricEmitter] = None
_default_lock = threading.Lock()


def configure_metrics(
    settings: Optional[Settings] = None, client: Optional[Any] = None
) -> MetricEmitter:
    """Install the process-wide metric emitter and return it."""

    global _default_emitter

    emitter = MetricEmitter(settings or Settings.from_env(), client=client)
    with _default_lock:
        _default_emitter = emitter
    return emitter


def get_metric_emitter() -> MetricEmitter:
    global _default_emitter

    with _default_lock:
        if _default_emitter is None:
            _default_emitter = MetricEmitter(Settings.from_env())
        return _default_emitter


def put_metric(
    name: str,
    value: float,
    unit: str = "Count",
    dimensions: Sequence[Dimension] = (),
) -> None:
    get_metric_emitter().put_metric(name, value, unit, dimensions)
