from __future__ import annotations

import logging

import pytest

from paytrace.config import Settings
from paytrace.logging_config import configure_logging
from paytrace.metrics import configure_metrics

from .fakes import FakeLogsClient, FakeMetricsClient


def _remove_paytrace_handlers() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_paytrace_handler", False):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def logs_client() -> FakeLogsClient:
    return FakeLogsClient()


@pytest.fixture
def metrics_client() -> FakeMetricsClient:
    return FakeMetricsClient()


@pytest.fixture
def configure(capsys, logs_client, metrics_client):
    """
    Rebuild logging and metrics from explicit settings.

    Console output lands in ``capsys``; remote calls land in the fake clients
    unless other clients are passed in.
    """

    def _configure(*, log_client=None, metric_client=None, **overrides) -> Settings:
        settings = Settings(log_stream="stream-test", **overrides)
        configure_logging(settings, log_client=log_client or logs_client, force=True)
        configure_metrics(settings, client=metric_client or metrics_client)
        return settings

    yield _configure

    _remove_paytrace_handlers()
    configure_metrics(Settings(log_stream="stream-test"))
