import pytest

from paytrace.context import ExecutionContext, bind_context
from paytrace.errors import AppError, ErrorCode
from paytrace.service_logger import SLOW_OPERATION_THRESHOLD_MS, StructuredLogger, create_logger


class RecordingEmitter:
    def __init__(self):
        self.records = []

    def log(self, level, message, metadata=None):
        self.records.append((level, message, dict(metadata or {})))


@pytest.fixture
def emitter():
    return RecordingEmitter()


def make_logger(emitter, **ids):
    return StructuredLogger("payments", emitter=emitter, context_provider=lambda: ExecutionContext(**ids))


def test_base_metadata_tags_service_and_set_ids(emitter):
    make_logger(emitter, correlation_id="COR-1", request_id="req-1").info("hello", {"amount": 100})

    level, message, metadata = emitter.records[0]
    assert (level, message) == ("INFO", "hello")
    assert metadata["service"] == "payments"
    assert metadata["correlationId"] == "COR-1"
    assert metadata["requestId"] == "req-1"
    assert "userId" not in metadata
    assert metadata["amount"] == 100
    assert metadata["timestamp"].endswith("Z")


def test_caller_fields_win_except_service(emitter):
    make_logger(emitter, correlation_id="COR-1").warn(
        "override", {"correlationId": "COR-2", "service": "impostor"}
    )

    level, _, metadata = emitter.records[0]
    assert level == "WARN"
    assert metadata["correlationId"] == "COR-2"
    assert metadata["service"] == "payments"


def test_error_normalizes_structured_errors(emitter):
    error = AppError("backend timeout", 504, ErrorCode.SERVICE_UNAVAILABLE)
    make_logger(emitter).error("Payment failed", error, {"duration": 12})

    level, _, metadata = emitter.records[0]
    assert level == "ERROR"
    assert metadata["error"] == "backend timeout"
    assert metadata["errorCode"] == "DONEB-03001"
    assert metadata["statusCode"] == 504
    assert "errorStack" in metadata
    assert metadata["duration"] == 12


def test_error_accepts_plain_values(emitter):
    make_logger(emitter).error("odd failure", "just a string")
    assert emitter.records[0][2]["error"] == "just a string"
    assert "errorStack" not in emitter.records[0][2]


def test_error_without_value(emitter):
    make_logger(emitter).error("bare")
    assert "error" not in emitter.records[0][2]


@pytest.mark.parametrize(
    "duration,level",
    [(SLOW_OPERATION_THRESHOLD_MS + 1, "WARN"), (SLOW_OPERATION_THRESHOLD_MS, "INFO"), (12, "INFO")],
)
def test_performance_level_follows_threshold(emitter, duration, level):
    make_logger(emitter).performance("charge", duration, {"attempt": 1})

    recorded_level, message, metadata = emitter.records[0]
    assert recorded_level == level
    assert message == "Performance: charge"
    assert metadata["operation"] == "charge"
    assert metadata["durationMs"] == duration
    assert metadata["attempt"] == 1


def test_default_logger_reads_the_active_context(configure, logs_client):
    configure(cloudwatch_enabled=True)
    with bind_context(correlation_id="COR-SVC", user_id="poc-client"):
        create_logger("token-service").info("Token issued")

    payload = logs_client.payload("Token issued")
    assert payload["service"] == "token-service"
    assert payload["correlationId"] == "COR-SVC"
    assert payload["userId"] == "poc-client"
