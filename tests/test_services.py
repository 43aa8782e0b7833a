import asyncio
import re

import httpx
import pytest
import requests
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from paytrace.correlation import CorrelationPolicy
from paytrace.internal.downstream import DownstreamClient, get_downstream, get_settings
from paytrace.internal.token_service import sign_payment
from paytrace.main import backend_app, create_service_app, gateway_app, token_app
from paytrace.middleware import CorrelationMiddleware
from paytrace.process import asyncio_exception_handler
from paytrace.service_logger import create_logger

from .fakes import FakeSession, SlowLogsClient, console_lines

COR_PATTERN = re.compile(r"COR-\d+-[a-z0-9]{9}")


@pytest.fixture
def downstream_session():
    session = FakeSession()
    for app in (gateway_app, token_app):
        app.dependency_overrides[get_downstream] = lambda: DownstreamClient(session)
    yield session
    for app in (gateway_app, token_app):
        app.dependency_overrides.clear()


def test_handler_logs_carry_inbound_correlation_id(configure, logs_client):
    configure(cloudwatch_enabled=True)
    app = FastAPI()
    app.add_middleware(CorrelationMiddleware, service="backend", policy=CorrelationPolicy.PROPAGATE_ABSENT)
    handler_logger = create_logger("backend")

    @app.post("/pay")
    def pay() -> dict:
        handler_logger.info("Payment processed", {"amount": 100})
        return {"ok": True}

    response = TestClient(app).post("/pay", headers={"x-correlation-id": "COR-TEST-1"})

    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "COR-TEST-1"
    payload = logs_client.payload("Payment processed")
    assert payload["correlationId"] == "COR-TEST-1"
    assert payload["message"] == "Payment processed"
    assert payload["amount"] == 100
    assert payload["requestId"] == response.headers["x-request-id"]


def test_request_and_response_are_logged(configure, logs_client):
    configure(cloudwatch_enabled=True)
    client = TestClient(backend_app)

    response = client.get("/health?verbose=1", headers={"x-correlation-id": "COR-H", "user-agent": "probe/1.0"})

    assert response.status_code == 200
    inbound = logs_client.payload("HTTP Request")
    assert inbound["method"] == "GET"
    assert inbound["path"] == "/health"
    assert inbound["queryParams"] == {"verbose": "1"}
    assert inbound["userAgent"] == "probe/1.0"
    assert inbound["service"] == "backend"
    outbound = logs_client.payload("HTTP Response")
    assert outbound["level"] == "info"
    assert outbound["statusCode"] == 200
    assert isinstance(outbound["duration"], int)
    assert outbound["correlationId"] == "COR-H"
    assert "errorDetails" not in outbound


def test_gateway_generates_id_and_forwards_it(configure, downstream_session):
    configure()
    downstream_session.routes["/resources/payment"] = {"success": True, "status": "PROCESSED"}

    response = TestClient(gateway_app).post("/payment", json={"paymentData": {"amount": 100}})

    assert response.status_code == 200
    correlation_id = response.headers["x-correlation-id"]
    assert COR_PATTERN.fullmatch(correlation_id)
    (outbound,) = downstream_session.requests
    assert outbound["url"].endswith("/resources/payment")
    assert outbound["headers"]["x-correlation-id"] == correlation_id
    assert outbound["headers"]["x-source"] == "payment-gateway-no-encryption"
    assert response.json()["result"]["status"] == "PROCESSED"


def test_gateway_keeps_client_supplied_id_for_token_flow(configure, metrics_client, downstream_session):
    configure(cloudwatch_enabled=True)

    response = TestClient(gateway_app).post(
        "/payment",
        json={"encryption": True, "paymentData": {"amount": 5}},
        headers={"x-correlation-id": "COR-CLIENT-7"},
    )

    assert response.status_code == 200
    (outbound,) = downstream_session.requests
    assert outbound["url"] == get_settings().token_service_url
    assert outbound["json"] == {"paymentData": {"amount": 5}}
    assert outbound["headers"]["x-correlation-id"] == "COR-CLIENT-7"
    assert len(metrics_client.datapoints("TokenServiceCallSuccess")) == 1
    assert len(metrics_client.datapoints("PaymentSuccess")) == 1
    (duration,) = metrics_client.datapoints("PaymentDuration")
    assert duration["Unit"] == "Milliseconds"


def test_gateway_downstream_failure_maps_to_problem_details(
    configure, logs_client, metrics_client, downstream_session
):
    configure(cloudwatch_enabled=True)
    downstream_session.error = requests.ConnectionError("connection refused")

    response = TestClient(gateway_app).post(
        "/payment", json={"paymentData": {"amount": 1}}, headers={"x-correlation-id": "COR-FAIL"}
    )

    assert response.status_code == 502
    body = response.json()
    assert body["details"][0]["code"] == "DONEB-03001"
    assert body["correlationId"] == "COR-FAIL"
    assert body["instance"] == "/payment"

    (error_point,) = metrics_client.datapoints("PaymentError")
    assert error_point["Dimensions"][1] == {"Name": "ErrorType", "Value": "SERVICE_UNAVAILABLE"}
    request_error = logs_client.payload("Request Error")
    assert request_error["statusCode"] == 502
    assert request_error["correlationId"] == "COR-FAIL"
    assert "connection refused" in request_error["error"]
    response_record = logs_client.payload("HTTP Response")
    assert response_record["level"] == "error"
    assert response_record["errorDetails"] == body["details"][0]["message"]


def test_gateway_requires_payment_data(configure, logs_client, downstream_session):
    configure(cloudwatch_enabled=True)
    response = TestClient(gateway_app).post("/payment", json={"encryption": False})

    assert response.status_code == 400
    assert response.json()["details"][0]["code"] == "DONEB-01001"
    assert downstream_session.requests == []
    assert logs_client.payload("HTTP Response")["errorDetails"] == "paymentData is required"


def test_invalid_body_is_a_validation_problem(configure):
    configure()
    response = TestClient(gateway_app).post("/payment", json={"encryption": {"nested": True}})

    assert response.status_code == 400
    body = response.json()
    assert body["type"].endswith("api-validation")
    assert body["details"][0]["code"] == "DONEB-01002"


def test_downstream_service_does_not_fabricate_an_id(configure, capsys, downstream_session):
    configure()
    response = TestClient(token_app).post("/dev/token", json={})

    assert response.status_code == 400
    assert "x-correlation-id" not in response.headers
    assert "correlationId" not in response.json()
    assert len(console_lines(capsys, "missing_correlation_id")) == 1


def test_strict_downstream_rejects_missing_id(configure):
    configure()
    router = APIRouter()

    @router.get("/ping")
    def ping() -> dict:
        return {"pong": True}

    app = create_service_app("strict", router, CorrelationPolicy.REJECT)
    client = TestClient(app)

    rejected = client.get("/ping")
    assert rejected.status_code == 400
    assert rejected.json()["details"][0]["code"] == "DONEB-01003"
    assert client.get("/ping", headers={"x-correlation-id": "COR-OK"}).status_code == 200


def test_unexpected_error_is_logged_and_mapped(configure, logs_client):
    configure(cloudwatch_enabled=True)
    router = APIRouter()

    @router.get("/explode")
    def explode() -> dict:
        raise KeyError("missing")

    app = create_service_app("fragile", router, CorrelationPolicy.GENERATE)
    response = TestClient(app, raise_server_exceptions=False).get(
        "/explode", headers={"x-correlation-id": "COR-BOOM"}
    )

    assert response.status_code == 500
    assert response.json()["details"][0]["code"] == "DONEB-05000"
    assert response.json()["correlationId"] == "COR-BOOM"
    request_error = logs_client.payload("Request Error")
    assert request_error["statusCode"] == 500
    assert "KeyError" in request_error["errorStack"]


def test_token_service_signs_and_forwards(configure, metrics_client, downstream_session):
    configure(cloudwatch_enabled=True)
    downstream_session.routes["/oauth/token"] = {"access_token": "opaque-token"}
    downstream_session.routes["/resources/payment"] = {"success": True, "encrypted": True}

    response = TestClient(token_app).post(
        "/dev/token", json={"paymentData": {"amount": 9}}, headers={"x-correlation-id": "COR-TOK"}
    )

    assert response.status_code == 200
    oauth_call, payment_call = downstream_session.requests
    assert oauth_call["json"]["grant_type"] == "client_credentials"
    assert payment_call["headers"]["Authorization"] == "Bearer opaque-token"
    assert all(r["headers"]["x-correlation-id"] == "COR-TOK" for r in downstream_session.requests)
    assert "encryptedPayload" in payment_call["json"]
    (fetch,) = metrics_client.datapoints("OAuthTokenFetch")
    assert fetch["Dimensions"][1] == {"Name": "Status", "Value": "Success"}


def test_backend_verifies_signed_payload_and_sets_user(configure, logs_client):
    configure(cloudwatch_enabled=True)
    client = TestClient(backend_app)
    headers = {"x-correlation-id": "COR-BE"}

    token_response = client.post(
        "/oauth/token",
        json={"client_id": "poc-client", "client_secret": "poc-secret"},
        headers=headers,
    )
    assert token_response.status_code == 200
    access_token = token_response.json()["access_token"]

    response = client.post(
        "/resources/payment",
        json={"encryptedPayload": sign_payment({"amount": 5}, get_settings())},
        headers={**headers, "Authorization": f"Bearer {access_token}"},
    )

    assert response.status_code == 200
    assert response.json()["encrypted"] is True
    assert response.json()["paymentData"] == {"amount": 5}
    verified = logs_client.payload("Payload verified successfully")
    assert verified["userId"] == "poc-client"
    assert verified["correlationId"] == "COR-BE"


def test_backend_rejects_bad_credentials_and_tampered_payloads(configure):
    configure()
    client = TestClient(backend_app)

    denied = client.post("/oauth/token", json={"client_id": "poc-client", "client_secret": "wrong"})
    assert denied.status_code == 401
    assert denied.json()["type"].endswith("authentication")

    token = client.post(
        "/oauth/token", json={"client_id": "poc-client", "client_secret": "poc-secret"}
    ).json()["access_token"]
    tampered = sign_payment({"amount": 5}, get_settings())[:-2] + "xx"
    response = client.post(
        "/resources/payment",
        json={"encryptedPayload": tampered},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 400
    assert response.json()["details"][0]["code"] == "DONEB-01002"


def test_backend_accepts_plain_payloads(configure):
    configure()
    response = TestClient(backend_app).post(
        "/resources/payment", json={"amount": 3}, headers={"x-source": "payment-gateway-no-encryption"}
    )
    assert response.status_code == 200
    assert response.json()["encrypted"] is False
    assert response.json()["transactionId"].startswith("TXN-")


def test_metrics_endpoint_exposes_request_counters(configure):
    configure()
    client = TestClient(backend_app)
    client.get("/health")
    exposition = client.get("/metrics").text
    assert 'requests_total{method="GET",path="/health",status="200"}' in exposition


def test_remote_log_writes_do_not_block_the_event_loop(configure):
    slow_client = SlowLogsClient(delay=0.2)
    configure(cloudwatch_enabled=True, log_client=slow_client)
    app = FastAPI()
    app.add_middleware(CorrelationMiddleware, service="gateway", policy=CorrelationPolicy.GENERATE)

    @app.get("/ping")
    async def ping() -> dict:
        return {"pong": True}

    async def scenario():
        ticks = 0
        done = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not done.is_set():
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ping")
        done.set()
        await task
        return response, ticks

    response, ticks = asyncio.run(scenario())

    assert response.status_code == 200
    assert slow_client.count("put_log_events") == 2
    # Two 0.2s writes leave room for roughly 40 ticks when the loop stays free.
    assert ticks >= 20


def test_lifespan_installs_the_loop_exception_handler(configure):
    configure()
    router = APIRouter()

    @router.get("/loop-handler")
    async def loop_handler() -> dict:
        handler = asyncio.get_running_loop().get_exception_handler()
        return {"installed": handler is asyncio_exception_handler}

    app = create_service_app("lifespan", router, CorrelationPolicy.GENERATE)
    with TestClient(app) as client:
        assert client.get("/loop-handler").json() == {"installed": True}
