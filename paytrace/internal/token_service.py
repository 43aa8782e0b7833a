"""Token service: signs payment data and hands it to the backend."""

from __future__ import annotations

import time
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings
from ..errors import AppError, ErrorCode
from ..metrics import put_metric
from ..service_logger import create_logger
from . import envelope
from .downstream import DownstreamClient, get_downstream, get_settings

SERVICE_NAME = "token-service"
PAYLOAD_ISSUER = "token-service"
PAYLOAD_AUDIENCE = "backend"

router = APIRouter()
logger = create_logger(SERVICE_NAME)


class TokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_data: Optional[dict[str, Any]] = Field(default=None, alias="paymentData")


def _fetch_access_token(settings: Settings, downstream: DownstreamClient) -> str:
    logger.info("Step 1 - Fetching OAuth token from backend")
    try:
        body = downstream.post_json(
            f"{settings.backend_url}/oauth/token",
            {
                "client_id": settings.client_id,
                "client_secret": settings.client_secret,
                "grant_type": "client_credentials",
            },
        )
    except AppError as exc:
        logger.error("Step 1 - OAuth token fetch failed", exc)
        put_metric("OAuthTokenFetch", 1, "Count", [{"Name": "Status", "Value": "Failed"}])
        raise

    access_token = body.get("access_token") if isinstance(body, dict) else None
    if not access_token:
        put_metric("OAuthTokenFetch", 1, "Count", [{"Name": "Status", "Value": "Failed"}])
        raise AppError("OAuth response had no access token", 502, ErrorCode.SERVICE_UNAVAILABLE)

    logger.info("Step 1 - OAuth token received")
    put_metric("OAuthTokenFetch", 1, "Count", [{"Name": "Status", "Value": "Success"}])
    return access_token


def sign_payment(payment_data: dict[str, Any], settings: Settings) -> str:
    return envelope.sign(
        {"paymentData": payment_data, "iss": PAYLOAD_ISSUER, "aud": PAYLOAD_AUDIENCE},
        settings.payload_signing_secret,
    )


@router.post("/dev/token")
def issue_token(
    payload: TokenRequest,
    settings: Settings = Depends(get_settings),
    downstream: DownstreamClient = Depends(get_downstream),
) -> dict[str, Any]:
    start = time.perf_counter()
    logger.info("Token service triggered")

    if not payload.payment_data:
        logger.warn("paymentData is required")
        put_metric("TokenValidationError", 1, "Count", [
            {"Name": "ErrorType", "Value": "MissingPaymentData"},
        ])
        raise AppError("paymentData is required", 400, ErrorCode.MISSING_BODY)

    try:
        access_token = _fetch_access_token(settings, downstream)

        logger.info("Step 2 - Signing paymentData")
        signed = sign_payment(payload.payment_data, settings)
        put_metric("PayloadSigningSuccess", 1, "Count")

        logger.info("Step 3 - Sending signed payload to backend")
        try:
            result = downstream.post_json(
                f"{settings.backend_url}/resources/payment",
                {"encryptedPayload": signed},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except AppError as exc:
            logger.error("Step 3 - Backend call failed", exc)
            put_metric("BackendCallError", 1, "Count", [
                {"Name": "ErrorType", "Value": "BackendFailed"},
            ])
            raise
        put_metric("BackendCallSuccess", 1, "Count")
    except AppError as exc:
        duration = int((time.perf_counter() - start) * 1000)
        logger.error("Token service error", exc, {"duration": duration})
        put_metric("TokenServiceError", 1, "Count", [
            {"Name": "ErrorType", "Value": (exc.error_code or ErrorCode.INTERNAL_ERROR).name},
        ])
        put_metric("TokenServiceDuration", duration, "Milliseconds")
        raise

    duration = int((time.perf_counter() - start) * 1000)
    logger.performance("token_service", duration)
    put_metric("TokenServiceSuccess", 1, "Count")
    put_metric("TokenServiceDuration", duration, "Milliseconds")

    return {
        "success": True,
        "message": "Payment processed with signed payload",
        "result": result,
    }
