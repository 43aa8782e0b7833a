"""Payment gateway: the entry point clients call to make a payment."""

from __future__ import annotations

import time
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings
from ..errors import AppError, ErrorCode
from ..metrics import put_metric
from ..service_logger import create_logger
from .downstream import DownstreamClient, get_downstream, get_settings

SERVICE_NAME = "payment-gateway"

router = APIRouter()
logger = create_logger(SERVICE_NAME)


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encryption: bool = False
    payment_data: Optional[dict[str, Any]] = Field(default=None, alias="paymentData")


def _error_type(error: AppError) -> str:
    return (error.error_code or ErrorCode.INTERNAL_ERROR).name


def _via_token_service(
    payment_data: dict[str, Any], settings: Settings, downstream: DownstreamClient
) -> Any:
    logger.info("Encryption enabled, calling token service")
    try:
        result = downstream.post_json(settings.token_service_url, {"paymentData": payment_data})
    except AppError as exc:
        logger.error("Token service call failed", exc)
        put_metric("TokenServiceCallError", 1, "Count", [
            {"Name": "ErrorType", "Value": "TokenServiceFailed"},
        ])
        raise
    logger.info("Token service call successful")
    put_metric("TokenServiceCallSuccess", 1, "Count")
    return result


def _via_backend(
    payment_data: dict[str, Any], settings: Settings, downstream: DownstreamClient
) -> Any:
    logger.info("Encryption disabled, calling backend directly")
    try:
        result = downstream.post_json(
            f"{settings.backend_url}/resources/payment",
            payment_data,
            headers={"x-source": "payment-gateway-no-encryption"},
        )
    except AppError as exc:
        logger.error("Backend call failed", exc)
        put_metric("BackendCallError", 1, "Count", [
            {"Name": "ErrorType", "Value": "BackendFailed"},
        ])
        raise
    logger.info("Backend call successful")
    put_metric("BackendCallSuccess", 1, "Count")
    return result


@router.post("/payment")
def create_payment(
    payload: PaymentRequest,
    settings: Settings = Depends(get_settings),
    downstream: DownstreamClient = Depends(get_downstream),
) -> dict[str, Any]:
    start = time.perf_counter()
    logger.info("Payment request received", {"encryption": payload.encryption})

    try:
        if not payload.payment_data:
            logger.warn("paymentData is required", {"errorCode": ErrorCode.MISSING_BODY})
            raise AppError("paymentData is required", 400, ErrorCode.MISSING_BODY)

        if payload.encryption:
            result = _via_token_service(payload.payment_data, settings, downstream)
        else:
            result = _via_backend(payload.payment_data, settings, downstream)
    except AppError as exc:
        duration = int((time.perf_counter() - start) * 1000)
        logger.error("Payment failed", exc, {"duration": duration})
        put_metric("PaymentError", 1, "Count", [
            {"Name": "ErrorType", "Value": _error_type(exc)},
        ])
        put_metric("PaymentDuration", duration, "Milliseconds")
        raise

    duration = int((time.perf_counter() - start) * 1000)
    logger.performance("payment", duration, {"encryption": payload.encryption})
    put_metric("PaymentSuccess", 1, "Count")
    put_metric("PaymentDuration", duration, "Milliseconds")

    return {"success": True, "encryption": payload.encryption, "result": result}
