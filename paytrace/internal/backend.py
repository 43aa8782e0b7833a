"""Backend service: issues access tokens and processes payments."""

from __future__ import annotations

import datetime as dt
import secrets
import time
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header
from pydantic import BaseModel

from ..config import Settings
from ..context import set_user_id
from ..errors import AppError, ErrorCode
from ..service_logger import create_logger
from . import envelope
from .downstream import get_settings
from .token_service import PAYLOAD_AUDIENCE, PAYLOAD_ISSUER

SERVICE_NAME = "backend"
ACCESS_TOKEN_TTL_SECONDS = 3600
SCOPE = "payment:write payment:read"

router = APIRouter()
logger = create_logger(SERVICE_NAME)


class ClientCredentials(BaseModel):
    client_id: str
    client_secret: str
    grant_type: str = "client_credentials"


@router.post("/oauth/token")
def oauth_token(
    credentials: ClientCredentials,
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    logger.info("OAuth token endpoint called", {"client_id": credentials.client_id})

    valid = secrets.compare_digest(credentials.client_id, settings.client_id) and (
        secrets.compare_digest(credentials.client_secret, settings.client_secret)
    )
    if not valid:
        logger.warn("Invalid OAuth credentials", {"client_id": credentials.client_id})
        raise AppError("Invalid client credentials", 401, ErrorCode.UNAUTHORIZED)

    access_token = envelope.sign(
        {"client_id": credentials.client_id, "scope": SCOPE, "grant_type": credentials.grant_type},
        settings.access_token_secret,
        ttl_seconds=ACCESS_TOKEN_TTL_SECONDS,
    )
    logger.info("OAuth token generated successfully", {"client_id": credentials.client_id})

    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_TTL_SECONDS,
        "scope": SCOPE,
    }


async def authenticated_client(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """
    Resolve the calling client from an optional bearer token.

    Declared ``async`` so the user id it sets is visible to the endpoint.
    """

    if not authorization:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AppError("Valid Bearer token required", 401, ErrorCode.UNAUTHORIZED)
    try:
        claims = envelope.verify(token, settings.access_token_secret)
    except envelope.InvalidEnvelope as exc:
        logger.warn("Unauthorized request", {"reason": str(exc)})
        raise AppError("Valid Bearer token required", 401, ErrorCode.UNAUTHORIZED) from exc

    client_id = str(claims["client_id"])
    set_user_id(client_id)
    logger.info("Authenticated client", {"client_id": client_id})
    return client_id


def process_payment(payment_data: dict[str, Any], was_encrypted: bool) -> dict[str, Any]:
    return {
        "success": True,
        "transactionId": f"TXN-{int(time.time() * 1000)}-{secrets.randbelow(1000)}",
        "status": "PROCESSED",
        "encrypted": was_encrypted,
        "paymentData": payment_data,
        "processedAt": dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds"),
    }


@router.post("/resources/payment")
def payment(
    body: dict[str, Any] = Body(...),
    client_id: Optional[str] = Depends(authenticated_client),
    x_source: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    logger.info("Payment endpoint called", {"source": x_source or "signed-flow"})

    signed = body.get("encryptedPayload")
    if not signed:
        logger.info("Plain payload detected, no signature")
        return process_payment(body, False)

    if client_id is None:
        raise AppError("Valid Bearer token required", 401, ErrorCode.UNAUTHORIZED)

    logger.info("Signed payload detected, verifying")
    try:
        claims = envelope.verify(
            signed,
            settings.payload_signing_secret,
            iss=PAYLOAD_ISSUER,
            aud=PAYLOAD_AUDIENCE,
        )
    except envelope.InvalidEnvelope as exc:
        logger.error("Payload verification failed", exc)
        raise AppError(f"Invalid encrypted payload: {exc}", 400, ErrorCode.INVALID_PAYLOAD) from exc

    logger.info("Payload verified successfully")
    return process_payment(claims["paymentData"], True)


@router.get("/health")
def health() -> dict[str, Any]:
    logger.info("Health check endpoint called")
    return {
        "status": "ok",
        "server": "backend",
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds"),
    }
