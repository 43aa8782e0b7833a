"""Environment-driven settings shared by every paytrace service."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Final, Mapping, Optional

logger = logging.getLogger("paytrace.config")

LOG_LEVELS: Final[dict[str, int]] = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

DEFAULT_REGION: Final[str] = "ap-south-1"
DEFAULT_ENVIRONMENT: Final[str] = "local-dev"
DEFAULT_LOG_GROUP: Final[str] = "/local/poc-payment-system"
DEFAULT_NAMESPACE: Final[str] = "POC-Payment-System"


def _default_stream_name() -> str:
    return f"stream-{int(time.time() * 1000)}"


def _flag(value: Optional[str]) -> bool:
    return (value or "false").strip().lower() == "true"


@dataclass(frozen=True)
class Settings:
    cloudwatch_enabled: bool = False
    log_level: str = "INFO"
    aws_region: str = DEFAULT_REGION
    environment: str = DEFAULT_ENVIRONMENT
    log_group: str = DEFAULT_LOG_GROUP
    log_stream: str = field(default_factory=_default_stream_name)
    metric_namespace: str = DEFAULT_NAMESPACE
    tracing_enabled: bool = False
    backend_url: str = "http://localhost:4000"
    token_service_url: str = "http://localhost:3000/dev/token"
    client_id: str = "poc-client"
    client_secret: str = "poc-secret"
    access_token_secret: str = "backend-access-token-secret-2024"
    payload_signing_secret: str = "payload-signing-secret-32-chars!!"

    @property
    def remote_level(self) -> int:
        return LOG_LEVELS[self.log_level]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Unknown ``LOG_LEVEL`` values fall back to ``INFO``; configuration
        problems never raise.
        """

        env = os.environ if environ is None else environ

        log_level = (env.get("LOG_LEVEL") or "INFO").strip().upper()
        if log_level == "WARNING":
            log_level = "WARN"
        if log_level not in LOG_LEVELS:
            logger.warning("invalid_log_level", extra={"log_level": log_level})
            log_level = "INFO"

        return cls(
            cloudwatch_enabled=_flag(env.get("CLOUDWATCH_ENABLED")),
            log_level=log_level,
            aws_region=env.get("AWS_REGION") or DEFAULT_REGION,
            environment=env.get("AWS_ENVIRONMENT") or DEFAULT_ENVIRONMENT,
            log_group=env.get("CLOUDWATCH_LOG_GROUP") or DEFAULT_LOG_GROUP,
            log_stream=env.get("CLOUDWATCH_LOG_STREAM") or _default_stream_name(),
            metric_namespace=env.get("CLOUDWATCH_NAMESPACE") or DEFAULT_NAMESPACE,
            tracing_enabled=_flag(env.get("TRACING_ENABLED")),
            backend_url=(env.get("BACKEND_URL") or "http://localhost:4000").rstrip("/"),
            token_service_url=env.get("TOKEN_SERVICE_URL")
            or "http://localhost:3000/dev/token",
            client_id=env.get("OAUTH_CLIENT_ID") or cls.client_id,
            client_secret=env.get("OAUTH_CLIENT_SECRET") or cls.client_secret,
            access_token_secret=env.get("ACCESS_TOKEN_SECRET") or cls.access_token_secret,
            payload_signing_secret=env.get("PAYLOAD_SIGNING_SECRET")
            or cls.payload_signing_secret,
        )
