"""Correlation id generation, origin policy and downstream forwarding."""

from __future__ import annotations

import enum
import logging
import secrets
import string
import time
import uuid
from typing import Final, Mapping, Optional

from .context import get_correlation_id

CORRELATION_HEADER: Final[str] = "x-correlation-id"
REQUEST_ID_HEADER: Final[str] = "x-request-id"

_ALPHABET: Final[str] = string.ascii_lowercase + string.digits
_SUFFIX_LENGTH: Final[int] = 9

logger = logging.getLogger("paytrace.correlation")


class CorrelationPolicy(str, enum.Enum):
    """What a service does when an inbound request carries no correlation id."""

    GENERATE = "generate"
    PROPAGATE_ABSENT = "propagate_absent"
    REJECT = "reject"


class MissingCorrelationId(Exception):
    """Raised under ``CorrelationPolicy.REJECT`` when the header is absent."""


def generate_correlation_id() -> str:
    """Return an id shaped like ``COR-1706234567890-abc123def``."""

    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"COR-{int(time.time() * 1000)}-{suffix}"


def generate_request_id() -> str:
    return str(uuid.uuid4())


def resolve_correlation_id(
    header_value: Optional[str], policy: CorrelationPolicy
) -> Optional[str]:
    """
    Decide the correlation id for an inbound request.

    Only the outermost entry point (``GENERATE``) may mint a new id. Downstream
    services never fabricate one: they warn and either continue without an id
    or raise ``MissingCorrelationId``.
    """

    if header_value:
        return header_value

    if policy is CorrelationPolicy.GENERATE:
        return generate_correlation_id()

    logger.warning("missing_correlation_id", extra={"policy": policy.value})
    if policy is CorrelationPolicy.REJECT:
        raise MissingCorrelationId(f"{CORRELATION_HEADER} header is required")
    return None


def outbound_headers(extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Headers for a downstream call, forwarding the active correlation id verbatim."""

    headers = dict(extra or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        headers[CORRELATION_HEADER] = correlation_id
    return headers
