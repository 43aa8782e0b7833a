"""HMAC-signed compact tokens used for access tokens and signed payment payloads."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Mapping


class InvalidEnvelope(ValueError):
    """Token is malformed, tampered with or expired."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _signature(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def sign(claims: Mapping[str, Any], secret: str, ttl_seconds: int = 3600) -> str:
    issued_at = int(time.time())
    payload = {**claims, "iat": issued_at, "exp": issued_at + ttl_seconds}
    body = _b64encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    return f"{body}.{_signature(body, secret)}"


def verify(token: str, secret: str, **expected: Any) -> dict[str, Any]:
    """Return the claims of ``token``; ``expected`` claims must match exactly."""

    try:
        body, signature = token.split(".")
    except ValueError:
        raise InvalidEnvelope("malformed token") from None

    if not hmac.compare_digest(signature, _signature(body, secret)):
        raise InvalidEnvelope("signature mismatch")

    try:
        claims = json.loads(_b64decode(body))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidEnvelope("undecodable token") from exc

    if int(claims.get("exp", 0)) < int(time.time()):
        raise InvalidEnvelope("token expired")
    for key, value in expected.items():
        if claims.get(key) != value:
            raise InvalidEnvelope(f"unexpected {key}")
    return claims
