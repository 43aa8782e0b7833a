"""HTTP client for calls between the payment services."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Final, Mapping, Optional

import requests

from ..config import Settings
from ..correlation import outbound_headers
from ..errors import AppError, ErrorCode


class DownstreamClient:
    """Posts JSON to another service, forwarding the active correlation id."""

    TIMEOUT_SECONDS: Final[float] = 10.0

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()
        self.logger = logging.getLogger("paytrace.downstream")

    def post_json(
        self,
        url: str,
        payload: Any,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        try:
            response = self.session.post(
                url,
                json=payload,
                headers=outbound_headers(headers),
                timeout=self.TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            self.logger.debug("downstream_call_failed", extra={"url": url})
            raise AppError(
                f"Downstream call to {url} failed: {exc}",
                502,
                ErrorCode.SERVICE_UNAVAILABLE,
            ) from exc


_client = DownstreamClient()


def get_downstream() -> DownstreamClient:
    return _client


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
