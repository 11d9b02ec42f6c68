# app/services/upstream.py
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urljoin

import requests
from requests.exceptions import RequestException

from app.core.config import settings

logger = logging.getLogger(__name__)

ACCESS_CODE_HEADER = "x-fluxapi-access-code"
API_KEY_HEADER = "x-api-key"

# Status recorded when the upstream never answered
NETWORK_FAILURE_STATUS = 500


@dataclass
class UpstreamResult:
    status: int
    latency_ms: int
    body: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status < 400


def _decode_body(response: requests.Response) -> Any:
    """Return JSON when the upstream sent JSON, raw text otherwise."""
    try:
        return response.json()
    except ValueError:
        return response.text


def forward_call(endpoint: str, payload: Any = None, access_key: Optional[str] = None) -> UpstreamResult:
    """
    Forwards a caller's request to a provider endpoint.

    Sends a POST with the JSON payload when one is present, otherwise a GET.
    Network failures never raise: they come back as status 500 with the
    time spent before failing, so the call can still be logged.
    """
    start = time.monotonic()
    try:
        if payload is not None:
            headers = {"Content-Type": "application/json"}
            if access_key:
                headers[ACCESS_CODE_HEADER] = access_key
            response = requests.post(endpoint, json=payload, headers=headers, timeout=settings.UPSTREAM_TIMEOUT_SECONDS)
        else:
            headers = {API_KEY_HEADER: access_key} if access_key else None
            response = requests.get(endpoint, headers=headers, timeout=settings.UPSTREAM_TIMEOUT_SECONDS)

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Upstream {endpoint} answered {response.status_code} in {latency_ms}ms")
        return UpstreamResult(status=response.status_code, latency_ms=latency_ms, body=_decode_body(response))

    except RequestException as e:
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.error(f"Upstream call to {endpoint} failed after {latency_ms}ms: {e}")
        return UpstreamResult(status=NETWORK_FAILURE_STATUS, latency_ms=latency_ms, error=str(e))


def check_upstream_health(endpoint: str, access_key: Optional[str] = None) -> str:
    """Probe `<endpoint>/health`. Returns "online" or "offline"."""
    health_url = urljoin(endpoint.rstrip("/") + "/", "health")
    headers = {API_KEY_HEADER: access_key} if access_key else None
    try:
        response = requests.get(health_url, headers=headers, timeout=settings.UPSTREAM_TIMEOUT_SECONDS)
    except RequestException as e:
        logger.warning(f"Health probe {health_url} failed: {e}")
        return "offline"
    return "online" if response.ok else "offline"
