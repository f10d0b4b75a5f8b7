"""Shared HTTP plumbing for analysis-service clients.

Transport errors and 5xx answers are retried with exponential backoff
(3 tries, 60s cap) and then raised as CollaboratorUnavailableError so the
caller can roll back or reschedule. 4xx answers raise CollaboratorError.
"""

import logging
from typing import Any, Dict, Optional

import backoff
import httpx

from ..errors import CollaboratorError, CollaboratorUnavailableError

logger = logging.getLogger(__name__)


class _ServerError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body[:500]}")
        self.status_code = status_code


class HttpCollaboratorClient:
    """JSON-over-HTTP client with retry and error translation."""

    service_name = "collaborator"

    def __init__(self, base_url: str, timeout: float = 60.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    def close(self):
        self._client.close()

    def _on_retry(self, details: dict):
        logger.warning(
            f"{self.service_name} retry {details['tries']}/3 "
            f"after {details['wait']:.1f}s: {type(details.get('exception')).__name__}"
        )

    def _request(self, method: str, path: str, **kwargs) -> Any:
        @backoff.on_exception(
            backoff.expo,
            (httpx.TransportError, _ServerError),
            max_tries=3,
            max_time=60,
            on_backoff=self._on_retry,
        )
        def _do_call():
            response = self._client.request(method, path, **kwargs)
            if response.status_code >= 500:
                raise _ServerError(response.status_code, response.text)
            return response

        try:
            response = _do_call()
        except httpx.TimeoutException as e:
            raise CollaboratorUnavailableError(f"{self.service_name} timed out: {e}")
        except (httpx.TransportError, _ServerError) as e:
            raise CollaboratorUnavailableError(f"{self.service_name} unavailable, retry: {e}")

        if response.status_code >= 400:
            raise CollaboratorError(
                f"{self.service_name} API error {response.status_code}: {response.text[:500]}"
            )
        try:
            return response.json()
        except ValueError:
            raise CollaboratorError(f"{self.service_name} returned non-JSON response")

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("GET", path, params=params)

    def _post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("POST", path, json=body or {})
