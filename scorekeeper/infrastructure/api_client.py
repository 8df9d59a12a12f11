"""
Remote API Client

httpx-based client for the scoring backend. Unwraps response envelopes,
copies the CSRF cookie onto writes and maps failures onto the cache
layer's NetworkFailure / ValidationFailure taxonomy. Idempotent fetches
are retried with exponential backoff; writes are never retried.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional, TypeVar

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import get_settings
from ..domain.cache.repository_interfaces import RemoteApi
from .exceptions import NetworkFailure, ValidationFailure, extract_error_message

T = TypeVar("T")

logger = logging.getLogger(__name__)

_UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def with_retries(
    max_attempts: int, delay_seconds: float
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry NetworkFailure with exponential backoff, re-raising the last one."""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=delay_seconds),
        retry=retry_if_exception_type(NetworkFailure),
        reraise=True,
    )


def unwrap_envelope(data: Any, envelope: Optional[str]) -> Any:
    """Return ``data[envelope]`` when present, otherwise the bare payload."""
    if envelope and isinstance(data, dict) and envelope in data:
        return data[envelope]
    return data


class RemoteApiClient(RemoteApi):
    """
    Async client for the scoring backend.

    Args:
        base_url: API origin; defaults to ``API_BASE_URL``
        timeout: per-request timeout in seconds
        max_retries: attempts for GET requests
        retry_delay: exponential backoff multiplier in seconds
        csrf_cookie_name: cookie mirrored into ``X-CSRFToken`` on writes
        client: pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        csrf_cookie_name: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.API_TIMEOUT_SECONDS
        self.max_retries = (
            max_retries if max_retries is not None else settings.API_MAX_RETRIES
        )
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.API_RETRY_DELAY_SECONDS
        )
        self.csrf_cookie_name = csrf_cookie_name or settings.CSRF_COOKIE_NAME

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout
        )
        self._owns_client = client is None
        self._get_with_retries = with_retries(self.max_retries, self.retry_delay)(
            self._request
        )

    async def get(self, path: str, envelope: Optional[str] = None) -> Any:
        data = await self._get_with_retries("GET", path)
        return unwrap_envelope(data, envelope)

    async def post(
        self, path: str, payload: Any = None, envelope: Optional[str] = None
    ) -> Any:
        data = await self._request("POST", path, payload)
        return unwrap_envelope(data, envelope)

    async def delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, method: str) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if method in _UNSAFE_METHODS:
            token = self._client.cookies.get(self.csrf_cookie_name)
            if token:
                headers["X-CSRFToken"] = token
        return headers

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        """Send one request and decode the JSON body.

        Raises:
            NetworkFailure: transport error, timeout or 5xx
            ValidationFailure: 4xx with the server's message
        """
        try:
            response = await self._client.request(
                method,
                path,
                json=payload,
                headers=self._headers(method),
            )
        except httpx.TimeoutException as e:
            logger.warning(
                f"Remote call timed out: {method} {path}",
                extra={"method": method, "path": path},
            )
            raise NetworkFailure(
                "Remote call timed out", method=method, path=path, original_error=e
            )
        except httpx.TransportError as e:
            logger.warning(
                f"Remote call failed: {method} {path}: {e}",
                extra={"method": method, "path": path},
            )
            raise NetworkFailure(method=method, path=path, original_error=e)

        body = self._decode(response)

        if response.status_code >= 500:
            logger.warning(
                f"Remote server error {response.status_code}: {method} {path}",
                extra={"method": method, "path": path, "status": response.status_code},
            )
            raise NetworkFailure(
                extract_error_message(body, "Remote service unavailable"),
                method=method,
                path=path,
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            message = extract_error_message(body)
            logger.info(
                f"Remote call rejected {response.status_code}: {method} {path}: {message}",
                extra={"method": method, "path": path, "status": response.status_code},
            )
            raise ValidationFailure(
                message,
                status_code=response.status_code,
                method=method,
                path=path,
                body=body,
            )

        logger.debug(f"{method} {path} -> {response.status_code}")
        return body

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
