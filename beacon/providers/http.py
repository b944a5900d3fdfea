"""Shared HTTP plumbing for providers that talk to JSON-over-HTTP transports."""

import logging
from typing import Any, Dict, Optional

import requests

from beacon.logging import get_logger

from .base import DeliveryProvider
from .exceptions import (
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderTimeoutError,
    ProviderTransportError,
)

logger = get_logger(__name__, component="provider")

DEFAULT_USER_AGENT = "Beacon-Notifications/1.0"


class HTTPProvider(DeliveryProvider):
    """Base class for HTTP providers.

    Owns a requests Session with the User-Agent header set, and maps
    transport failures to ProviderError subclasses.

    Attributes:
        timeout: HTTP request timeout in seconds
        user_agent: User-Agent header for HTTP requests
    """

    def __init__(
        self,
        name: str,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(name)
        if timeout <= 0:
            raise ProviderConfigurationError(
                f"Timeout must be positive, got: {timeout}", provider=name
            )
        if not user_agent or not user_agent.strip():
            raise ProviderConfigurationError("user_agent cannot be empty", provider=name)

        self.timeout = timeout
        self.user_agent = user_agent.strip()
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": self.user_agent})

    def _request(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """Make one HTTP request and return the response if its status is below 400.

        Raises:
            ProviderAuthError: On 401 or 403
            ProviderTransportError: On any other 4xx/5xx status or connection failure
            ProviderTimeoutError: On request timeout
        """
        try:
            logger.debug(
                f"HTTP {method} request to {url}",
                extra={"event": "provider.http.request", "provider": self.name, "method": method},
            )
            response = self._session.request(
                method=method,
                url=url,
                headers=headers,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderTimeoutError(
                f"Request to {url} timed out after {self.timeout} seconds", provider=self.name
            ) from e
        except requests.exceptions.RequestException as e:
            raise ProviderTransportError(f"Request to {url} failed: {e}", provider=self.name) from e

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            logger.log(
                logging.WARNING if retryable else logging.ERROR,
                f"HTTP {response.status_code} error from {url}",
                extra={
                    "event": "provider.http.error",
                    "provider": self.name,
                    "status_code": response.status_code,
                },
            )
            message = f"HTTP {response.status_code}: {response.reason}"
            if response.status_code in (401, 403):
                raise ProviderAuthError(message, provider=self.name)
            raise ProviderTransportError(message, provider=self.name, status_code=response.status_code)

        return response

    def close(self) -> None:
        self._session.close()
