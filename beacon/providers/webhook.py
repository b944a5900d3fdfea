"""Generic HTTP webhook provider."""

from typing import Optional

import requests

from beacon.domain.models import ChannelType

from .base import ProviderReceipt, WebhookMessage
from .exceptions import InvalidAddressError
from .http import DEFAULT_USER_AGENT, HTTPProvider

_ALLOWED_METHODS = frozenset({"POST", "PUT", "PATCH"})


class WebhookProvider(HTTPProvider):
    """Sends JSON payloads to recipient-owned endpoints.

    Any 2xx/3xx status counts as delivered. The `X-Request-Id` response
    header, when present, is recorded as the message id.
    """

    channel = ChannelType.WEBHOOK

    def __init__(
        self,
        name: str = "webhook",
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(name, timeout=timeout, user_agent=user_agent, session=session)

    def send(self, message: WebhookMessage) -> ProviderReceipt:
        if not message.url.startswith(("http://", "https://")):
            raise InvalidAddressError(
                f"Webhook URL must be http(s): '{message.url}'", provider=self.name, address=message.url
            )

        method = message.method.upper()
        if method not in _ALLOWED_METHODS:
            raise InvalidAddressError(
                f"Unsupported webhook method '{message.method}'", provider=self.name, address=message.url
            )

        headers = {"Content-Type": "application/json", **message.headers}
        response = self._request(message.url, method=method, headers=headers, json_data=message.body)
        return ProviderReceipt(provider=self.name, message_id=response.headers.get("X-Request-Id"))
