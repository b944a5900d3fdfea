"""Slack chat providers.

Two transports are supported: the Web API (`chat.postMessage` with a bot
token) and incoming webhooks. The Web API answers HTTP 200 even for most
failures and signals them with `{"ok": false, "error": "..."}`.
"""

from typing import Any, Dict, Optional

import requests

from beacon.domain.models import ChannelType
from beacon.logging import get_logger

from .base import ChatMessage, ProviderReceipt
from .exceptions import (
    InvalidAddressError,
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderTransportError,
)
from .http import DEFAULT_USER_AGENT, HTTPProvider

logger = get_logger(__name__, component="provider")

SLACK_API_URL = "https://slack.com/api"

_AUTH_ERRORS = frozenset({
    "invalid_auth", "not_authed", "account_inactive", "token_revoked", "token_expired",
    "missing_scope", "no_permission",
})
_ADDRESS_ERRORS = frozenset({
    "channel_not_found", "user_not_found", "is_archived", "not_in_channel", "cannot_dm_bot",
})


def _message_payload(message: ChatMessage) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"text": message.text}
    if message.blocks:
        payload["blocks"] = message.blocks
    return payload


class SlackApiProvider(HTTPProvider):
    """Posts messages with the Slack Web API."""

    channel = ChannelType.SLACK

    def __init__(
        self,
        name: str,
        bot_token: str,
        api_url: str = SLACK_API_URL,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(name, timeout=timeout, user_agent=user_agent, session=session)
        if not bot_token:
            raise ProviderConfigurationError("Slack bot token is required", provider=name)
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")

    def send(self, message: ChatMessage) -> ProviderReceipt:
        payload = _message_payload(message)
        payload["channel"] = message.channel

        response = self._request(
            f"{self.api_url}/chat.postMessage",
            headers={"Authorization": f"Bearer {self.bot_token}"},
            json_data=payload,
        )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderTransportError(
                f"Slack returned a non-JSON response: {e}", provider=self.name
            ) from e

        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            if error in _AUTH_ERRORS:
                raise ProviderAuthError(f"Slack rejected credentials: {error}", provider=self.name)
            if error in _ADDRESS_ERRORS:
                raise InvalidAddressError(
                    f"Slack cannot post to {message.channel}: {error}",
                    provider=self.name,
                    address=message.channel,
                )
            raise ProviderTransportError(f"Slack API error: {error}", provider=self.name)

        return ProviderReceipt(provider=self.name, message_id=data.get("ts"))


class SlackWebhookProvider(HTTPProvider):
    """Posts messages to a Slack incoming webhook.

    Incoming webhooks are bound to one channel when created; the message's
    channel is sent along but Slack may ignore it.
    """

    channel = ChannelType.SLACK

    def __init__(
        self,
        name: str,
        webhook_url: str,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(name, timeout=timeout, user_agent=user_agent, session=session)
        if not webhook_url:
            raise ProviderConfigurationError("Slack webhook URL is required", provider=name)
        self.webhook_url = webhook_url

    def send(self, message: ChatMessage) -> ProviderReceipt:
        payload = _message_payload(message)
        if message.channel:
            payload["channel"] = message.channel

        self._request(self.webhook_url, json_data=payload)
        # Incoming webhooks answer a bare "ok" with no message id
        return ProviderReceipt(provider=self.name)
