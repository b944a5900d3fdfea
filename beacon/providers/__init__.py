"""Delivery providers and the failover controller.

Providers wrap one concrete transport each (SMTP, Slack Web API, Slack
incoming webhook, generic HTTP webhook). The provider lists per channel
are assembled from configuration by beacon.providers.factory.
"""

from .base import (
    ChatMessage,
    DeliveryProvider,
    EmailMessage,
    ProviderReceipt,
    SmsMessage,
    WebhookMessage,
)
from .exceptions import (
    AllProvidersFailedError,
    InvalidAddressError,
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    ProviderTransportError,
)
from .failover import FailoverController, SendOutcome, send_with_failover
from .slack import SlackApiProvider, SlackWebhookProvider
from .smtp import SMTPProvider
from .webhook import WebhookProvider

__all__ = [
    # Interface and messages
    "DeliveryProvider",
    "ProviderReceipt",
    "EmailMessage",
    "ChatMessage",
    "WebhookMessage",
    "SmsMessage",
    # Providers
    "SMTPProvider",
    "SlackApiProvider",
    "SlackWebhookProvider",
    "WebhookProvider",
    # Failover
    "FailoverController",
    "SendOutcome",
    "send_with_failover",
    # Exceptions
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderAuthError",
    "InvalidAddressError",
    "ProviderTransportError",
    "ProviderConfigurationError",
    "AllProvidersFailedError",
]
