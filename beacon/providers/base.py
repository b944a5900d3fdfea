"""Provider interface and channel-specific message types.

A provider wraps one concrete transport for one channel. `send()` makes a
single attempt: it never retries and it reports every failure as a
ProviderError subclass. Retrying and falling back to other providers is
the failover controller's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from beacon.domain.models import ChannelType


@dataclass
class EmailMessage:
    """Email addressed to a single recipient."""

    to: str
    subject: str
    text: str
    html: Optional[str] = None


@dataclass
class ChatMessage:
    """Chat message for a channel or user id (e.g. "#ops" or "U024BE7LH")."""

    channel: str
    text: str
    blocks: Optional[List[Dict[str, Any]]] = None


@dataclass
class WebhookMessage:
    """HTTP request to a recipient-owned endpoint."""

    url: str
    body: Dict[str, Any]
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class SmsMessage:
    to: str
    text: str


ProviderMessage = Union[EmailMessage, ChatMessage, WebhookMessage, SmsMessage]


@dataclass(frozen=True)
class ProviderReceipt:
    """Acknowledgement returned by a successful send."""

    provider: str
    message_id: Optional[str] = None


class DeliveryProvider(ABC):
    """Base class for all delivery providers.

    Attributes:
        name: Unique provider name, recorded on delivery outcomes
        channel: Channel this provider delivers to
    """

    channel: ChannelType

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def send(self, message: ProviderMessage) -> ProviderReceipt:
        """Deliver one message with a single attempt.

        Returns:
            ProviderReceipt naming this provider and the transport's message id

        Raises:
            ProviderError: Its subclasses indicate the failure type:
            - ProviderTimeoutError: transport timed out
            - ProviderAuthError: credentials rejected
            - InvalidAddressError: recipient address malformed or refused
            - ProviderTransportError: any other transport failure
            - ProviderConfigurationError: provider cannot send at all
        """

    def close(self) -> None:
        """Release transport resources. Default: nothing to release."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, channel={self.channel.value!r})"
