"""Builds template contexts and channel messages from dispatch requests."""

from datetime import datetime
from typing import Any, Dict

from beacon.domain.models import ChannelType
from beacon.providers.base import (
    ChatMessage,
    EmailMessage,
    ProviderMessage,
    SmsMessage,
    WebhookMessage,
)
from beacon.utils.timestamps import format_timestamp

from .models import DispatchRequest, Recipient
from .templates import RenderedContent


def build_template_context(request: DispatchRequest, recipient: Recipient) -> Dict[str, Any]:
    """Build the template context for one recipient.

    Request fields are exposed under their own names with enums flattened
    to strings; `template_data` entries are merged on top and win on
    conflicts.
    """
    context = {
        "id": request.id,
        "type": request.type,
        "category": request.category.value,
        "severity": request.severity.value,
        "title": request.title,
        "message": request.message,
        "metadata": dict(request.metadata),
        "recipient_id": recipient.id,
    }
    context.update(request.template_data)
    return context


def build_webhook_payload(request: DispatchRequest, now: datetime) -> Dict[str, Any]:
    """JSON body sent to recipient webhooks."""
    return {
        "id": request.id,
        "type": request.type,
        "category": request.category.value,
        "severity": request.severity.value,
        "title": request.title,
        "message": request.message,
        "timestamp": format_timestamp(now, include_microseconds=True),
        "metadata": dict(request.metadata),
    }


def build_channel_message(
    channel: ChannelType,
    address: str,
    request: DispatchRequest,
    recipient: Recipient,
    content: RenderedContent,
    now: datetime,
) -> ProviderMessage:
    """Build the provider message for one (recipient, channel) delivery."""
    if channel == ChannelType.EMAIL:
        return EmailMessage(to=address, subject=content.subject, text=content.text, html=content.html)

    if channel == ChannelType.SLACK:
        return ChatMessage(channel=address, text=content.text)

    if channel == ChannelType.WEBHOOK:
        config = recipient.preferences.channel_config(ChannelType.WEBHOOK)
        return WebhookMessage(
            url=address,
            body=build_webhook_payload(request, now),
            method=str(config.get("method", "POST")),
            headers={str(k): str(v) for k, v in (config.get("headers") or {}).items()},
        )

    return SmsMessage(to=address, text=content.text)
