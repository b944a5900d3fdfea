"""Assembles the ordered provider list of every channel from configuration."""

import os
from typing import Dict, List

from beacon.config.environment import EnvironmentConfig
from beacon.config.models import AppConfig
from beacon.domain.models import ChannelType
from beacon.logging import get_logger

from .base import DeliveryProvider
from .exceptions import ProviderConfigurationError
from .slack import SlackApiProvider, SlackWebhookProvider
from .smtp import SMTPProvider
from .webhook import WebhookProvider

logger = get_logger(__name__, component="provider")

PRIMARY_SMTP_NAME = "smtp-primary"


def build_providers(
    app_config: AppConfig, env_config: EnvironmentConfig
) -> Dict[ChannelType, List[DeliveryProvider]]:
    """Create providers for every channel in failover order.

    - email: the SMTP relay from SMTP_* variables, then `providers.smtp` entries
    - slack: Web API (SLACK_BOT_TOKEN), then incoming webhook (SLACK_WEBHOOK_URL)
    - webhook: the generic HTTP provider
    - sms: no built-in provider

    Raises:
        ProviderConfigurationError: If a provider cannot be created
    """
    settings = app_config.providers
    providers: Dict[ChannelType, List[DeliveryProvider]] = {channel: [] for channel in ChannelType}

    if env_config.smtp_configured:
        providers[ChannelType.EMAIL].append(
            SMTPProvider(
                name=PRIMARY_SMTP_NAME,
                host=env_config.smtp_host,
                port=env_config.smtp_port,
                sender_address=env_config.smtp_from,
                sender_name=env_config.smtp_sender_name,
                username=env_config.smtp_user,
                password=env_config.smtp_pass,
                use_tls=settings.smtp_use_tls,
                timeout=settings.smtp_timeout,
            )
        )

    for smtp in settings.smtp:
        if smtp.name == PRIMARY_SMTP_NAME:
            raise ProviderConfigurationError(
                f"Provider name '{PRIMARY_SMTP_NAME}' is reserved for the SMTP_* relay", provider=smtp.name
            )
        password = os.getenv(smtp.password_env) if smtp.password_env else None
        if smtp.username and not password:
            raise ProviderConfigurationError(
                f"SMTP provider '{smtp.name}' has a username but {smtp.password_env or 'no password_env'} is not set",
                provider=smtp.name,
            )
        providers[ChannelType.EMAIL].append(
            SMTPProvider(
                name=smtp.name,
                host=smtp.host,
                port=smtp.port,
                sender_address=smtp.sender_address,
                sender_name=smtp.sender_name,
                username=smtp.username,
                password=password,
                use_tls=smtp.use_tls,
                timeout=smtp.timeout,
            )
        )

    if env_config.slack_bot_token:
        providers[ChannelType.SLACK].append(
            SlackApiProvider(
                name="slack-api",
                bot_token=env_config.slack_bot_token,
                api_url=settings.slack.api_url,
                timeout=settings.slack.timeout,
                user_agent=settings.webhook.user_agent,
            )
        )
    if env_config.slack_webhook_url:
        providers[ChannelType.SLACK].append(
            SlackWebhookProvider(
                name="slack-webhook",
                webhook_url=env_config.slack_webhook_url,
                timeout=settings.slack.timeout,
                user_agent=settings.webhook.user_agent,
            )
        )

    providers[ChannelType.WEBHOOK].append(
        WebhookProvider(
            name="webhook",
            timeout=settings.webhook.timeout,
            user_agent=settings.webhook.user_agent,
        )
    )

    logger.info(
        "Delivery providers configured",
        extra={
            "event": "providers.configured",
            **{f"{channel.value}_providers": [p.name for p in items] for channel, items in providers.items()},
        },
    )
    return providers
