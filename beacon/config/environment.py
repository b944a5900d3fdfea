"""Environment variable loading and validation."""

import os
from dataclasses import dataclass
from typing import Optional

from email_validator import EmailNotValidError, validate_email

from .exceptions import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./data/beacon.db"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class EnvironmentConfig:
    """Secrets and deployment settings taken from the environment.

    All transports are optional; a channel with no configured transport
    simply has no providers.
    """

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_sender_name: str = "Beacon"
    smtp_from: Optional[str] = None
    slack_bot_token: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    slack_default_channel: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    log_level: Optional[str] = None
    environment: str = "local"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)

    @property
    def slack_configured(self) -> bool:
        return bool(self.slack_bot_token or self.slack_webhook_url)


def _getenv(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    SMTP (primary email provider):
    - SMTP_HOST, SMTP_PORT (default 587), SMTP_USER, SMTP_PASS,
      SMTP_SENDER_NAME, SMTP_FROM

    Slack:
    - SLACK_BOT_TOKEN (Web API), SLACK_WEBHOOK_URL (incoming webhook),
      SLACK_DEFAULT_CHANNEL (fallback channel when no recipient is eligible)

    Service:
    - DATABASE_URL (default: sqlite:///./data/beacon.db)
    - LOG_LEVEL, ENVIRONMENT (default: local)

    Returns:
        EnvironmentConfig with validated values

    Raises:
        ConfigurationError: If any variable is invalid or inconsistent
    """
    errors = []

    smtp_host = _getenv("SMTP_HOST")
    smtp_port_str = _getenv("SMTP_PORT")
    smtp_user = _getenv("SMTP_USER")
    smtp_pass = _getenv("SMTP_PASS")
    smtp_from = _getenv("SMTP_FROM")
    slack_webhook_url = _getenv("SLACK_WEBHOOK_URL")
    log_level = _getenv("LOG_LEVEL")

    smtp_port = 587
    if smtp_port_str:
        try:
            smtp_port = int(smtp_port_str)
            if not 1 <= smtp_port <= 65535:
                errors.append(f"Invalid SMTP_PORT: {smtp_port}. Must be between 1 and 65535.")
        except ValueError:
            errors.append(f"Invalid SMTP_PORT: '{smtp_port_str}'. Must be a valid integer.")

    if not smtp_host and any((smtp_port_str, smtp_user, smtp_pass, smtp_from)):
        errors.append("SMTP settings are present but SMTP_HOST is not set.")

    if smtp_user and not smtp_pass:
        errors.append("SMTP_USER is set but SMTP_PASS is not. Both must be set for authentication.")
    elif smtp_pass and not smtp_user:
        errors.append("SMTP_PASS is set but SMTP_USER is not. Both must be set for authentication.")

    if smtp_from:
        try:
            smtp_from = validate_email(smtp_from, check_deliverability=False).normalized
        except EmailNotValidError as e:
            errors.append(f"Invalid email address in SMTP_FROM: '{smtp_from}' - {e}")

    if slack_webhook_url and not slack_webhook_url.startswith("https://"):
        errors.append("Invalid SLACK_WEBHOOK_URL: must start with https://")

    if log_level and log_level.upper() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and fill in your credentials",
                "Set SMTP_HOST whenever any other SMTP_* variable is set",
                "Verify SMTP_PORT is a number between 1 and 65535",
            ],
        )

    return EnvironmentConfig(
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_pass=smtp_pass,
        smtp_sender_name=_getenv("SMTP_SENDER_NAME") or "Beacon",
        smtp_from=smtp_from,
        slack_bot_token=_getenv("SLACK_BOT_TOKEN"),
        slack_webhook_url=slack_webhook_url,
        slack_default_channel=_getenv("SLACK_DEFAULT_CHANNEL"),
        database_url=_getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
        log_level=log_level.upper() if log_level else None,
        environment=_getenv("ENVIRONMENT") or "local",
    )
