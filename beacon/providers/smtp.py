"""SMTP email provider.

A thin wrapper around smtplib with support for implicit TLS (port 465),
STARTTLS, and authentication. One connection is opened per message and
always closed afterwards.
"""

import smtplib
import socket
import ssl
from email.message import EmailMessage as MIMEEmail
from email.utils import formataddr, make_msgid
from typing import Callable, Optional

from email_validator import EmailNotValidError, validate_email

from beacon.domain.models import ChannelType
from beacon.logging import get_logger

from .base import DeliveryProvider, EmailMessage, ProviderReceipt
from .exceptions import (
    InvalidAddressError,
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderTimeoutError,
    ProviderTransportError,
)

logger = get_logger(__name__, component="provider")


class SMTPProvider(DeliveryProvider):
    """Email provider backed by an SMTP relay.

    Designed to be easily mockable: the SMTP classes are injectable.
    """

    channel = ChannelType.EMAIL

    def __init__(
        self,
        name: str,
        host: str,
        port: int = 587,
        sender_address: Optional[str] = None,
        sender_name: str = "Beacon",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        smtp_factory: Optional[Callable] = None,
        smtp_ssl_factory: Optional[Callable] = None,
    ):
        """Initialize the provider.

        Args:
            name: Provider name used in outcomes and logs
            host: SMTP server hostname
            port: SMTP server port (465 selects implicit TLS)
            sender_address: From address (defaults to username, then noreply@host)
            sender_name: Display name for the From header
            username: Login user (authentication is skipped without credentials)
            password: Login password
            use_tls: Whether to upgrade with STARTTLS on non-465 ports
            timeout: Socket timeout in seconds
            smtp_factory: Factory for SMTP instances (for mocking)
            smtp_ssl_factory: Factory for SMTP_SSL instances (for mocking)

        Raises:
            ProviderConfigurationError: If host is empty
        """
        super().__init__(name)
        if not host or not host.strip():
            raise ProviderConfigurationError(f"SMTP provider '{name}' has no host", provider=name)

        self.host = host.strip()
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.sender = formataddr((sender_name, sender_address or username or f"noreply@{self.host}"))
        self.smtp_factory = smtp_factory or smtplib.SMTP
        self.smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def send(self, message: EmailMessage) -> ProviderReceipt:
        recipient = self._validate_address(message.to)
        mime = self._build_message(message, recipient)
        message_id = mime["Message-ID"]

        smtp = None
        try:
            smtp = self._connect()

            if self.username and self.password:
                smtp.login(self.username, self.password)

            smtp.send_message(mime)
            logger.debug(
                f"Email sent to {recipient} via {self.name}",
                extra={"event": "provider.email.sent", "provider": self.name, "message_id": message_id},
            )
            return ProviderReceipt(provider=self.name, message_id=message_id)

        except smtplib.SMTPAuthenticationError as e:
            raise ProviderAuthError(f"SMTP authentication failed for {self.name}: {e}", provider=self.name) from e
        except smtplib.SMTPRecipientsRefused as e:
            raise InvalidAddressError(
                f"SMTP server refused recipient {recipient}", provider=self.name, address=recipient
            ) from e
        except (socket.timeout, TimeoutError) as e:
            raise ProviderTimeoutError(
                f"SMTP connection to {self.host}:{self.port} timed out after {self.timeout} seconds",
                provider=self.name,
            ) from e
        except smtplib.SMTPException as e:
            raise ProviderTransportError(f"SMTP error during message delivery: {e}", provider=self.name) from e
        except OSError as e:
            raise ProviderTransportError(f"Network error during SMTP connection: {e}", provider=self.name) from e
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except Exception as e:
                    logger.warning(f"Error closing SMTP connection: {e}")

    def _connect(self):
        if self.port == 465:
            context = ssl.create_default_context()
            return self.smtp_ssl_factory(self.host, self.port, timeout=self.timeout, context=context)

        smtp = self.smtp_factory(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            smtp.starttls(context=ssl.create_default_context())
        return smtp

    def _build_message(self, message: EmailMessage, recipient: str) -> MIMEEmail:
        mime = MIMEEmail()
        mime["Subject"] = message.subject
        mime["From"] = self.sender
        mime["To"] = recipient
        mime["Message-ID"] = make_msgid(domain=self.host)
        mime.set_content(message.text)
        if message.html:
            mime.add_alternative(message.html, subtype="html")
        return mime

    def _validate_address(self, address: str) -> str:
        try:
            return validate_email(address, check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise InvalidAddressError(
                f"Invalid email address '{address}': {e}", provider=self.name, address=address
            ) from e
