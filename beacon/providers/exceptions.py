"""Exceptions raised by delivery providers."""

from typing import Optional


class ProviderError(Exception):
    """Base exception for delivery provider failures.

    Every failure a provider can encounter while sending is raised as a
    subclass of this exception. The failover controller treats all of them
    alike: record the error and move on to the next provider.
    """

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """The transport did not answer within the configured timeout."""

    pass


class ProviderAuthError(ProviderError):
    """The transport rejected the provider's credentials."""

    pass


class InvalidAddressError(ProviderError):
    """The recipient address is malformed or was refused by the transport."""

    def __init__(self, message: str, provider: str = "", address: str = "") -> None:
        super().__init__(message, provider)
        self.address = address


class ProviderTransportError(ProviderError):
    """Any other transport-level failure (connection, HTTP status, protocol).

    Attributes:
        status_code: HTTP status code when the transport is HTTP, else None
    """

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message, provider)
        self.status_code = status_code


class ProviderConfigurationError(ProviderError):
    """Provider is missing settings it needs to send (host, token, URL)."""

    pass


class AllProvidersFailedError(Exception):
    """Every provider failed on every attempt of one failover run.

    Not raised to dispatch callers; its message becomes the error of the
    failed delivery outcome.
    """

    def __init__(self, attempts: int, last_error: Optional[Exception] = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"All providers failed after {attempts} attempts{detail}")
