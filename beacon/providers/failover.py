"""Ordered failover across the providers of one channel.

Every provider is tried once per round, in order, without delay; only when
a whole round fails does the controller back off (`base_delay * 2**round`)
before starting the next one.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from beacon.logging import get_logger

from .base import DeliveryProvider, ProviderMessage
from .exceptions import AllProvidersFailedError, ProviderConfigurationError, ProviderError

logger = get_logger(__name__, component="provider")


@dataclass
class SendOutcome:
    """Result of one failover run.

    Attributes:
        success: Whether some provider accepted the message
        provider: Provider that accepted it (or the last one tried on failure)
        message_id: Transport message id from the accepting provider
        error: Final error description on failure
        attempts: Total number of provider send calls made
        errors: Every error seen, in order, as "provider: message"
    """

    success: bool
    provider: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    errors: List[str] = field(default_factory=list)


def send_with_failover(
    providers: Sequence[DeliveryProvider],
    message: ProviderMessage,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SendOutcome:
    """Deliver a message through the first provider that accepts it.

    Args:
        providers: Providers in preference order
        message: Channel-specific message passed unchanged to each provider
        max_retries: Number of rounds through the provider list (at least 1)
        base_delay: Seconds to wait after the first failed round; doubles per round
        sleep: Blocking wait function (injectable for tests)

    Returns:
        SendOutcome; never raises for provider failures
    """
    if not providers:
        error = ProviderConfigurationError("No providers configured for this channel")
        return SendOutcome(success=False, error=str(error), errors=[str(error)])

    rounds = max(1, max_retries)
    attempts = 0
    errors: List[str] = []
    last_error: Optional[Exception] = None
    last_provider: Optional[str] = None

    for attempt in range(rounds):
        for provider in providers:
            attempts += 1
            last_provider = provider.name
            try:
                receipt = provider.send(message)
            except ProviderError as e:
                last_error = e
            except Exception as e:
                # Untyped errors are provider bugs; they still count as a failed attempt
                logger.error(
                    f"Provider {provider.name} raised an untyped error: {e}",
                    exc_info=True,
                    extra={"event": "delivery.provider.bug", "provider": provider.name},
                )
                last_error = e
            else:
                if attempt or errors:
                    logger.info(
                        f"Delivered via {provider.name} after {attempts} attempts",
                        extra={
                            "event": "delivery.failover.recovered",
                            "provider": provider.name,
                            "attempts": attempts,
                        },
                    )
                return SendOutcome(
                    success=True,
                    provider=receipt.provider,
                    message_id=receipt.message_id,
                    attempts=attempts,
                    errors=errors,
                )

            errors.append(f"{provider.name}: {last_error}")
            logger.warning(
                f"Delivery attempt via {provider.name} failed: {last_error}",
                extra={
                    "event": "delivery.attempt.failed",
                    "provider": provider.name,
                    "attempt": attempt + 1,
                    "error_type": type(last_error).__name__,
                },
            )

        if attempt < rounds - 1:
            delay = base_delay * (2 ** attempt)
            logger.debug(
                f"All providers failed in round {attempt + 1}, retrying in {delay} seconds",
                extra={"event": "delivery.retry.scheduled", "delay_seconds": delay},
            )
            sleep(delay)

    exhausted = AllProvidersFailedError(attempts, last_error)
    logger.error(
        str(exhausted),
        extra={
            "event": "delivery.failover.exhausted",
            "attempts": attempts,
            "providers": [p.name for p in providers],
        },
    )
    return SendOutcome(
        success=False,
        provider=last_provider,
        error=str(exhausted),
        attempts=attempts,
        errors=errors,
    )


class FailoverController:
    """Failover policy bound to a retry budget.

    Holds `max_retries` and `base_delay` so callers only pass providers and
    the message.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    def send(self, providers: Sequence[DeliveryProvider], message: ProviderMessage) -> SendOutcome:
        return send_with_failover(
            providers,
            message,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            sleep=self.sleep,
        )
