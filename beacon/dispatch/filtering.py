"""Recipient eligibility filtering."""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from beacon.domain.models import Severity
from beacon.logging import get_logger
from beacon.utils.timestamps import utc_now

from .exceptions import NoEligibleRecipientsError
from .models import DispatchRequest, Recipient

logger = get_logger(__name__, component="dispatch")


def exclusion_reason(request: DispatchRequest, recipient: Recipient, now: datetime) -> Optional[str]:
    """Return why a recipient must not receive the request, or None if eligible.

    Checks, in order: category opt-in, minimum severity, quiet hours
    (ignored for critical requests) and enabled channels.
    """
    preferences = recipient.preferences

    if request.category not in preferences.categories:
        return f"not opted into category {request.category.value}"

    minimum = preferences.minimum_severity
    if minimum is not None and not request.severity.at_least(minimum):
        return f"severity {request.severity.value} below minimum {minimum.value}"

    if (
        preferences.quiet_hours is not None
        and request.severity != Severity.CRITICAL
        and preferences.quiet_hours.contains(now)
    ):
        return "inside quiet hours"

    if not preferences.enabled_channels():
        return "no enabled channels"

    return None


class RecipientFilter:
    """Applies per-recipient preferences to a request."""

    def __init__(self, clock=utc_now):
        self.clock = clock

    def filter(
        self,
        request: DispatchRequest,
        recipients: Optional[Sequence[Recipient]] = None,
        now: Optional[datetime] = None,
    ) -> List[Recipient]:
        """Return eligible recipients, preserving input order.

        Args:
            request: Request being dispatched
            recipients: Candidates (defaults to the request's recipients)
            now: Evaluation instant for quiet hours (defaults to the clock)

        Raises:
            NoEligibleRecipientsError: If no recipient remains
        """
        now = now or self.clock()
        candidates = request.recipients if recipients is None else recipients

        eligible: List[Recipient] = []
        reasons: Dict[str, str] = {}
        for recipient in candidates:
            reason = exclusion_reason(request, recipient, now)
            if reason is None:
                eligible.append(recipient)
                continue

            reasons[recipient.id] = reason
            logger.debug(
                f"Recipient {recipient.id} filtered out: {reason}",
                extra={"event": "dispatch.recipient.filtered", "recipient_id": recipient.id, "reason": reason},
            )

        if not eligible:
            raise NoEligibleRecipientsError(
                f"No eligible recipients among {len(candidates)} for request {request.id or request.type}",
                reasons=reasons,
            )

        return eligible
