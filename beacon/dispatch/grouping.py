"""Channel selection: each recipient gets exactly one channel per request."""

from typing import Dict, Iterable, List, Optional

from beacon.domain.models import ChannelType

from .models import Recipient


def select_channel(
    recipient: Recipient, allowed: Optional[Iterable[ChannelType]] = None
) -> Optional[ChannelType]:
    """Highest-priority enabled channel that is allowed, or None."""
    allowed_set = set(allowed) if allowed is not None else None
    for preference in recipient.preferences.enabled_channels():
        if allowed_set is None or preference.type in allowed_set:
            return preference.type
    return None


def group_by_channel(
    recipients: Iterable[Recipient], allowed: Optional[Iterable[ChannelType]] = None
) -> Dict[ChannelType, List[Recipient]]:
    """Group recipients by their selected channel.

    Recipients with no allowed enabled channel are left out.
    """
    allowed_list = list(allowed) if allowed is not None else None
    groups: Dict[ChannelType, List[Recipient]] = {}
    for recipient in recipients:
        channel = select_channel(recipient, allowed_list)
        if channel is not None:
            groups.setdefault(channel, []).append(recipient)
    return groups
