"""Notification dispatch pipeline.

This module provides the complete dispatch pipeline:
- DispatchEngine: rules, recipient filtering, batching, deferral and delivery
- RuleEngine: priority-ordered request rewriting
- RecipientFilter / group_by_channel: eligibility and channel selection
- BatchAggregator: periodic digests for batched recipients
- DeferredDispatchPoller: releases requests scheduled for later
- TemplateRenderer: Jinja2 rendering of notification content
"""

from .batching import BatchAggregator, batch_key, build_digest
from .collaborators import (
    DeferredStore,
    DispatchRecordStore,
    InMemoryDeferredStore,
    InMemoryDispatchRecordStore,
    ScheduledNotification,
)
from .deferred import DeferredDispatchPoller
from .engine import DispatchEngine
from .exceptions import DispatchError, NoEligibleRecipientsError, NotificationTemplateError
from .filtering import RecipientFilter
from .grouping import group_by_channel, select_channel
from .models import (
    ChannelPreference,
    DispatchRequest,
    DispatchResult,
    NotificationRule,
    Recipient,
    RecipientPreferences,
    RuleActions,
    RuleConditions,
    TimeWindow,
)
from .rules import RuleEngine, apply_rules, rule_matches
from .templates import RenderedContent, TemplateRenderer

__all__ = [
    # Main service
    "DispatchEngine",
    "DeferredDispatchPoller",
    # Components
    "RuleEngine",
    "RecipientFilter",
    "BatchAggregator",
    "TemplateRenderer",
    "RenderedContent",
    # Models
    "DispatchRequest",
    "DispatchResult",
    "Recipient",
    "RecipientPreferences",
    "ChannelPreference",
    "TimeWindow",
    "NotificationRule",
    "RuleConditions",
    "RuleActions",
    # Collaborators
    "DeferredStore",
    "DispatchRecordStore",
    "InMemoryDeferredStore",
    "InMemoryDispatchRecordStore",
    "ScheduledNotification",
    # Exceptions
    "DispatchError",
    "NoEligibleRecipientsError",
    "NotificationTemplateError",
    # Utilities
    "apply_rules",
    "rule_matches",
    "group_by_channel",
    "select_channel",
    "batch_key",
    "build_digest",
]
