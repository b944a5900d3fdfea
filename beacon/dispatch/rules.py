"""Rule engine: rewrites dispatch requests that match configured rules."""

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from beacon.logging import get_logger
from beacon.utils.timestamps import utc_now

from .models import DispatchRequest, NotificationRule

logger = get_logger(__name__, component="dispatch")


def rule_matches(rule: NotificationRule, request: DispatchRequest, now: datetime) -> bool:
    """Check every condition present on the rule against the request.

    Keywords match when any keyword occurs, case-insensitively, in the
    title or message.
    """
    conditions = rule.conditions

    if conditions.categories is not None and request.category not in conditions.categories:
        return False

    if conditions.severities is not None and request.severity not in conditions.severities:
        return False

    if conditions.keywords:
        content = f"{request.title} {request.message}".lower()
        if not any(keyword in content for keyword in conditions.keywords):
            return False

    if conditions.time_range is not None and not conditions.time_range.contains(now):
        return False

    return True


def apply_rules(
    rules: Iterable[NotificationRule],
    request: DispatchRequest,
    now: Optional[datetime] = None,
) -> DispatchRequest:
    """Apply matching active rules in descending priority order.

    Lower-priority rules are applied later, so they win when several
    rules set the same field. A delay becomes `scheduled_for = now + delay`.

    Returns:
        A new request; the input is never modified
    """
    now = now or utc_now()
    matching = sorted(
        (r for r in rules if r.is_active and rule_matches(r, request, now)),
        key=lambda r: r.priority,
        reverse=True,
    )
    if not matching:
        return request

    changes: Dict[str, Any] = {}
    for rule in matching:
        actions = rule.actions
        if actions.channels is not None:
            changes["channels"] = list(actions.channels)
        if actions.delay is not None:
            changes["scheduled_for"] = now + actions.delay
        if actions.template is not None:
            changes["template"] = actions.template

        logger.debug(
            f"Applied notification rule {rule.name}",
            extra={"event": "dispatch.rule.applied", "rule_id": rule.id, "notification_type": request.type},
        )

    return request.model_copy(update=changes)


class RuleEngine:
    """In-memory rule set owned by the dispatch engine.

    Rules are replaced copy-on-write so evaluation never takes a lock.
    """

    def __init__(self, rules: Optional[Iterable[NotificationRule]] = None):
        self._rules: Dict[str, NotificationRule] = {r.id: r for r in rules or []}
        self._lock = threading.Lock()

    def add_rule(self, rule: NotificationRule) -> None:
        """Add or replace a rule by id."""
        with self._lock:
            self._rules = {**self._rules, rule.id: rule}
        logger.info(
            f"Notification rule registered: {rule.name}",
            extra={"event": "dispatch.rule.added", "rule_id": rule.id, "priority": rule.priority},
        )

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            if rule_id not in self._rules:
                return False
            remaining = dict(self._rules)
            del remaining[rule_id]
            self._rules = remaining
        return True

    def get_rule(self, rule_id: str) -> Optional[NotificationRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[NotificationRule]:
        return sorted(self._rules.values(), key=lambda r: r.priority, reverse=True)

    def apply(self, request: DispatchRequest, now: Optional[datetime] = None) -> DispatchRequest:
        return apply_rules(self._rules.values(), request, now)
