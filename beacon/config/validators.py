"""Non-fatal configuration checks."""

import warnings
from typing import Any, Dict, List


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check a raw configuration for likely mistakes that are still valid.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    messages = []

    scheduler = config_dict.get("scheduler") or {}
    if isinstance(scheduler, dict):
        for schedule in scheduler.get("schedules") or []:
            if isinstance(schedule, dict) and not schedule.get("enabled", True):
                messages.append(f"Schedule '{schedule.get('name', 'Unknown')}' is disabled and will not fire")

    dispatch = config_dict.get("dispatch") or {}
    if isinstance(dispatch, dict):
        max_retries = dispatch.get("max_retries", 3)
        delay = dispatch.get("retry_base_delay", 1.0)
        if isinstance(max_retries, int) and isinstance(delay, (int, float)) and max_retries > 1:
            # Worst-case blocking time of one delivery, excluding transport timeouts
            total = delay * (2 ** (max_retries - 1) - 1)
            if total > 120:
                messages.append(
                    f"Retry backoff can block a delivery for {total:.0f} seconds; "
                    "consider lowering max_retries or retry_base_delay"
                )

    rules = config_dict.get("rules") or []
    if isinstance(rules, list):
        for rule in rules:
            if isinstance(rule, dict) and rule.get("is_active", True) is False:
                messages.append(f"Rule '{rule.get('id', 'Unknown')}' is inactive and will be ignored")

    return messages


def emit_warnings(warning_messages: List[str]) -> None:
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
