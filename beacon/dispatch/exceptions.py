"""Exceptions raised by the dispatch pipeline."""

from typing import Dict, Optional


class DispatchError(Exception):
    """Base exception for dispatch errors."""

    pass


class NoEligibleRecipientsError(DispatchError):
    """Filtering removed every recipient of a request.

    This is not a transport failure: callers decide whether to fall back
    to a default channel or drop the request.

    Attributes:
        reasons: Mapping of recipient id to the reason it was excluded
    """

    def __init__(self, message: str, reasons: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.reasons = reasons or {}


class NotificationTemplateError(DispatchError):
    """Template missing or failed to render."""

    def __init__(self, message: str, template: str = "") -> None:
        super().__init__(message)
        self.template = template
