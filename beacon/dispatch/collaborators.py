"""Storage interfaces used by the dispatch engine, plus in-memory implementations.

The SQLAlchemy-backed implementations live in beacon.persistence.stores.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Sequence

from beacon.domain.models import DeliveryOutcome

from .models import DispatchRequest, Recipient


@dataclass(frozen=True)
class ScheduledNotification:
    """A request persisted for delivery at a later instant."""

    id: str
    request: DispatchRequest
    recipients: List[Recipient]
    scheduled_for: datetime


@dataclass(frozen=True)
class DispatchRecord:
    dispatch_id: str
    request: DispatchRequest
    outcomes: List[DeliveryOutcome]


class DeferredStore(ABC):
    """Durable storage for deferred notifications."""

    @abstractmethod
    def save_scheduled(
        self, request: DispatchRequest, recipients: Sequence[Recipient], scheduled_for: datetime
    ) -> str:
        """Persist a request for later delivery and return its id."""

    @abstractmethod
    def claim_due(self, now: datetime) -> List[ScheduledNotification]:
        """Remove and return every notification scheduled at or before `now`."""


class DispatchRecordStore(ABC):
    """Audit storage for completed dispatches."""

    @abstractmethod
    def save_dispatch_result(
        self, dispatch_id: str, request: DispatchRequest, outcomes: Sequence[DeliveryOutcome]
    ) -> None:
        """Persist the outcomes of one dispatch."""


class InMemoryDeferredStore(DeferredStore):
    def __init__(self):
        self.pending: Dict[str, ScheduledNotification] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def save_scheduled(
        self, request: DispatchRequest, recipients: Sequence[Recipient], scheduled_for: datetime
    ) -> str:
        with self._lock:
            scheduled_id = f"scheduled_{next(self._ids)}"
            self.pending[scheduled_id] = ScheduledNotification(
                id=scheduled_id,
                request=request,
                recipients=list(recipients),
                scheduled_for=scheduled_for,
            )
        return scheduled_id

    def claim_due(self, now: datetime) -> List[ScheduledNotification]:
        with self._lock:
            due = [n for n in self.pending.values() if n.scheduled_for <= now]
            for notification in due:
                del self.pending[notification.id]
        return sorted(due, key=lambda n: n.scheduled_for)


class InMemoryDispatchRecordStore(DispatchRecordStore):
    def __init__(self):
        self.records: List[DispatchRecord] = []
        self._lock = threading.Lock()

    def save_dispatch_result(
        self, dispatch_id: str, request: DispatchRequest, outcomes: Sequence[DeliveryOutcome]
    ) -> None:
        with self._lock:
            self.records.append(DispatchRecord(dispatch_id, request, list(outcomes)))
