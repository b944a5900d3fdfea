"""Batch aggregation of low-urgency requests into periodic digests."""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from beacon.domain.models import Severity
from beacon.logging import get_logger
from beacon.utils.timestamps import format_timestamp, utc_now

from .models import DispatchRequest, DispatchResult, Recipient

logger = get_logger(__name__, component="dispatch")

DIGEST_TEMPLATE = "batch_digest"
FLUSH_JOB_ID = "batch-flush"

FlushHandler = Callable[[DispatchRequest, List[Recipient]], DispatchResult]


@dataclass(frozen=True)
class BatchEntry:
    """One queued request with the recipients it resolved to."""

    request: DispatchRequest
    recipients: List[Recipient]
    queued_at: datetime


def batch_key(request: DispatchRequest) -> str:
    """Return the queue key for a request: "<category>_<type>"."""
    return f"{request.category.value}_{request.type}"


def build_digest(key: str, entries: Sequence[BatchEntry]) -> Tuple[DispatchRequest, List[Recipient]]:
    """Combine queued entries into one digest request.

    The digest carries the highest severity of its entries, a bulleted
    message of their titles, and the union of their recipients
    (deduplicated by id, first occurrence wins).

    Args:
        key: Batch key the entries were queued under
        entries: Queued entries, oldest first

    Returns:
        (digest request, recipients)
    """
    first = entries[0].request
    count = len(entries)

    recipients: Dict[str, Recipient] = {}
    for entry in entries:
        for recipient in entry.recipients:
            recipients.setdefault(recipient.id, recipient)

    channels = None
    if all(e.request.channels is not None for e in entries):
        channels = []
        for entry in entries:
            channels.extend(c for c in entry.request.channels if c not in channels)

    severity = max((e.request.severity for e in entries), key=lambda s: s.rank)
    title = f"{count} {first.category.value} notifications"

    digest = DispatchRequest(
        id=f"batch_{uuid.uuid4().hex[:12]}",
        type=first.type,
        category=first.category,
        severity=severity,
        title=title,
        message="\n".join(f"• {e.request.title}" for e in entries),
        recipients=list(recipients.values()),
        channels=channels,
        template=DIGEST_TEMPLATE,
        template_data={
            "count": count,
            "notifications": [
                {
                    "title": e.request.title,
                    "message": e.request.message,
                    "severity": e.request.severity.value,
                    "queued_at": format_timestamp(e.queued_at),
                }
                for e in entries
            ],
        },
        metadata={
            "batch_key": key,
            "batched_request_ids": [e.request.id for e in entries if e.request.id],
        },
    )
    return digest, list(recipients.values())


class BatchAggregator:
    """
    Queues requests per (category, type) and flushes them as digests.

    A BackgroundScheduler flushes every queue on a fixed interval; each
    non-empty queue becomes one digest request handed to `flush_handler`
    (the dispatch engine's immediate delivery path).
    """

    def __init__(
        self,
        flush_handler: FlushHandler,
        interval_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.flush_handler = flush_handler
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._queues: Dict[str, List[BatchEntry]] = {}
        self._lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    def enqueue(self, request: DispatchRequest, recipients: Sequence[Recipient]) -> str:
        """Queue a request for the next flush. Critical requests are rejected."""
        if request.severity == Severity.CRITICAL:
            raise ValueError("Critical requests bypass batching")

        key = batch_key(request)
        entry = BatchEntry(request=request, recipients=list(recipients), queued_at=self.clock())
        with self._lock:
            self._queues.setdefault(key, []).append(entry)
            queued = len(self._queues[key])

        logger.info(
            f"Request queued for batch {key}",
            extra={"event": "dispatch.batched", "batch_key": key, "queued": queued},
        )
        return key

    def pending_count(self, key: Optional[str] = None) -> int:
        """Count queued requests for one key, or across all keys."""
        with self._lock:
            if key is not None:
                return len(self._queues.get(key, []))
            return sum(len(entries) for entries in self._queues.values())

    def keys(self) -> List[str]:
        """Return the keys that currently have queued requests."""
        with self._lock:
            return [k for k, entries in self._queues.items() if entries]

    def flush(self, key: str, now: Optional[datetime] = None) -> Optional[DispatchResult]:
        """
        Flush one queue.

        If delivery raises, the queued requests are put back and the error
        propagates.

        Args:
            key: Batch key to flush
            now: Flush time (default: clock)

        Returns:
            DispatchResult of the digest, or None if nothing was due
        """
        with self._lock:
            entries = self._queues.pop(key, [])
        return self._deliver(key, entries, now or self.clock())

    def flush_all(self, now: Optional[datetime] = None) -> List[DispatchResult]:
        """
        Flush every queue; a failing queue does not stop the others.

        Requests of a queue whose delivery failed stay queued for the next
        flush.

        Returns:
            DispatchResults of the digests that were delivered
        """
        now = now or self.clock()
        with self._lock:
            queues, self._queues = self._queues, {}

        results = []
        for key, entries in queues.items():
            try:
                result = self._deliver(key, entries, now)
            except Exception as e:
                logger.error(
                    f"Batch flush failed for {key}: {e}",
                    exc_info=True,
                    extra={"event": "batch.flush.failed", "batch_key": key},
                )
                continue
            if result is not None:
                results.append(result)
        return results

    def _requeue(self, key: str, entries: List[BatchEntry]) -> None:
        """Put entries back at the front of their queue, ahead of newer arrivals."""
        if not entries:
            return
        with self._lock:
            self._queues[key] = list(entries) + self._queues.get(key, [])

    def _deliver(self, key: str, entries: List[BatchEntry], now: datetime) -> Optional[DispatchResult]:
        """
        Build and hand off the digest for one queue's entries.

        Expired entries are dropped. Entries scheduled for a later instant
        are held back in the queue until they are due.
        """
        held = [e for e in entries if e.request.is_deferred(now)]
        due = [e for e in entries if not e.request.is_deferred(now)]
        live = [e for e in due if not e.request.is_expired(now)]

        dropped = len(due) - len(live)
        if dropped:
            logger.info(
                f"Dropped {dropped} expired requests from batch {key}",
                extra={"event": "batch.expired_dropped", "batch_key": key, "dropped": dropped},
            )
        if held:
            self._requeue(key, held)
            logger.debug(
                f"Held back {len(held)} requests in batch {key} until their scheduled time",
                extra={"event": "batch.held", "batch_key": key, "held": len(held)},
            )
        if not live:
            return None

        digest, recipients = build_digest(key, live)
        try:
            result = self.flush_handler(digest, recipients)
        except Exception:
            self._requeue(key, live)
            raise
        logger.info(
            f"Flushed batch {key} with {len(live)} requests",
            extra={
                "event": "batch.flushed",
                "batch_key": key,
                "request_count": len(live),
                "recipient_count": len(recipients),
                "successful": result.successful_count,
                "failed": result.failed_count,
            },
        )
        return result

    def start(self) -> None:
        """Start the periodic flush timer. Calling it twice is a no-op."""
        if self._scheduler is not None:
            return

        self._scheduler = BackgroundScheduler(
            job_defaults={"max_instances": 1, "coalesce": True},
            timezone=timezone.utc,
        )
        self._scheduler.add_job(
            func=self.flush_all,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc),
            id=FLUSH_JOB_ID,
            name="Batch flush",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Batch aggregator started with flush interval: {self.interval_seconds} seconds",
            extra={"event": "batch.started", "interval_seconds": self.interval_seconds},
        )

    def shutdown(self, flush: bool = True) -> List[DispatchResult]:
        """Stop the flush timer and optionally deliver what is still queued."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None

        results = self.flush_all() if flush else []
        logger.info(
            "Batch aggregator stopped",
            extra={"event": "batch.stopped", "flushed_batches": len(results)},
        )
        return results
