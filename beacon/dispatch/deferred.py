"""Release of deferred notifications once their scheduled time arrives."""

from datetime import datetime, timezone
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from beacon.logging import get_logger
from beacon.utils.timestamps import utc_now

from .collaborators import DeferredStore
from .engine import DispatchEngine
from .models import DispatchResult

logger = get_logger(__name__, component="dispatch")

POLL_JOB_ID = "deferred-poll"


class DeferredDispatchPoller:
    """
    Claims due notifications from the deferred store and dispatches them.

    Rules are not re-applied: they already ran when the request first
    entered the engine, and re-applying a delay rule would defer it again.
    Recipients are re-filtered, since preferences or quiet hours may have
    changed in the meantime.
    """

    def __init__(
        self,
        engine: DispatchEngine,
        store: Optional[DeferredStore] = None,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self.store = store or engine.deferred_store
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._scheduler: Optional[BackgroundScheduler] = None

    def poll(self, now: Optional[datetime] = None) -> List[DispatchResult]:
        """Dispatch every notification scheduled at or before `now`."""
        now = now or self.clock()
        due = self.store.claim_due(now)
        if not due:
            return []

        logger.info(
            f"Releasing {len(due)} deferred notifications",
            extra={"event": "dispatch.deferred.released", "count": len(due)},
        )

        results = []
        for notification in due:
            request = notification.request.model_copy(
                update={"recipients": notification.recipients, "scheduled_for": None}
            )
            try:
                results.append(self.engine.dispatch(request, apply_rules=False))
            except Exception as e:
                logger.error(
                    f"Deferred dispatch {notification.id} failed: {e}",
                    exc_info=True,
                    extra={"event": "dispatch.deferred.failed", "scheduled_id": notification.id},
                )
        return results

    def start(self) -> None:
        if self._scheduler is not None:
            return

        self._scheduler = BackgroundScheduler(
            job_defaults={"max_instances": 1, "coalesce": True},
            timezone=timezone.utc,
        )
        self._scheduler.add_job(
            func=self.poll,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc),
            id=POLL_JOB_ID,
            name="Deferred notification poll",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Deferred poller started with interval: {self.interval_seconds} seconds",
            extra={"event": "dispatch.deferred.poller_started", "interval_seconds": self.interval_seconds},
        )

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
