"""Scheduler loop: periodic scan of the registry that fires due schedules."""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from beacon.logging import get_logger
from beacon.logging.context import log_context
from beacon.utils.timestamps import utc_now

from .collaborators import JobCreator, RunCounter, ScheduleListener, notify_listeners
from .cron import next_run
from .exceptions import NoUpcomingRunError
from .models import FireResult, JobHandle, ScheduleConfig, TickResult
from .registry import ScheduleRegistry

logger = get_logger(__name__, component="scheduler")

TICK_JOB_ID = "scheduler-tick"


class SchedulerLoop:
    """
    Fires due schedules on a fixed tick.

    The loop is either stopped or running. While running, APScheduler's
    BackgroundScheduler calls tick() every `tick_interval_seconds`; each tick
    fires its due schedules concurrently on a small thread pool and waits for
    all of them before returning. A schedule still being fired is skipped by
    any overlapping tick.

    Firing is at-least-once: the job is created before next_run is advanced,
    so a crash in between fires the same interval again after restart.
    """

    def __init__(
        self,
        registry: ScheduleRegistry,
        job_creator: JobCreator,
        run_counter: Optional[RunCounter] = None,
        tick_interval_seconds: int = 60,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
        listeners: Optional[List[ScheduleListener]] = None,
    ):
        """
        Initialize the scheduler loop.

        Args:
            registry: Schedule registry scanned on every tick
            job_creator: Collaborator that creates a job per fire
            run_counter: Collaborator used to enforce max_concurrent_runs
            tick_interval_seconds: Seconds between ticks
            max_workers: Maximum schedules fired in parallel within one tick
            clock: Source of "now" (injectable for tests)
            listeners: Observers notified of fires and fire errors
        """
        self.registry = registry
        self.job_creator = job_creator
        self.run_counter = run_counter
        self.tick_interval_seconds = tick_interval_seconds
        self.max_workers = max_workers
        self.clock = clock
        self.listeners: List[ScheduleListener] = list(listeners or [])

        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    def start(self) -> None:
        """Start ticking. Calling start() on a running loop is a no-op."""
        if self.is_running():
            return

        self._scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": self.tick_interval_seconds,
            },
            timezone=timezone.utc,
        )
        self._scheduler.add_job(
            func=self.tick,
            trigger=IntervalTrigger(seconds=self.tick_interval_seconds, timezone=timezone.utc),
            id=TICK_JOB_ID,
            name="Schedule tick",
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()

        logger.info(
            f"Scheduler started with tick interval: {self.tick_interval_seconds} seconds",
            extra={
                "event": "scheduler.started",
                "tick_interval_seconds": self.tick_interval_seconds,
                "schedule_count": len(self.registry),
            },
        )

    def stop(self, wait: bool = True) -> None:
        """
        Stop ticking.

        Args:
            wait: If True, wait for an in-progress tick to finish
        """
        if not self.is_running():
            return

        logger.info(
            "Stopping scheduler",
            extra={"event": "scheduler.stopping", "wait_for_tick": wait},
        )
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Scheduler stopped", extra={"event": "scheduler.stopped"})

    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Fire every due schedule once.

        Args:
            now: Evaluation instant (defaults to the clock)

        Returns:
            TickResult with one FireResult per fired schedule and the reasons
            for schedules that were due but skipped
        """
        now = now or self.clock()
        result = TickResult(tick_id=uuid.uuid4().hex[:8], started_at=now)

        with log_context(tick_id=result.tick_id):
            due = self.registry.list_due(now)
            logger.debug(
                f"Scheduler tick found {len(due)} due schedules",
                extra={"event": "scheduler.tick.started", "due_count": len(due)},
            )

            to_fire: List[ScheduleConfig] = []
            for schedule in due:
                reason = self._skip_reason(schedule)
                if reason:
                    result.skipped[schedule.id] = reason
                    logger.info(
                        f"Skipping schedule {schedule.name}: {reason}",
                        extra={"event": "scheduler.fire.skipped", "schedule_id": schedule.id, "reason": reason},
                    )
                    continue
                to_fire.append(schedule)

            if to_fire:
                try:
                    with ThreadPoolExecutor(
                        max_workers=max(1, min(self.max_workers, len(to_fire))),
                        thread_name_prefix="schedule-fire",
                    ) as executor:
                        futures = [executor.submit(self._fire, s, now) for s in to_fire]
                        result.fired = [f.result() for f in futures]
                finally:
                    with self._in_flight_lock:
                        self._in_flight.difference_update(s.id for s in to_fire)

            logger.info(
                f"Scheduler tick completed: {len(result.succeeded)} fired, "
                f"{len(result.failed)} failed, {len(result.skipped)} skipped",
                extra={
                    "event": "scheduler.tick.completed",
                    "fired": len(result.succeeded),
                    "failed": len(result.failed),
                    "skipped": len(result.skipped),
                },
            )

        return result

    def trigger_now(self, schedule_id: str) -> Optional[FireResult]:
        """
        Create a job for a schedule immediately, outside its cron timing.

        Only `last_run` is updated; the cron-driven `next_run` is unchanged.

        Returns:
            FireResult, or None if the schedule is unknown or disabled
        """
        schedule = self.registry.get(schedule_id)
        if schedule is None or not schedule.enabled:
            return None

        now = self.clock()
        with log_context(schedule_id=schedule_id):
            logger.info(
                f"Manually triggering schedule {schedule.name}",
                extra={"event": "scheduler.trigger_now", "job_type": schedule.job.type},
            )
            try:
                job = self.job_creator.create_job(
                    schedule.job.type, schedule.job.params, self._job_metadata(schedule, now, manual=True)
                )
            except Exception as e:
                self._report_failure(schedule, e)
                return FireResult(schedule_id=schedule_id, fired_at=now, success=False, error=str(e),
                                  next_run=schedule.next_run)

            updated = self.registry.record_manual_run(schedule_id, now) or schedule
            notify_listeners(self.listeners, "on_job_scheduled", updated, job)
            return FireResult(schedule_id=schedule_id, fired_at=now, success=True, job=job,
                              next_run=updated.next_run)

    def stats(self) -> Dict[str, Any]:
        """Snapshot of scheduler state for status reporting."""
        schedules = self.registry.list_all()
        upcoming = [s.next_run for s in schedules if s.enabled and s.next_run is not None]
        return {
            "running": self.is_running(),
            "total_schedules": len(schedules),
            "enabled_schedules": sum(1 for s in schedules if s.enabled),
            "next_run": min(upcoming) if upcoming else None,
            "tick_interval_seconds": self.tick_interval_seconds,
        }

    def _skip_reason(self, schedule: ScheduleConfig) -> Optional[str]:
        """Return why a due schedule must not fire now, claiming it otherwise."""
        if schedule.max_concurrent_runs is not None:
            running = self._count_running(schedule)
            if running >= schedule.max_concurrent_runs:
                return f"concurrency cap reached ({running}/{schedule.max_concurrent_runs})"

        with self._in_flight_lock:
            if schedule.id in self._in_flight:
                return "already in flight"
            self._in_flight.add(schedule.id)
        return None

    def _count_running(self, schedule: ScheduleConfig) -> int:
        """Count this schedule's running jobs; 0 when unknown."""
        if self.run_counter is None:
            return 0
        try:
            return self.run_counter.count_running(schedule.job.type, schedule.id)
        except Exception as e:
            # An unknown count must not block the schedule forever
            logger.warning(
                f"Could not count running jobs for schedule {schedule.id}: {e}",
                extra={"event": "scheduler.run_count.failed", "schedule_id": schedule.id},
            )
            return 0

    def _fire(self, schedule: ScheduleConfig, now: datetime) -> FireResult:
        """
        Create the schedule's job and advance its timing.

        Never raises: a failure is reported through the log and listeners and
        returned as an unsuccessful FireResult.
        """
        with log_context(schedule_id=schedule.id):
            try:
                job = self.job_creator.create_job(
                    schedule.job.type, schedule.job.params, self._job_metadata(schedule, now)
                )
            except Exception as e:
                # next_run stays put so the next tick retries this interval
                self._report_failure(schedule, e)
                return FireResult(
                    schedule_id=schedule.id,
                    fired_at=now,
                    success=False,
                    next_run=schedule.next_run,
                    error=str(e),
                )

            try:
                return self._advance(schedule, job, now)
            except Exception as e:
                # The job exists; the stale next_run may fire this interval again
                self._report_failure(schedule, e, stage="schedule update")
                return FireResult(
                    schedule_id=schedule.id,
                    fired_at=now,
                    success=False,
                    job=job,
                    next_run=schedule.next_run,
                    error=str(e),
                )

    def _advance(self, schedule: ScheduleConfig, job: JobHandle, now: datetime) -> FireResult:
        """Record a fire and compute the next run; disable schedules with none left."""
        try:
            upcoming = next_run(schedule.cron, schedule.timezone, now)
        except NoUpcomingRunError as e:
            self.registry.record_fire(schedule.id, now, None)
            updated = self.registry.disable(schedule.id) or schedule
            logger.error(
                f"Schedule {schedule.name} has no upcoming run and was disabled: {e}",
                extra={"event": "scheduler.schedule.exhausted", "job_id": job.id},
            )
            notify_listeners(self.listeners, "on_job_scheduled", updated, job)
            notify_listeners(self.listeners, "on_schedule_error", updated, e)
            return FireResult(
                schedule_id=schedule.id, fired_at=now, success=True, job=job, disabled=True
            )

        updated = self.registry.record_fire(schedule.id, now, upcoming) or schedule
        logger.info(
            f"Schedule fired: {schedule.name}",
            extra={
                "event": "scheduler.fire.succeeded",
                "job_id": job.id,
                "job_type": schedule.job.type,
                "next_run": upcoming,
            },
        )
        notify_listeners(self.listeners, "on_job_scheduled", updated, job)
        return FireResult(
            schedule_id=schedule.id, fired_at=now, success=True, job=job, next_run=upcoming
        )

    def _report_failure(self, schedule: ScheduleConfig, error: Exception, stage: str = "job creation") -> None:
        """Log a failed fire and notify listeners with the error."""
        logger.error(
            f"Schedule {schedule.name} failed during {stage}: {error}",
            exc_info=True,
            extra={
                "event": "scheduler.fire.failed",
                "job_type": schedule.job.type,
                "stage": stage,
                "error_type": type(error).__name__,
            },
        )
        notify_listeners(self.listeners, "on_schedule_error", schedule, error)

    @staticmethod
    def _job_metadata(schedule: ScheduleConfig, now: datetime, manual: bool = False) -> Dict[str, Any]:
        metadata = {
            "schedule_id": schedule.id,
            "schedule_name": schedule.name,
            "scheduled_at": now.isoformat(),
            "tags": ["scheduled", f"schedule:{schedule.id}"],
        }
        if manual:
            metadata["manual"] = True
        return metadata
