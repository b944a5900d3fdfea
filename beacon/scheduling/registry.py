"""Schedule registry: the authoritative in-memory set of schedules.

Writes are serialized by a single writer lock and always go to the store
first; the in-memory view is replaced wholesale afterwards, so readers
never take a lock and never observe state the store does not have.
"""

import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from beacon.logging import get_logger
from beacon.utils.timestamps import utc_now

from .collaborators import ScheduleListener, ScheduleStore, notify_listeners
from .cron import next_run, validate_cron
from .exceptions import InvalidCronError, InvalidScheduleError, NoUpcomingRunError
from .models import ScheduleConfig, ScheduleSpec, ScheduleUpdate

logger = get_logger(__name__, component="scheduler")


def generate_schedule_id() -> str:
    """Generate a short unique schedule id such as "sched_1a2b3c4d5e6f"."""
    return f"sched_{uuid.uuid4().hex[:12]}"


class ScheduleRegistry:
    """Owns the set of schedules and their computed run times."""

    def __init__(
        self,
        store: ScheduleStore,
        listeners: Optional[List[ScheduleListener]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the registry.

        Args:
            store: Durable schedule storage; every mutation is saved here first
            listeners: Optional observers of schedule lifecycle transitions
            clock: Source of "now" (injectable for tests)
        """
        self.store = store
        self.listeners: List[ScheduleListener] = list(listeners or [])
        self.clock = clock
        self._schedules: Dict[str, ScheduleConfig] = {}
        self._write_lock = threading.Lock()

    def add_listener(self, listener: ScheduleListener) -> None:
        """Register an observer for schedule lifecycle transitions."""
        self.listeners.append(listener)

    def load(self) -> int:
        """
        Seed the registry from the store.

        Stored `next_run` values are kept even when they are in the past, so
        a fire missed while the service was down happens on the first tick.
        Schedules whose cron no longer evaluates are disabled.

        Returns:
            Number of schedules loaded
        """
        now = self.clock()
        loaded: Dict[str, ScheduleConfig] = {}

        for schedule in self.store.load_all_schedules():
            if schedule.enabled and schedule.next_run is None:
                try:
                    schedule = schedule.model_copy(
                        update={"next_run": next_run(schedule.cron, schedule.timezone, now)}
                    )
                except (InvalidCronError, NoUpcomingRunError) as e:
                    logger.error(
                        f"Disabling stored schedule {schedule.id}: {e}",
                        extra={"event": "schedule.disabled", "schedule_id": schedule.id},
                    )
                    schedule = schedule.model_copy(update={"enabled": False, "next_run": None})
                self.store.save_schedule(schedule)
            loaded[schedule.id] = schedule

        with self._write_lock:
            self._schedules = loaded

        logger.info(
            f"Loaded {len(loaded)} schedules from store",
            extra={"event": "schedule.registry.loaded", "schedule_count": len(loaded)},
        )
        return len(loaded)

    def add(self, spec: Union[ScheduleSpec, dict]) -> ScheduleConfig:
        """
        Validate and register a new schedule.

        Args:
            spec: Schedule definition (model or plain dict)

        Returns:
            The registered schedule with id and next_run assigned

        Raises:
            InvalidScheduleError: If the definition, cron or timezone is invalid,
                the cron never fires, or the id is already taken
        """
        try:
            if not isinstance(spec, ScheduleSpec):
                spec = ScheduleSpec.model_validate(spec)
            validate_cron(spec.cron, spec.timezone)
            upcoming = next_run(spec.cron, spec.timezone, self.clock()) if spec.enabled else None
        except ValidationError as e:
            raise InvalidScheduleError(f"Invalid schedule definition: {e}") from e
        except (InvalidCronError, NoUpcomingRunError) as e:
            raise InvalidScheduleError(f"Invalid schedule '{spec.name}': {e}") from e

        data = spec.model_dump()
        data["id"] = spec.id or generate_schedule_id()
        data["next_run"] = upcoming
        schedule = ScheduleConfig.model_validate(data)

        with self._write_lock:
            if schedule.id in self._schedules:
                raise InvalidScheduleError(f"Schedule id already exists: {schedule.id}")
            self.store.save_schedule(schedule)
            self._schedules = {**self._schedules, schedule.id: schedule}

        logger.info(
            f"Schedule added: {schedule.name}",
            extra={
                "event": "schedule.added",
                "schedule_id": schedule.id,
                "cron": schedule.cron,
                "timezone": schedule.timezone,
                "next_run": schedule.next_run,
            },
        )
        notify_listeners(self.listeners, "on_schedule_added", schedule)
        return schedule

    def update(
        self, schedule_id: str, partial: Union[ScheduleUpdate, dict]
    ) -> Optional[ScheduleConfig]:
        """
        Apply a partial update.

        `next_run` is recomputed when the cron or timezone changes, or when a
        disabled schedule is enabled, unless the update sets it explicitly.
        Disabling a schedule clears `next_run`.

        Returns:
            The updated schedule, or None if the id is unknown

        Raises:
            InvalidScheduleError: If the resulting schedule is invalid
        """
        try:
            if not isinstance(partial, ScheduleUpdate):
                partial = ScheduleUpdate.model_validate(partial)
        except ValidationError as e:
            raise InvalidScheduleError(f"Invalid schedule update: {e}") from e

        changes = partial.model_dump(exclude_unset=True)

        with self._write_lock:
            current = self._schedules.get(schedule_id)
            if current is None:
                return None

            merged = current.model_dump()
            merged.update(changes)

            try:
                updated = ScheduleConfig.model_validate(merged)
                validate_cron(updated.cron, updated.timezone)

                timing_changed = updated.cron != current.cron or updated.timezone != current.timezone
                if not updated.enabled:
                    updated = updated.model_copy(update={"next_run": None})
                elif "next_run" not in changes and (timing_changed or updated.next_run is None):
                    updated = updated.model_copy(
                        update={"next_run": next_run(updated.cron, updated.timezone, self.clock())}
                    )
            except ValidationError as e:
                raise InvalidScheduleError(f"Invalid schedule update: {e}") from e
            except (InvalidCronError, NoUpcomingRunError) as e:
                raise InvalidScheduleError(f"Invalid schedule '{current.name}': {e}") from e

            self.store.save_schedule(updated)
            self._schedules = {**self._schedules, schedule_id: updated}

        logger.info(
            f"Schedule updated: {updated.name}",
            extra={
                "event": "schedule.updated",
                "schedule_id": schedule_id,
                "changed_fields": sorted(changes),
                "next_run": updated.next_run,
            },
        )
        notify_listeners(self.listeners, "on_schedule_updated", updated)
        return updated

    def remove(self, schedule_id: str) -> bool:
        """Delete a schedule. Returns False if the id is unknown."""
        with self._write_lock:
            current = self._schedules.get(schedule_id)
            if current is None:
                return False

            self.store.delete_schedule(schedule_id)
            remaining = dict(self._schedules)
            del remaining[schedule_id]
            self._schedules = remaining

        logger.info(
            f"Schedule removed: {current.name}",
            extra={"event": "schedule.removed", "schedule_id": schedule_id},
        )
        notify_listeners(self.listeners, "on_schedule_removed", current)
        return True

    def get(self, schedule_id: str) -> Optional[ScheduleConfig]:
        """Return the schedule with this id, or None."""
        return self._schedules.get(schedule_id)

    def list_all(self) -> List[ScheduleConfig]:
        return list(self._schedules.values())

    def list_by_type(self, job_type: str) -> List[ScheduleConfig]:
        """Schedules that create jobs of the given type."""
        return [s for s in self._schedules.values() if s.job.type == job_type]

    def list_by_owner(self, created_by: str) -> List[ScheduleConfig]:
        """Schedules created by the given owner."""
        return [s for s in self._schedules.values() if s.created_by == created_by]

    def list_enabled(self) -> List[ScheduleConfig]:
        return [s for s in self._schedules.values() if s.enabled]

    def list_due(self, now: datetime) -> List[ScheduleConfig]:
        """Enabled schedules whose next run is at or before `now`, earliest first."""
        due = [s for s in self._schedules.values() if s.is_due(now)]
        return sorted(due, key=lambda s: s.next_run)

    def record_fire(
        self, schedule_id: str, fired_at: datetime, upcoming: Optional[datetime]
    ) -> Optional[ScheduleConfig]:
        """Set last_run and next_run after a fire. Used by the scheduler loop."""
        return self._replace(schedule_id, {"last_run": fired_at, "next_run": upcoming})

    def record_manual_run(self, schedule_id: str, fired_at: datetime) -> Optional[ScheduleConfig]:
        """Set last_run only; the cron-driven next_run is left alone."""
        return self._replace(schedule_id, {"last_run": fired_at})

    def disable(self, schedule_id: str) -> Optional[ScheduleConfig]:
        """Disable a schedule that can no longer fire."""
        schedule = self._replace(schedule_id, {"enabled": False, "next_run": None})
        if schedule is not None:
            logger.warning(
                f"Schedule disabled: {schedule.name}",
                extra={"event": "schedule.disabled", "schedule_id": schedule_id},
            )
        return schedule

    def _replace(self, schedule_id: str, fields: dict) -> Optional[ScheduleConfig]:
        """
        Persist a copy of a schedule with some fields changed.

        The store is written before the in-memory map is swapped, so a failed
        save leaves the registry unchanged.

        Args:
            schedule_id: Schedule to change
            fields: Field values to set on the copy

        Returns:
            The updated schedule, or None if the id is unknown
        """
        with self._write_lock:
            current = self._schedules.get(schedule_id)
            if current is None:
                return None

            updated = current.model_copy(update=fields)
            self.store.save_schedule(updated)
            self._schedules = {**self._schedules, schedule_id: updated}
            return updated

    def __len__(self) -> int:
        return len(self._schedules)

    def __contains__(self, schedule_id: str) -> bool:
        return schedule_id in self._schedules
