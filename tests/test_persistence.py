"""Tests for the SQLite persistence layer.

Each test runs against a fresh file-backed database from the sqlite_db
fixture.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect, text

from beacon.dispatch.models import DispatchRequest
from beacon.domain.models import ChannelType, DeliveryOutcome
from beacon.persistence import (
    DatabaseConnectionError,
    DataIntegrityError,
    RecordNotFoundError,
    SqlDeferredStore,
    SqlDispatchRecordStore,
    SqlJobQueue,
    SqlScheduleStore,
    close_database,
    get_engine,
    get_session,
    init_database,
)
from beacon.persistence.database import redact_url
from beacon.persistence.repositories import (
    DispatchRecordRepository,
    JobRepository,
    ScheduledNotificationRepository,
    ScheduleRepository,
)
from beacon.persistence.schema import JobModel, format_db_timestamp, parse_db_timestamp
from beacon.scheduling.loop import SchedulerLoop
from beacon.scheduling.models import JobDescriptor, ScheduleConfig
from beacon.scheduling.registry import ScheduleRegistry


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_schedule(schedule_id="sched_cleanup", **overrides):
    data = {
        "id": schedule_id,
        "name": "Nightly cleanup",
        "cron": "0 2 * * *",
        "timezone": "Europe/Berlin",
        "job": JobDescriptor(type="cleanup", params={"table": "jobs", "batch": 100}),
        "max_concurrent_runs": 1,
        "created_by": "ops",
        "next_run": utc(2024, 1, 1, 1, 0),
    }
    data.update(overrides)
    return ScheduleConfig(**data)


def make_request(**overrides):
    data = {
        "id": "notif_1",
        "type": "job_failed",
        "category": "alert",
        "severity": "high",
        "title": "Cleanup failed",
        "message": "exit status 1",
        "metadata": {"job_id": "job_1"},
    }
    data.update(overrides)
    return DispatchRequest(**data)


class TestDatabaseLifecycle:
    def test_creates_all_tables(self, sqlite_db):
        tables = set(inspect(get_engine()).get_table_names())
        assert {
            "schedules",
            "jobs",
            "scheduled_notifications",
            "dispatch_records",
            "delivery_outcomes",
        } <= tables

    def test_sqlite_pragmas(self, sqlite_db):
        with get_engine().connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"

    def test_creates_parent_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "beacon.db"
        init_database(f"sqlite:///{db_path}")
        try:
            assert db_path.parent.is_dir()
        finally:
            close_database()

    def test_init_is_idempotent(self, sqlite_db):
        with get_session() as session:
            ScheduleRepository(session).upsert(make_schedule())

        close_database()
        init_database(sqlite_db)

        with get_session() as session:
            assert ScheduleRepository(session).get("sched_cleanup") is not None

    def test_session_requires_init(self):
        close_database()
        with pytest.raises(DatabaseConnectionError, match="not initialized"):
            with get_session():
                pass

    def test_invalid_url(self):
        with pytest.raises(DatabaseConnectionError):
            init_database("")
        with pytest.raises(DatabaseConnectionError):
            init_database("nosuchdriver://localhost/db")

    def test_session_rolls_back_on_error(self, sqlite_db):
        with pytest.raises(RuntimeError):
            with get_session() as session:
                ScheduleRepository(session).upsert(make_schedule())
                raise RuntimeError("abort")

        with get_session() as session:
            assert ScheduleRepository(session).list_all() == []

    def test_redact_url(self):
        assert redact_url("postgresql://beacon:secret@db/beacon") == "postgresql://beacon:***@db/beacon"


class TestTimestamps:
    def test_fixed_width_with_microseconds(self):
        assert format_db_timestamp(utc(2024, 1, 1, 2, 0)) == "2024-01-01T02:00:00.000000Z"
        assert format_db_timestamp(None) is None

    def test_round_trip(self):
        value = utc(2024, 3, 10, 7, 30, 15, 123456)
        assert parse_db_timestamp(format_db_timestamp(value)) == value

    def test_lexical_order_matches_time_order(self):
        earlier = format_db_timestamp(utc(2024, 1, 1, 9, 59, 59, 999999))
        later = format_db_timestamp(utc(2024, 1, 1, 10, 0))
        assert earlier < later


class TestScheduleRepository:
    def test_upsert_and_get_round_trip(self, sqlite_db):
        schedule = make_schedule(last_run=utc(2023, 12, 31, 1, 0))
        with get_session() as session:
            ScheduleRepository(session).upsert(schedule)

        with get_session() as session:
            assert ScheduleRepository(session).get(schedule.id) == schedule

    def test_upsert_overwrites(self, sqlite_db):
        store = SqlScheduleStore()
        store.save_schedule(make_schedule())
        store.save_schedule(make_schedule(enabled=False, next_run=None, name="Renamed"))

        (stored,) = store.load_all_schedules()
        assert stored.name == "Renamed"
        assert stored.enabled is False
        assert stored.next_run is None

    def test_delete(self, sqlite_db):
        with get_session() as session:
            ScheduleRepository(session).upsert(make_schedule())

        with get_session() as session:
            repo = ScheduleRepository(session)
            assert repo.delete("sched_cleanup") is True
            assert repo.delete("sched_cleanup") is False
            assert repo.get("sched_cleanup") is None

    def test_list_all_in_creation_order(self, sqlite_db):
        store = SqlScheduleStore()
        for schedule_id in ("b", "a", "c"):
            store.save_schedule(make_schedule(schedule_id))

        assert {s.id for s in store.load_all_schedules()} == {"a", "b", "c"}


class TestJobQueue:
    def test_create_job(self, sqlite_db):
        handle = SqlJobQueue().create_job(
            "cleanup", {"table": "jobs"}, {"schedule_id": "sched_cleanup", "manual": True}
        )

        assert handle.id.startswith("job_")
        assert handle.status == "pending"
        with get_session() as session:
            job = JobRepository(session).get(handle.id)
            assert job.schedule_id == "sched_cleanup"
            assert job.params_dict == {"table": "jobs"}
            assert job.metadata_dict["manual"] is True

    def test_count_running(self, sqlite_db):
        queue = SqlJobQueue()
        first = queue.create_job("cleanup", {}, {"schedule_id": "s1"})
        queue.create_job("cleanup", {}, {"schedule_id": "s1"})
        other = queue.create_job("cleanup", {}, {"schedule_id": "s2"})

        queue.mark_status(first.id, "running")
        queue.mark_status(other.id, "running")

        assert queue.count_running("cleanup", "s1") == 1
        assert queue.count_running("report", "s1") == 0

        queue.mark_status(first.id, "completed")
        assert queue.count_running("cleanup", "s1") == 0

    def test_mark_unknown_job(self, sqlite_db):
        with pytest.raises(RecordNotFoundError):
            SqlJobQueue().mark_status("job_missing", "running")

    def test_invalid_metadata_json_falls_back(self, sqlite_db):
        handle = SqlJobQueue().create_job("cleanup", {})
        with get_session() as session:
            session.get(JobModel, handle.id).job_metadata = "{not json"

        with get_session() as session:
            assert JobRepository(session).get(handle.id).metadata_dict == {}


class TestScheduledNotifications:
    def test_claim_due_returns_in_order_and_removes(self, sqlite_db, recipient_factory):
        store = SqlDeferredStore()
        recipient = recipient_factory("1", slack_user_id="U1", channels={"email": 1, "slack": 2})
        later = store.save_scheduled(make_request(id="late"), [recipient], utc(2024, 1, 1, 9, 0))
        earlier = store.save_scheduled(make_request(id="early"), [recipient], utc(2024, 1, 1, 8, 0))
        store.save_scheduled(make_request(id="future"), [recipient], utc(2024, 1, 2, 8, 0))

        claimed = store.claim_due(utc(2024, 1, 1, 9, 0))

        assert [n.id for n in claimed] == [earlier, later]
        assert claimed[0].request == make_request(id="early")
        assert claimed[0].recipients == [recipient]
        assert claimed[0].scheduled_for == utc(2024, 1, 1, 8, 0)

        assert store.claim_due(utc(2024, 1, 1, 9, 0)) == []
        with get_session() as session:
            assert ScheduledNotificationRepository(session).count_pending() == 1

    def test_nothing_due(self, sqlite_db):
        assert SqlDeferredStore().claim_due(utc(2024, 1, 1)) == []


class TestDispatchRecords:
    def outcomes(self):
        now = utc(2024, 1, 1, 2, 0, 5)
        return [
            DeliveryOutcome(
                channel=ChannelType.EMAIL,
                recipient="a@example.com",
                recipient_id="1",
                success=True,
                provider="smtp-primary",
                message_id="<1@example.com>",
                attempts=1,
                timestamp=now,
            ),
            DeliveryOutcome(
                channel=ChannelType.SLACK,
                recipient="U2",
                recipient_id="2",
                success=False,
                provider="slack-api",
                error="All providers failed after 3 attempts: ratelimited",
                attempts=3,
                timestamp=now,
            ),
        ]

    def test_record_and_read_back(self, sqlite_db):
        outcomes = self.outcomes()
        SqlDispatchRecordStore().save_dispatch_result("notif_1", make_request(), outcomes)

        with get_session() as session:
            repo = DispatchRecordRepository(session)
            assert repo.get_outcomes("notif_1") == outcomes

            (record,) = repo.list_recent()
            assert record.successful_count == 1
            assert record.failed_count == 1
            assert record.category == "alert"
            assert record.severity == "high"
            assert DispatchRequest.model_validate_json(record.request_json) == make_request()

    def test_duplicate_dispatch_id(self, sqlite_db):
        store = SqlDispatchRecordStore()
        store.save_dispatch_result("notif_1", make_request(), [])

        with pytest.raises(DataIntegrityError):
            store.save_dispatch_result("notif_1", make_request(), [])

    def test_list_recent_limit(self, sqlite_db):
        store = SqlDispatchRecordStore()
        for i in range(3):
            store.save_dispatch_result(f"notif_{i}", make_request(id=f"notif_{i}"), [])

        with get_session() as session:
            assert len(DispatchRecordRepository(session).list_recent(limit=2)) == 2


class TestSchedulerOnDatabase:
    def test_fire_persists_job_and_schedule_state(self, sqlite_db, clock):
        store = SqlScheduleStore()
        queue = SqlJobQueue()
        registry = ScheduleRegistry(store, clock=clock)
        registry.add({"id": "nightly", "name": "Nightly", "cron": "0 2 * * *", "job": {"type": "cleanup"}})
        loop = SchedulerLoop(registry, queue, run_counter=queue, clock=clock)

        result = loop.tick(utc(2024, 1, 1, 2, 0))

        (stored,) = store.load_all_schedules()
        assert stored.last_run == utc(2024, 1, 1, 2, 0)
        assert stored.next_run == utc(2024, 1, 2, 2, 0)
        with get_session() as session:
            job = JobRepository(session).get(result.fired[0].job.id)
            assert job.schedule_id == "nightly"

    def test_registry_reloads_after_restart(self, sqlite_db, clock):
        ScheduleRegistry(SqlScheduleStore(), clock=clock).add(
            {"id": "nightly", "name": "Nightly", "cron": "0 2 * * *", "job": {"type": "cleanup"}}
        )

        reloaded = ScheduleRegistry(SqlScheduleStore(), clock=clock)
        assert reloaded.load() == 1
        assert reloaded.get("nightly").next_run == utc(2024, 1, 1, 2, 0)

    def test_missed_run_fires_after_restart(self, sqlite_db, clock):
        SqlScheduleStore().save_schedule(make_schedule(next_run=clock() - timedelta(hours=3)))

        registry = ScheduleRegistry(SqlScheduleStore(), clock=clock)
        registry.load()

        assert [s.id for s in registry.list_due(clock())] == ["sched_cleanup"]
