"""Main entry point for the Beacon scheduling and notification service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

from beacon.config.environment import EnvironmentConfig
from beacon.config.exceptions import ConfigurationError
from beacon.config.loader import load_config
from beacon.config.models import AppConfig
from beacon.dispatch.deferred import DeferredDispatchPoller
from beacon.dispatch.engine import DispatchEngine
from beacon.dispatch.rules import RuleEngine
from beacon.dispatch.templates import TemplateRenderer
from beacon.logging import get_logger
from beacon.logging.config import configure_logging
from beacon.persistence.database import close_database, init_database
from beacon.persistence.stores import (
    SqlDeferredStore,
    SqlDispatchRecordStore,
    SqlJobQueue,
    SqlScheduleStore,
)
from beacon.providers.factory import build_providers
from beacon.providers.failover import FailoverController
from beacon.scheduling.loop import SchedulerLoop
from beacon.scheduling.registry import ScheduleRegistry

logger = get_logger(__name__, component="cli")


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load configuration and resolve the effective log level.

    Log level priority: CLI flag > LOG_LEVEL > YAML logging.level.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level or "INFO"

    return app_config, env_config


def seed_schedules(registry: ScheduleRegistry, app_config: AppConfig) -> int:
    """Add configured schedules that the store does not know yet.

    Stored schedules win over the YAML definition, so runtime edits survive
    restarts.
    """
    added = 0
    for definition in app_config.scheduler.schedules:
        if definition.schedule_id in registry:
            continue
        registry.add(definition.to_spec())
        added += 1
    return added


class Service:
    """Wires the scheduler and the dispatch engine together."""

    def __init__(self, app_config: AppConfig, env_config: EnvironmentConfig):
        dispatch_settings = app_config.dispatch

        self.job_queue = SqlJobQueue()
        self.registry = ScheduleRegistry(SqlScheduleStore())
        self.loop = SchedulerLoop(
            self.registry,
            job_creator=self.job_queue,
            run_counter=self.job_queue,
            tick_interval_seconds=app_config.scheduler.tick_interval_seconds,
            max_workers=app_config.scheduler.max_concurrent_fires,
        )

        self.engine = DispatchEngine(
            providers=build_providers(app_config, env_config),
            rule_engine=RuleEngine(app_config.rules),
            renderer=TemplateRenderer(),
            failover=FailoverController(
                max_retries=dispatch_settings.max_retries,
                base_delay=dispatch_settings.retry_base_delay,
            ),
            deferred_store=SqlDeferredStore(),
            record_store=SqlDispatchRecordStore(),
            batch_interval_seconds=dispatch_settings.batch_interval_seconds,
            fallback_channel=dispatch_settings.fallback_channel or env_config.slack_default_channel,
            max_workers=dispatch_settings.max_delivery_workers,
        )
        self.poller = DeferredDispatchPoller(
            self.engine, interval_seconds=dispatch_settings.deferred_poll_interval_seconds
        )

    def bootstrap(self, app_config: AppConfig) -> None:
        loaded = self.registry.load()
        seeded = seed_schedules(self.registry, app_config)
        logger.info(
            "Schedules loaded",
            extra={
                "event": "schedules.loaded",
                "stored_count": loaded,
                "seeded_count": seeded,
                "enabled_count": len(self.registry.list_enabled()),
            },
        )

    def run_once(self) -> bool:
        """Run one tick, one batch flush and one deferred poll. Returns True on success."""
        tick = self.loop.tick()
        flushed = self.engine.batcher.flush_all()
        released = self.poller.poll()

        logger.info(
            f"Single run completed: {len(tick.succeeded)} fired, {len(tick.failed)} failed, "
            f"{len(tick.skipped)} skipped, {len(flushed)} batches flushed, "
            f"{len(released)} deferred released",
            extra={
                "event": "service.run_once.completed",
                "fired": len(tick.succeeded),
                "failed": len(tick.failed),
                "skipped": len(tick.skipped),
                "batches_flushed": len(flushed),
                "deferred_released": len(released),
            },
        )
        return not tick.failed

    def start(self) -> None:
        self.engine.start()
        self.poller.start()
        self.loop.start()

    def shutdown(self) -> None:
        self.loop.stop(wait=True)
        self.poller.shutdown(wait=True)
        self.engine.close()


def main() -> int:
    """
    Main entry point for the Beacon service.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="Beacon - cron job scheduler and multi-channel notification dispatcher"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: ./config.yaml or ./config/config.yaml)",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run one scheduler tick, one batch flush and one deferred poll, then exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )

    args = parser.parse_args()
    service: Optional[Service] = None

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level)
        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )

        logger.info(
            "Beacon starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "run_once": args.run_once,
            },
        )

        init_database(env_config.database_url)

        service = Service(app_config, env_config)
        service.bootstrap(app_config)

        if args.run_once:
            succeeded = service.run_once()
            return 0 if succeeded else 1

        shutdown_event = threading.Event()

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        service.start()
        logger.info(
            "Scheduler started. Press Ctrl+C to stop",
            extra={"event": "service.daemon_mode.started"},
        )

        shutdown_event.wait()
        return 0

    except ConfigurationError as e:
        print(f"Configuration Error: {e.render()}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1
    finally:
        if service is not None:
            service.shutdown()
        close_database()
        logger.info(
            "Beacon stopped",
            extra={"event": "service.stopping", "uptime_seconds": round(time.time() - start_time, 2)},
        )


if __name__ == "__main__":
    sys.exit(main())
