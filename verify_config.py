#!/usr/bin/env python3
"""Validate a Beacon config file and print a summary of what it configures."""

import sys
from pathlib import Path

from beacon.config.exceptions import ConfigurationError
from beacon.config.loader import parse_config_file
from beacon.scheduling.cron import next_run


def verify_config(config_file: Path) -> bool:
    try:
        config = parse_config_file(config_file)
    except ConfigurationError as e:
        print(f"✗ {config_file} validation failed:")
        print(e.render())
        return False

    print(f"✓ {config_file} is valid")
    print(f"  - Tick interval: {config.scheduler.tick_interval}")
    for definition in config.scheduler.schedules:
        state = "enabled" if definition.enabled else "disabled"
        upcoming = next_run(definition.cron, definition.timezone) if definition.enabled else None
        print(
            f"  - {definition.schedule_id}: '{definition.cron}' ({definition.timezone}, {state})"
            + (f", next run {upcoming.isoformat()}" if upcoming else "")
        )
    print(f"  - {len(config.providers.smtp)} extra SMTP providers")
    print(f"  - {len(config.rules)} notification rules")
    print(f"  - Batch interval: {config.dispatch.batch_interval}")
    return True


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("config.example.yaml")
    sys.exit(0 if verify_config(path) else 1)
