"""Run one heartbeat evaluator sweep and one retention sweep, then print the results.

Usage:
    python -m scripts.run_sweep
"""

import logging
import sys

from chief_monitor.config import get_settings
from chief_monitor.notify.email import build_email_sender
from chief_monitor.service import MonitorService
from chief_monitor.store import open_store

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def main() -> None:
    """Run both sweeps once against the configured database."""
    settings = get_settings()
    store = open_store(settings.monitor_db_path)
    try:
        service = MonitorService.from_settings(store, build_email_sender(settings), settings)
        result = service.evaluate_checks()
        removed = service.prune_telemetry()
    except Exception as e:
        print(f"Sweep failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()

    print(
        f"Evaluator: {result['late']} late, {result['down']} down, "
        f"{result['opened_missed']} missed alert(s) opened, {result['status_writes']} status write(s), "
        f"{result['closed_recoveries']} recovery alert(s) closed"
    )
    print(f"Retention: {removed} event(s) older than {settings.monitor_retention_days} day(s) removed")


if __name__ == "__main__":
    main()
