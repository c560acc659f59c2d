"""Missed-heartbeat evaluator.

A check's status is a function of how far the clock has run past its
expected next run:

    diff = now - expected_next_at (whole seconds)
    diff > grace_seconds       -> DOWN  (MISSED alert on the edge into DOWN)
    0 < diff <= grace_seconds  -> LATE
    diff <= 0                  -> UP

Status rows are only written on a transition, so a sweep over unchanged
checks writes nothing and opens nothing.
"""

import logging
import math
from collections.abc import Callable
from datetime import datetime

from typing_extensions import TypedDict

from chief_monitor.engine.alerts import DEFAULT_RECOVERY_AUTO_CLOSE_SECONDS, AlertManager, build_dedupe_key
from chief_monitor.engine.locks import JobLocks
from chief_monitor.models import CheckStateRecord, CheckStatus
from chief_monitor.observability.metrics import CHECKS_BY_STATUS
from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)


class SweepResult(TypedDict):
    late: int
    down: int
    opened_missed: int
    status_writes: int
    closed_recoveries: int
    opened_alert_ids: list[int]


def classify(diff_seconds: int, grace_seconds: int) -> CheckStatus:
    if diff_seconds > grace_seconds:
        return "DOWN"
    if diff_seconds > 0:
        return "LATE"
    return "UP"


class HeartbeatEvaluator:
    def __init__(
        self,
        store: MonitorStore,
        alerts: AlertManager,
        locks: JobLocks,
        *,
        recovery_ttl_seconds: int = DEFAULT_RECOVERY_AUTO_CLOSE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._alerts = alerts
        self._locks = locks
        self._recovery_ttl_seconds = recovery_ttl_seconds
        self._clock = clock

    def sweep(self) -> SweepResult:
        """Run one evaluation pass over every enabled check."""
        result = SweepResult(
            late=0,
            down=0,
            opened_missed=0,
            status_writes=0,
            closed_recoveries=self._alerts.close_stale_recovery_alerts(self._recovery_ttl_seconds),
            opened_alert_ids=[],
        )
        up = 0

        for snapshot in self._store.list_checks(enabled_only=True):
            if snapshot["expected_next_at"] is None:
                continue
            job_name = snapshot["job_name"]
            # Re-read under the job lock so a heartbeat applied since the
            # snapshot is not overwritten with a stale status.
            with self._locks.hold(job_name), self._store.transaction():
                row = self._store.get_check(job_name)
                if row is None:
                    continue
                status = self._evaluate(row, result)
            if status == "UP":
                up += 1

        CHECKS_BY_STATUS.labels(status="UP").set(up)
        CHECKS_BY_STATUS.labels(status="LATE").set(result["late"])
        CHECKS_BY_STATUS.labels(status="DOWN").set(result["down"])

        if result["status_writes"] or result["opened_missed"] or result["closed_recoveries"]:
            logger.info(
                "Evaluator sweep: %d late, %d down, %d status change(s), %d missed alert(s) opened",
                result["late"],
                result["down"],
                result["status_writes"],
                result["opened_missed"],
            )
        return result

    def _evaluate(self, row: CheckStateRecord, result: SweepResult) -> CheckStatus | None:
        if not row["enabled"]:
            return None
        expected = parse_timestamp(row["expected_next_at"])
        if expected is None:
            return None

        now = self._clock()
        diff_seconds = math.floor((now - expected).total_seconds())
        status = classify(diff_seconds, row["grace_seconds"])
        job_name = row["job_name"]

        if status == "DOWN":
            result["down"] += 1
        elif status == "LATE":
            result["late"] += 1

        if row["status"] == status:
            return status

        self._store.update_check(job_name, updated_at=to_iso(now), status=status)
        result["status_writes"] += 1
        logger.info("Check %s %s -> %s (%ds past expected run)", job_name, row["status"], status, diff_seconds)

        if status == "DOWN" and row["alert_on_miss"]:
            alert_id = self._alerts.open_alert(
                job_name=job_name,
                alert_type="MISSED",
                severity="WARN",
                dedupe_key=build_dedupe_key(job_name, "MISSED"),
                title=f"Job {job_name} missed expected heartbeat",
                details={
                    "expectedNextAt": row["expected_next_at"],
                    "graceSeconds": row["grace_seconds"],
                    "observedAt": to_iso(now),
                },
            )
            if alert_id is not None:
                result["opened_missed"] += 1
                result["opened_alert_ids"].append(alert_id)
        return status
