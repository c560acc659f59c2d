"""Unit tests for the missed-heartbeat evaluator."""

from typing import Any

import pytest

from chief_monitor.engine.alerts import AlertManager, build_dedupe_key
from chief_monitor.engine.evaluator import HeartbeatEvaluator, classify
from chief_monitor.engine.locks import JobLocks
from chief_monitor.engine.tracker import check_config_from_metadata
from chief_monitor.store import SqliteMonitorStore
from chief_monitor.timestamps import to_iso


@pytest.fixture
def evaluator(store: SqliteMonitorStore, clock: Any) -> HeartbeatEvaluator:
    alerts = AlertManager(store, clock=clock)
    return HeartbeatEvaluator(store, alerts, JobLocks(), recovery_ttl_seconds=900, clock=clock)


def _check(
    store: SqliteMonitorStore, clock: Any, job_name: str = "J", *, seconds_ago: int | None, **metadata: Any
) -> None:
    """Create a check whose expected run was ``seconds_ago`` before the clock."""
    now = to_iso(clock())
    store.upsert_check_config(job_name, check_config_from_metadata(metadata), updated_at=now)
    if seconds_ago is not None:
        clock.advance(-seconds_ago)
        expected = to_iso(clock())
        clock.advance(seconds_ago)
        store.update_check(job_name, updated_at=now, expected_next_at=expected)


def _status(store: SqliteMonitorStore, job_name: str = "J") -> str:
    check = store.get_check(job_name)
    assert check is not None
    return check["status"]


class TestClassify:
    @pytest.mark.parametrize(
        ("diff", "grace", "expected"),
        [(-5, 120, "UP"), (0, 120, "UP"), (1, 120, "LATE"), (120, 120, "LATE"), (121, 120, "DOWN"), (1, 0, "DOWN")],
    )
    def test_boundaries(self, diff: int, grace: int, expected: str) -> None:
        assert classify(diff, grace) == expected


class TestSweep:
    def test_missed_heartbeat(self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any) -> None:
        _check(store, clock, seconds_ago=200, grace_seconds=120)

        result = evaluator.sweep()

        assert result["down"] == 1
        assert result["opened_missed"] == 1
        assert result["status_writes"] == 1
        assert _status(store) == "DOWN"
        [alert] = store.list_alerts(status="OPEN")
        assert alert["dedupe_key"] == build_dedupe_key("J", "MISSED")
        assert alert["severity"] == "WARN"
        assert alert["details"]["graceSeconds"] == 120
        assert result["opened_alert_ids"] == [alert["id"]]

    def test_second_sweep_is_idempotent(
        self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any
    ) -> None:
        _check(store, clock, seconds_ago=200, grace_seconds=120)
        evaluator.sweep()

        result = evaluator.sweep()

        assert result["opened_missed"] == 0
        assert result["status_writes"] == 0
        assert result["opened_alert_ids"] == []
        assert result["down"] == 1
        assert len(store.list_alerts()) == 1

    def test_late_within_grace(self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any) -> None:
        _check(store, clock, seconds_ago=60, grace_seconds=120)

        result = evaluator.sweep()

        assert result["late"] == 1
        assert result["opened_missed"] == 0
        assert _status(store) == "LATE"
        assert store.list_alerts() == []

    def test_future_expected_stays_up(
        self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any
    ) -> None:
        _check(store, clock, seconds_ago=-300)

        result = evaluator.sweep()

        assert result["status_writes"] == 0
        assert _status(store) == "UP"

    def test_late_then_down(self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any) -> None:
        _check(store, clock, seconds_ago=60, grace_seconds=120)
        evaluator.sweep()
        clock.advance(100)

        result = evaluator.sweep()

        assert _status(store) == "DOWN"
        assert result["opened_missed"] == 1

    def test_alert_on_miss_disabled(self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any) -> None:
        _check(store, clock, seconds_ago=500, alert_on_miss="false")

        result = evaluator.sweep()

        assert _status(store) == "DOWN"
        assert result["opened_missed"] == 0
        assert store.list_alerts() == []

    def test_skips_disabled_and_unscheduled(
        self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any
    ) -> None:
        _check(store, clock, "off", seconds_ago=500, check_enabled=False)
        _check(store, clock, "unscheduled", seconds_ago=None)

        result = evaluator.sweep()

        assert result["status_writes"] == 0
        assert _status(store, "off") == "UP"
        assert _status(store, "unscheduled") == "UP"

    def test_closes_stale_recovery(self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any) -> None:
        store.insert_alert(
            job_name="J",
            alert_type="RECOVERY",
            severity="INFO",
            dedupe_key="J:RECOVERY:FAILURE",
            title="Job J recovered from failure",
            details={},
            opened_at=to_iso(clock()),
        )
        clock.advance(901)

        result = evaluator.sweep()

        assert result["closed_recoveries"] == 1
        assert store.list_alerts(status="OPEN") == []

    def test_down_again_after_recovery_reopens(
        self, evaluator: HeartbeatEvaluator, store: SqliteMonitorStore, clock: Any
    ) -> None:
        _check(store, clock, seconds_ago=200)
        evaluator.sweep()
        store.close_open_alerts("J", "MISSED", closed_at=to_iso(clock()))
        store.update_check("J", updated_at=to_iso(clock()), status="UP")

        result = evaluator.sweep()

        assert result["opened_missed"] == 1
        assert len(store.list_alerts(alert_type="MISSED")) == 2
