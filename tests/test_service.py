"""End-to-end tests of the monitor service over an in-memory store."""

import sqlite3
import threading
from typing import Any

import pytest

from chief_monitor.notify.notifier import ConfigurationError
from chief_monitor.service import MAX_PAGE_LIMIT, MonitorService, clamp_page
from chief_monitor.store import SqliteMonitorStore


def _raw(event_type: str, job_name: str = "J", **overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "sourceType": "worker",
        "eventType": event_type,
        "level": "INFO",
        "message": event_type,
        "jobName": job_name,
    }
    raw.update(overrides)
    return raw


class TestClampPage:
    def test_defaults_and_caps(self) -> None:
        assert clamp_page(None, None) == (100, 0)
        assert clamp_page(0, -5) == (100, 0)
        assert clamp_page(5000, 10) == (MAX_PAGE_LIMIT, 10)


class TestIngestion:
    def test_batch_counts(self, service: MonitorService, store: SqliteMonitorStore) -> None:
        batch = [_raw("job.started"), _raw("job.started", level="LOUD"), _raw("job.log"), {"level": "INFO"}, _raw("x")]

        result = service.ingest_events(batch)

        assert result == {"inserted": 3, "dropped": 2}
        assert store.count_events() == 3

    def test_all_invalid(self, service: MonitorService, store: SqliteMonitorStore) -> None:
        assert service.ingest_events([{}, "nope"]) == {"inserted": 0, "dropped": 2}
        assert store.count_events() == 0

    def test_out_of_range_values_stored_as_defaults(self, service: MonitorService, store: SqliteMonitorStore) -> None:
        batch = [
            _raw("job.failed", returnCode=10**30),
            _raw("job.completed", success=False, durationMs=1e300),
            _raw("job.log", eventAt="9999-12-31T23:00:00-05:00", metadata={"grace_seconds": "9" * 23}),
        ]

        assert service.ingest_events(batch) == {"inserted": 3, "dropped": 0}

        events = store.list_events(job_name="J")
        assert all(e["return_code"] is None and e["duration_ms"] is None for e in events)
        assert events[0]["event_at"] == "2026-03-01T12:00:00.000+00:00"
        check = store.get_check("J")
        assert check is not None
        assert check["grace_seconds"] == 120
        assert check["consecutive_failures"] == 2

    def test_rejected_record_rolled_back_and_counted(
        self, service: MonitorService, store: SqliteMonitorStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_upsert = store.upsert_check_config

        def upsert(job_name: str, config: Any, *, updated_at: str) -> None:
            if job_name == "broken":
                raise sqlite3.OperationalError("disk I/O error")
            real_upsert(job_name, config, updated_at=updated_at)

        monkeypatch.setattr(store, "upsert_check_config", upsert)

        result = service.ingest_events([_raw("job.failed", "A"), _raw("job.failed", "broken"), _raw("x", level=3)])

        assert result == {"inserted": 1, "dropped": 2}
        assert [e["job_name"] for e in store.list_events()] == ["A"]
        assert store.get_check("broken") is None
        check = store.get_check("A")
        assert check is not None
        assert check["consecutive_failures"] == 1

    def test_failure_then_recovery(self, service: MonitorService, store: SqliteMonitorStore) -> None:
        service.ingest_events([_raw("job.completed", success=False, returnCode=1)])
        service.ingest_events([_raw("job.completed", success=True, returnCode=0)])

        open_alerts = service.list_alerts(status="open")
        assert [a["dedupe_key"] for a in open_alerts] == ["J:RECOVERY:FAILURE"]
        closed = service.list_alerts(status="CLOSED")
        assert [a["dedupe_key"] for a in closed] == ["J:FAILURE"]

    def test_opened_alerts_are_emailed(
        self, service: MonitorService, store: SqliteMonitorStore, sender: Any
    ) -> None:
        service.save_alert_email_settings(["ops@example.com"], ["FAILURE"])

        service.ingest_events([_raw("job.failed")])

        assert len(sender.sent) == 1
        assert sender.sent[0]["subject"] == "[ERROR] Job J failed"

    def test_concurrent_failures_open_one_alert(self, service: MonitorService, store: SqliteMonitorStore) -> None:
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            service.ingest_events([_raw("job.failed")])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(service.list_alerts(status="OPEN")) == 1
        check = store.get_check("J")
        assert check is not None
        assert check["consecutive_failures"] == 8


class TestSweeps:
    def test_missed_heartbeat_flow(self, service: MonitorService, clock: Any) -> None:
        service.ingest_events([_raw("job.next_scheduled", metadata={"next_run_at": "2026-03-01T12:01:00Z"})])
        clock.advance(60 + 121)

        result = service.evaluate_checks()

        assert result["opened_missed"] == 1
        assert service.evaluate_checks()["opened_missed"] == 0

        service.ingest_events([_raw("job.started")])
        keys = [a["dedupe_key"] for a in service.list_alerts(status="OPEN")]
        assert keys == ["J:RECOVERY:MISSED"]

    def test_prune_uses_retention_days(self, service: MonitorService, store: SqliteMonitorStore, clock: Any) -> None:
        service.ingest_events([_raw("job.log", eventAt="2026-01-01T00:00:00Z"), _raw("job.log")])

        assert service.prune_telemetry() == 1
        assert store.count_events() == 1


class TestQueries:
    def test_jobs_status_with_latest_event(self, service: MonitorService) -> None:
        service.ingest_events([_raw("job.started", runId="a"), _raw("job.started", job_name="K")])

        jobs = service.get_jobs_status()

        assert [j["job_name"] for j in jobs] == ["J", "K"]
        assert jobs[0]["latest_event"] is not None
        assert jobs[0]["latest_event"]["run_id"] == "a"

    def test_job_details(self, service: MonitorService) -> None:
        service.ingest_events([_raw("job.failed"), _raw("job.log")])

        details = service.get_job_details("J")

        assert details is not None
        assert details["check"]["job_name"] == "J"
        assert len(details["events"]) == 2
        assert [a["alert_type"] for a in details["open_alerts"]] == ["FAILURE"]

    def test_unknown_job(self, service: MonitorService) -> None:
        assert service.get_job_details("ghost") is None

    def test_list_events_filters(self, service: MonitorService) -> None:
        service.ingest_events(
            [
                _raw("job.log", level="ERROR", eventAt="2026-03-01T10:00:00Z"),
                _raw("job.log", eventAt="2026-03-01T11:00:00Z"),
            ]
        )

        assert len(service.list_events(level="error")) == 1
        assert len(service.list_events(since="2026-03-01T10:30:00Z")) == 1
        assert len(service.list_events(until="2026-03-01T10:30:00+00:00")) == 1

    def test_list_events_bad_timestamp(self, service: MonitorService) -> None:
        with pytest.raises(ValueError, match="from"):
            service.list_events(since="last tuesday")

    def test_summary(self, service: MonitorService) -> None:
        service.ingest_events([_raw("job.failed")])
        summary = service.get_summary()
        assert summary["checks"] == {"UP": 1}
        assert summary["active_alerts"] == {"FAILURE": 1}
        assert summary["total_events"] == 1

    def test_close_alert(self, service: MonitorService) -> None:
        service.ingest_events([_raw("job.failed")])
        [alert] = service.list_alerts()

        result = service.close_alert(alert["id"], "manual")

        assert result["updated"] is True
        assert service.list_alerts(status="OPEN") == []


class TestEmailSettings:
    def test_round_trip(self, service: MonitorService) -> None:
        saved = service.save_alert_email_settings([" Ops@Example.com "], ["failure", "missed"])

        assert saved["recipients"] == ["ops@example.com"]
        assert saved["provider_configured"] is True
        assert service.get_alert_email_settings()["enabled_alert_types"] == ["FAILURE", "MISSED"]

    def test_rejects_without_provider(self, service: MonitorService, sender: Any) -> None:
        sender.configured = False
        with pytest.raises(ConfigurationError):
            service.save_alert_email_settings(["ops@example.com"], ["FAILURE"])

    def test_test_email(self, service: MonitorService, sender: Any) -> None:
        service.save_alert_email_settings(["ops@example.com"], ["FAILURE"])
        result = service.send_test_alert_email("cli")
        assert result["sent"] == 1
        assert sender.sent[0]["subject"] == "Chief Monitor test alert"
