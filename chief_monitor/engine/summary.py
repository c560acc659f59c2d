"""Read-side rollups for the status overview. Never writes."""

from datetime import datetime

from typing_extensions import TypedDict

from chief_monitor.models import CHIEF_HEARTBEAT_EVENT_TYPE
from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import parse_timestamp

DEFAULT_CHIEF_OFFLINE_AFTER_SECONDS = 45
MIN_CHIEF_OFFLINE_AFTER_SECONDS = 5


class ChiefPresence(TypedDict):
    online: bool
    last_heartbeat_at: str | None
    ping_interval_seconds: int | None
    offline_after_seconds: int


class Summary(TypedDict):
    checks: dict[str, int]
    active_alerts: dict[str, int]
    total_events: int
    latest_event_at: str | None
    chief: ChiefPresence


def positive_int_or_none(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        try:
            parsed = int(value)
        except (OverflowError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            parsed = int(value.strip(), 10)
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed > 0 else None


def offline_after_seconds(ping_interval_seconds: int | None) -> int:
    """Two missed pings mark the chief offline; without a known interval use the default."""
    if ping_interval_seconds is None:
        return DEFAULT_CHIEF_OFFLINE_AFTER_SECONDS
    return max(MIN_CHIEF_OFFLINE_AFTER_SECONDS, ping_interval_seconds * 2)


def chief_presence(store: MonitorStore, *, now: datetime) -> ChiefPresence:
    """Infer whether the upstream chief process is online from its latest heartbeat event."""
    latest = store.get_latest_event(source_type="chief", event_type=CHIEF_HEARTBEAT_EVENT_TYPE)
    ping_interval = positive_int_or_none(latest["metadata"].get("ping_interval_seconds")) if latest else None
    offline_after = offline_after_seconds(ping_interval)

    online = False
    last_heartbeat_at = latest["event_at"] if latest else None
    last_heartbeat = parse_timestamp(last_heartbeat_at)
    if last_heartbeat is not None:
        online = (now - last_heartbeat).total_seconds() <= offline_after

    return ChiefPresence(
        online=online,
        last_heartbeat_at=last_heartbeat_at,
        ping_interval_seconds=ping_interval,
        offline_after_seconds=offline_after,
    )


def build_summary(store: MonitorStore, *, now: datetime) -> Summary:
    return Summary(
        checks=store.count_checks_by_status(),
        active_alerts=store.count_open_alerts_by_type(),
        total_events=store.count_events(),
        latest_event_at=store.get_latest_event_at(),
        chief=chief_presence(store, now=now),
    )
