"""Inbound event normalization.

Raw ingestion payloads are untrusted dictionaries. ``normalize_events`` keeps
the records that carry a valid source type, level, event type and message,
coerces every optional field independently (a bad optional field becomes
None, it never rejects the record) and reports how many records were dropped.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, NamedTuple

from chief_monitor.models import EVENT_LEVELS, SOURCE_TYPES, SQLITE_INT_MAX, SQLITE_INT_MIN, NormalizedEvent
from chief_monitor.timestamps import canonicalize, to_iso

logger = logging.getLogger(__name__)


class NormalizationResult(NamedTuple):
    events: list[NormalizedEvent]
    accepted: int
    dropped: int


def _non_empty_string(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _optional_int(value: object) -> int | None:
    # bool is an int subclass; a JSON true is not a return code.
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, float) and value != value:  # NaN
        return None
    try:
        number = int(value)
    except (OverflowError, ValueError):
        return None
    return number if SQLITE_INT_MIN <= number <= SQLITE_INT_MAX else None


def normalize_event(raw: object, *, now: datetime) -> NormalizedEvent | None:
    """Validate one raw record. Returns None when a required field is missing or invalid."""
    if not isinstance(raw, Mapping):
        return None

    source_type = _non_empty_string(raw.get("sourceType"))
    level = _non_empty_string(raw.get("level"))
    message = _non_empty_string(raw.get("message"))
    event_type = _non_empty_string(raw.get("eventType"))

    if source_type is None or source_type.lower() not in SOURCE_TYPES:
        return None
    if level is None or level.upper() not in EVENT_LEVELS:
        return None
    if message is None or event_type is None:
        return None

    metadata: Any = raw.get("metadata")
    success = raw.get("success")

    return NormalizedEvent(
        source_type=source_type.lower(),  # type: ignore[typeddict-item]
        event_type=event_type,
        level=level.upper(),  # type: ignore[typeddict-item]
        message=message,
        event_at=canonicalize(raw.get("eventAt")) or to_iso(now),
        job_name=_non_empty_string(raw.get("jobName")),
        script_path=_non_empty_string(raw.get("scriptPath")),
        run_id=_non_empty_string(raw.get("runId")),
        scheduled_for=_non_empty_string(raw.get("scheduledFor")),
        success=success if isinstance(success, bool) else None,
        return_code=_optional_int(raw.get("returnCode")),
        duration_ms=_optional_int(raw.get("durationMs")),
        metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
    )


def normalize_events(raw_events: Sequence[object], *, now: datetime) -> NormalizationResult:
    """Normalize a batch, silently dropping invalid records.

    Args:
        raw_events: Records as decoded from the request body.
        now: Ingest time, used as event_at when a record does not carry one.

    Returns:
        The accepted events in input order plus accepted/dropped counts
        (which always sum to ``len(raw_events)``).
    """
    events: list[NormalizedEvent] = []
    for raw in raw_events:
        event = normalize_event(raw, now=now)
        if event is not None:
            events.append(event)

    dropped = len(raw_events) - len(events)
    if dropped:
        logger.info("Dropped %d of %d malformed event(s)", dropped, len(raw_events))
    return NormalizationResult(events=events, accepted=len(events), dropped=dropped)
