from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from calmirror.caldav_client import CalDAVService
from calmirror.errors import TransientError
from calmirror.models import EventRecord, MirrorConfig, ReconcileCounts, serialize_datetime
from calmirror.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)

Interval = tuple[datetime | None, datetime | None]


@dataclass
class ReconcileAction:
    action: str
    calendar_id: str
    uid: str
    details: dict[str, Any]


@dataclass
class ReconcileReport:
    counts: ReconcileCounts = field(default_factory=ReconcileCounts)
    actions: list[ReconcileAction] = field(default_factory=list)

    def record(self, action: str, event: EventRecord, **details: Any) -> None:
        payload = {
            "start": serialize_datetime(event.start),
            "end": serialize_datetime(event.end),
            "title": event.summary,
        }
        payload.update(details)
        self.actions.append(
            ReconcileAction(action=action, calendar_id=event.calendar_id, uid=event.uid, details=payload)
        )


def _index_by_interval(events: Iterable[EventRecord]) -> dict[Interval, list[EventRecord]]:
    index: dict[Interval, list[EventRecord]] = defaultdict(list)
    for event in events:
        index[event.interval].append(event)
    return index


def reconcile(
    *,
    source_events: list[EventRecord],
    destination_events: list[EventRecord],
    destination: CalDAVService,
    destination_calendar_id: str,
    mirror: MirrorConfig,
    limiter: RateLimiter,
) -> ReconcileReport:
    """Make the tagged destination entries mirror ``source_events`` exactly.

    Pass one claims at most one destination entry per source event by exact
    ``(start, end)`` and retitles or creates as needed. Pass two deletes every
    destination entry that was not claimed. A failed mutation is logged and
    skipped; there is no retry within the pass.
    """
    report = ReconcileReport()
    unclaimed = _index_by_interval(destination_events)

    for source_event in source_events:
        expected_title = mirror.title_for(source_event.calendar_id)
        candidates = unclaimed.get(source_event.interval)
        if candidates:
            match = candidates.pop(0)
            if match.summary == expected_title:
                report.counts.unchanged += 1
                continue
            try:
                destination.set_title(match, expected_title)
            except TransientError as exc:
                logger.error(
                    "Retitle failed for %s [%s, %s) in %s: %s",
                    match.uid,
                    serialize_datetime(match.start),
                    serialize_datetime(match.end),
                    destination_calendar_id,
                    exc,
                )
                report.counts.failed += 1
                report.record("update_failed", match, error=str(exc), expected_title=expected_title)
            else:
                report.counts.updated += 1
                report.record("update", match, previous_title=match.summary, title=expected_title)
            finally:
                limiter.throttle()
            continue

        try:
            created = destination.create_event(
                destination_calendar_id,
                expected_title,
                source_event.start,
                source_event.end,
                mirror.ownership_tag,
            )
        except TransientError as exc:
            logger.error(
                "Create failed for [%s, %s) from %s in %s: %s",
                serialize_datetime(source_event.start),
                serialize_datetime(source_event.end),
                source_event.calendar_id,
                destination_calendar_id,
                exc,
            )
            report.counts.failed += 1
            report.record(
                "create_failed",
                source_event.with_updates(calendar_id=destination_calendar_id, summary=expected_title),
                error=str(exc),
                source_calendar_id=source_event.calendar_id,
            )
        else:
            report.counts.created += 1
            report.record("create", created, source_calendar_id=source_event.calendar_id)
        finally:
            limiter.throttle()

    for orphans in unclaimed.values():
        for orphan in orphans:
            try:
                destination.delete_event(orphan)
            except TransientError as exc:
                logger.error(
                    "Delete failed for orphan %s [%s, %s) in %s: %s",
                    orphan.uid,
                    serialize_datetime(orphan.start),
                    serialize_datetime(orphan.end),
                    destination_calendar_id,
                    exc,
                )
                report.counts.failed += 1
                report.record("delete_failed", orphan, error=str(exc))
            else:
                report.counts.deleted += 1
                report.record("delete", orphan)
            finally:
                limiter.throttle()

    return report
