from __future__ import annotations

import logging
from dataclasses import dataclass, field

from calmirror.caldav_client import CalDAVService
from calmirror.errors import AccessError
from calmirror.models import EventRecord, Window


logger = logging.getLogger(__name__)


@dataclass
class SourceCollection:
    events: list[EventRecord] = field(default_factory=list)
    skipped_calendars: dict[str, str] = field(default_factory=dict)
    all_day_dropped: int = 0


def collect_source_events(
    source: CalDAVService,
    calendar_ids: list[str],
    window: Window,
) -> SourceCollection:
    """Timed events from every reachable source calendar, tagged with their origin.

    A calendar that cannot be listed is skipped for this window only.
    """
    collected = SourceCollection()
    for calendar_id in calendar_ids:
        try:
            events = source.fetch_events(calendar_id, window.start, window.end)
        except AccessError as exc:
            logger.warning("Skipping source calendar %s for window %s: %s", calendar_id, window, exc)
            collected.skipped_calendars[calendar_id] = str(exc)
            continue
        for event in events:
            if event.all_day:
                collected.all_day_dropped += 1
                continue
            collected.events.append(event.with_updates(calendar_id=calendar_id))
    return collected


def snapshot_destination(
    destination: CalDAVService,
    calendar_id: str,
    window: Window,
    tag: str,
) -> list[EventRecord]:
    """Destination entries in the window that carry the ownership tag."""
    return [
        event
        for event in destination.list_tagged_events(calendar_id, window.start, window.end, tag)
        if event.has_tag(tag)
    ]
