from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import caldav
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calmirror.errors import AccessError, TransientError
from calmirror.models import CalendarInfo, CalDAVConfig, EventRecord, date_to_datetime, normalize_calendar_id


logger = logging.getLogger(__name__)

PRODID = "-//calmirror//Calendar Mirror//EN"


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def build_ical(event: EventRecord) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", event.uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", event.summary or "")
    vevent.add("DESCRIPTION", event.description or "")
    if event.start is not None:
        vevent.add("DTSTART", event.start)
    if event.end is not None:
        vevent.add("DTEND", event.end)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def parse_resource(calendar_id: str, resource: Any) -> EventRecord:
    raw_ical = _decode_raw_ical(resource.data)

    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        raise ValueError("VEVENT missing in calendar resource.")

    uid = str(vevent.get("UID", "")).strip()
    summary = str(vevent.get("SUMMARY", "")).strip()
    description = str(vevent.get("DESCRIPTION", "")).strip()
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False)
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    end = _coerce_datetime(dtend_raw, is_end=True)
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    if start and end is None and vevent.get("DURATION") is not None:
        duration = vevent.decoded("DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
    if start and end is None:
        end = start + timedelta(hours=1)
    return EventRecord(
        calendar_id=calendar_id,
        uid=uid,
        summary=summary,
        description=description,
        start=start,
        end=end,
        all_day=all_day,
        href=str(getattr(resource, "url", "") or ""),
    )


class CalDAVService:
    """Calendar source and destination backed by one CalDAV account."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_complete:
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = normalize_calendar_id(str(calendar.url))
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=str(calendar.url)))
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        key = normalize_calendar_id(calendar_id)
        if key in self._calendar_cache:
            return self._calendar_cache[key]
        try:
            self._connect()
            for calendar in self._principal.calendars():
                self._calendar_cache[normalize_calendar_id(str(calendar.url))] = calendar
        except Exception as exc:
            raise AccessError(calendar_id, f"cannot list calendars: {type(exc).__name__}: {exc}") from exc
        if key not in self._calendar_cache:
            raise AccessError(calendar_id, "calendar not found")
        return self._calendar_cache[key]

    def require_calendar(self, calendar_id: str) -> CalendarInfo:
        calendar = self._get_calendar(calendar_id)
        name = getattr(calendar, "name", "") or calendar_id
        return CalendarInfo(calendar_id=normalize_calendar_id(calendar_id), name=name, url=str(calendar.url))

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[EventRecord]:
        """Events overlapping ``[start, end)``, recurrences expanded."""
        calendar = self._get_calendar(calendar_id)
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=True)
        except Exception as exc:
            raise AccessError(calendar_id, f"search failed: {type(exc).__name__}: {exc}") from exc
        events: list[EventRecord] = []
        for item in resources:
            try:
                event = parse_resource(calendar_id, item)
            except ValueError as exc:
                logger.warning("Skipping unparsable resource in %s: %s", calendar_id, exc)
                continue
            if event.start is None or event.end is None:
                continue
            events.append(event)
        return events

    def list_tagged_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        tag: str,
    ) -> list[EventRecord]:
        return [event for event in self.fetch_events(calendar_id, start, end) if event.has_tag(tag)]

    def create_event(
        self,
        calendar_id: str,
        title: str,
        start: datetime,
        end: datetime,
        tag: str,
    ) -> EventRecord:
        event = EventRecord(
            calendar_id=calendar_id,
            uid=f"{uuid.uuid4()}@calmirror",
            summary=title,
            description=tag,
            start=start,
            end=end,
        )
        try:
            calendar = self._get_calendar(calendar_id)
            resource = calendar.save_event(build_ical(event))
        except Exception as exc:
            raise TransientError(f"create in {calendar_id} failed: {type(exc).__name__}: {exc}") from exc
        href = str(getattr(resource, "url", "") or "")
        return event.with_updates(href=href)

    def _resource_for(self, event: EventRecord) -> Any:
        calendar = self._get_calendar(event.calendar_id)
        if event.href:
            return calendar.event_by_url(event.href)
        return calendar.event_by_uid(event.uid)

    def set_title(self, event: EventRecord, title: str) -> EventRecord:
        updated = event.with_updates(summary=title)
        try:
            resource = self._resource_for(event)
            resource.data = build_ical(updated)
            resource.save()
        except Exception as exc:
            raise TransientError(
                f"retitle of {event.uid} in {event.calendar_id} failed: {type(exc).__name__}: {exc}"
            ) from exc
        return updated

    def delete_event(self, event: EventRecord) -> None:
        try:
            resource = self._resource_for(event)
            resource.delete()
        except Exception as exc:
            raise TransientError(
                f"delete of {event.uid} in {event.calendar_id} failed: {type(exc).__name__}: {exc}"
            ) from exc
