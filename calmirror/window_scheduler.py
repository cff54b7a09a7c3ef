from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterator

from calmirror.models import MirrorConfig, SyncState, Window, parse_iso_datetime, serialize_datetime
from calmirror.state_store import StateStore


logger = logging.getLogger(__name__)

SYNC_CURSOR_KEY = "syncCursor"
LAST_RESET_DATE_KEY = "lastResetDate"
MAX_CURSOR_LEAD = timedelta(days=365)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local_now(self, zone: tzinfo) -> datetime:
        return self.now().astimezone(zone)


class ProgressTracker:
    """Reads and writes :class:`SyncState` under its two progress keys."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def load(self) -> SyncState:
        state = SyncState()
        raw_cursor = self.store.get_meta(SYNC_CURSOR_KEY)
        if raw_cursor:
            try:
                state.cursor = parse_iso_datetime(raw_cursor)
            except ValueError:
                logger.warning("Ignoring unparsable %s value %r", SYNC_CURSOR_KEY, raw_cursor)
        raw_reset = self.store.get_meta(LAST_RESET_DATE_KEY)
        if raw_reset:
            try:
                state.last_reset_date = date.fromisoformat(raw_reset)
            except ValueError:
                logger.warning("Ignoring unparsable %s value %r", LAST_RESET_DATE_KEY, raw_reset)
        return state

    def save(self, state: SyncState) -> None:
        if state.cursor is None:
            self.store.delete_meta(SYNC_CURSOR_KEY)
        else:
            self.store.set_meta(SYNC_CURSOR_KEY, serialize_datetime(state.cursor) or "")
        if state.last_reset_date is None:
            self.store.delete_meta(LAST_RESET_DATE_KEY)
        else:
            self.store.set_meta(LAST_RESET_DATE_KEY, state.last_reset_date.isoformat())

    def clear(self) -> None:
        self.store.delete_meta(SYNC_CURSOR_KEY)
        self.store.delete_meta(LAST_RESET_DATE_KEY)


def apply_daily_reset(state: SyncState, local_now: datetime, mirror: MirrorConfig) -> tuple[SyncState, bool]:
    """Rewind the cursor to the start date once per local day, at the reset hour."""
    today = local_now.date()
    if local_now.hour != mirror.reset_hour or state.last_reset_date == today:
        return state, False
    return SyncState(cursor=mirror.start_instant(), last_reset_date=today), True


def next_window(
    state: SyncState,
    now: datetime,
    mirror: MirrorConfig,
    window_length: timedelta,
) -> tuple[Window, SyncState]:
    """Window to process next and the state to persist once it is reconciled.

    The end is never capped at ``now``; future events inside the window are
    mirrored ahead of time.
    """
    start_floor = mirror.start_instant()
    start = start_floor if state.cursor is None else max(state.cursor, start_floor)
    if start - now > MAX_CURSOR_LEAD:
        logger.warning(
            "Cursor %s is more than a year ahead of %s; restarting window at now",
            serialize_datetime(start),
            serialize_datetime(now),
        )
        start = now
    window = Window(start=start, end=start + window_length)
    return window, SyncState(cursor=window.end, last_reset_date=state.last_reset_date)


def sweep_windows(start: datetime, now: datetime, window_length: timedelta) -> Iterator[Window]:
    """Consecutive windows tiling ``[start, now)``; the last one ends at ``now``."""
    cursor = start
    while cursor < now:
        end = min(cursor + window_length, now)
        yield Window(start=cursor, end=end)
        cursor = end
