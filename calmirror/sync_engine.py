from __future__ import annotations

import logging
import time
import traceback
from datetime import datetime
from typing import Callable

from calmirror.aggregator import collect_source_events, snapshot_destination
from calmirror.caldav_client import CalDAVService
from calmirror.config_manager import ConfigManager
from calmirror.errors import AccessError, ConfigurationError
from calmirror.models import AppConfig, ReconcileCounts, SyncResult, Window, serialize_datetime
from calmirror.rate_limiter import RateLimiter
from calmirror.reconciler import ReconcileReport, reconcile
from calmirror.state_store import StateStore
from calmirror.window_scheduler import (
    ProgressTracker,
    SystemClock,
    apply_daily_reset,
    next_window,
    sweep_windows,
)


logger = logging.getLogger(__name__)


class SyncEngine:
    """Entry points for the external trigger: one batch window, a full sweep, or a progress reset.

    The engine holds no lock; callers must not run two passes at once.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        clock: SystemClock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.clock = clock or SystemClock()
        self._sleep = sleep

    def _elapsed_ms(self, started_at: datetime) -> int:
        return int((self.clock.now() - started_at).total_seconds() * 1000)

    def _skip_reason(self, config: AppConfig) -> str:
        if not config.caldav.is_complete:
            return "CalDAV config missing base_url/username. Sync skipped."
        if not config.mirror.destination_calendar_id:
            return "Destination calendar is not configured. Sync skipped."
        return ""

    def _process_window(
        self,
        *,
        service: CalDAVService,
        config: AppConfig,
        window: Window,
        run_id: int,
        trigger: str,
    ) -> ReconcileReport:
        mirror = config.mirror
        destination_id = mirror.destination_calendar_id
        try:
            service.require_calendar(destination_id)
        except AccessError as exc:
            raise ConfigurationError(f"destination calendar {destination_id} is unreachable: {exc}") from exc

        sources = collect_source_events(service, mirror.source_calendar_ids, window)
        for calendar_id, reason in sources.skipped_calendars.items():
            self.state_store.record_audit_event(
                run_id=run_id,
                calendar_id=calendar_id,
                uid="calendar",
                action="skip_source_calendar",
                details={"trigger": trigger, "window": window.to_dict(), "error": reason},
            )

        try:
            destination_events = snapshot_destination(service, destination_id, window, mirror.ownership_tag)
        except AccessError as exc:
            raise ConfigurationError(f"destination calendar {destination_id} cannot be listed: {exc}") from exc

        limiter = RateLimiter(config.sync.mutation_delay_seconds, sleep=self._sleep)
        report = reconcile(
            source_events=sources.events,
            destination_events=destination_events,
            destination=service,
            destination_calendar_id=destination_id,
            mirror=mirror,
            limiter=limiter,
        )
        for action in report.actions:
            details = dict(action.details)
            details["trigger"] = trigger
            self.state_store.record_audit_event(
                run_id=run_id,
                calendar_id=action.calendar_id,
                uid=action.uid,
                action=action.action,
                details=details,
            )
        counts = report.counts
        logger.info(
            "Window %s: %d source events, %d tagged entries -> created=%d updated=%d deleted=%d failed=%d",
            window,
            len(sources.events),
            len(destination_events),
            counts.created,
            counts.updated,
            counts.deleted,
            counts.failed,
        )
        return report

    def _record_error(
        self,
        *,
        run_id: int,
        trigger: str,
        mode: str,
        started_at: datetime,
        exc: Exception,
        counts: ReconcileCounts,
        window: Window | None,
    ) -> SyncResult:
        duration_ms = self._elapsed_ms(started_at)
        error_message = f"{type(exc).__name__}: {exc}"
        logger.error("%s run aborted (window %s): %s", mode, window, error_message)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status="error",
            message=error_message,
            duration_ms=duration_ms,
            counts=counts,
            window=window,
        )
        self.state_store.record_audit_event(
            run_id=run_id,
            calendar_id="system",
            uid="sync",
            action="run_error",
            details={
                "trigger": trigger,
                "mode": mode,
                "window": window.to_dict() if window else None,
                "error": error_message,
                "traceback": traceback.format_exc(limit=5),
            },
        )
        return SyncResult(
            status="error",
            message=error_message,
            duration_ms=duration_ms,
            trigger=trigger,
            mode=mode,
            window=window,
            counts=counts,
        )

    def _record_skip(self, *, run_id: int, trigger: str, mode: str, started_at: datetime, message: str) -> SyncResult:
        duration_ms = self._elapsed_ms(started_at)
        logger.info(message)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status="skipped",
            message=message,
            duration_ms=duration_ms,
            counts=ReconcileCounts(),
        )
        return SyncResult(status="skipped", message=message, duration_ms=duration_ms, trigger=trigger, mode=mode)

    def run_batch(self, trigger: str = "manual") -> SyncResult:
        started_at = self.clock.now()
        run_id = self.state_store.start_sync_run(trigger=trigger, mode="batch")
        counts = ReconcileCounts()
        window: Window | None = None

        try:
            config = self.config_manager.load()
            skip_reason = self._skip_reason(config)
            if skip_reason:
                return self._record_skip(
                    run_id=run_id, trigger=trigger, mode="batch", started_at=started_at, message=skip_reason
                )

            mirror = config.mirror
            tracker = ProgressTracker(self.state_store)
            state = tracker.load()
            now = self.clock.now()
            local_now = self.clock.local_now(mirror.local_zone)
            state, rewound = apply_daily_reset(state, local_now, mirror)
            if rewound:
                # Persisted on its own so the rewind happens once per local day.
                tracker.save(state)
                logger.info(
                    "Daily reset at %s: cursor rewound to %s", local_now.isoformat(), serialize_datetime(state.cursor)
                )
                self.state_store.record_audit_event(
                    run_id=run_id,
                    calendar_id="system",
                    uid="progress",
                    action="daily_reset",
                    details={"trigger": trigger, "cursor": serialize_datetime(state.cursor)},
                )

            window, next_state = next_window(state, now, mirror, config.sync.window_length)
            service = CalDAVService(config.caldav)
            report = self._process_window(
                service=service,
                config=config,
                window=window,
                run_id=run_id,
                trigger=trigger,
            )
            counts = report.counts
            tracker.save(next_state)

            duration_ms = self._elapsed_ms(started_at)
            message = (
                f"Window {window}: created={counts.created} updated={counts.updated} "
                f"deleted={counts.deleted} failed={counts.failed}"
            )
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                counts=counts,
                window=window,
            )
            return SyncResult(
                status="success",
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                trigger=trigger,
                mode="batch",
                window=window,
                counts=counts,
                windows_processed=1,
            )
        except Exception as exc:
            return self._record_error(
                run_id=run_id,
                trigger=trigger,
                mode="batch",
                started_at=started_at,
                exc=exc,
                counts=counts,
                window=window,
            )

    def run_full_sweep(self, trigger: str = "manual") -> SyncResult:
        """Re-validate every window from the start date up to now.

        Progress state is neither read nor written.
        """
        started_at = self.clock.now()
        run_id = self.state_store.start_sync_run(trigger=trigger, mode="full_sweep")
        counts = ReconcileCounts()
        window: Window | None = None
        windows_processed = 0

        try:
            config = self.config_manager.load()
            skip_reason = self._skip_reason(config)
            if skip_reason:
                return self._record_skip(
                    run_id=run_id, trigger=trigger, mode="full_sweep", started_at=started_at, message=skip_reason
                )

            sweep_start = config.mirror.start_instant()
            now = self.clock.now()
            service = CalDAVService(config.caldav)
            for window in sweep_windows(sweep_start, now, config.sync.window_length):
                report = self._process_window(
                    service=service,
                    config=config,
                    window=window,
                    run_id=run_id,
                    trigger=trigger,
                )
                counts.add(report.counts)
                windows_processed += 1

            overall = Window(start=sweep_start, end=max(sweep_start, now))
            duration_ms = self._elapsed_ms(started_at)
            message = (
                f"Full sweep {overall}: {windows_processed} windows, created={counts.created} "
                f"updated={counts.updated} deleted={counts.deleted} failed={counts.failed}"
            )
            logger.info(message)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                counts=counts,
                window=overall,
            )
            return SyncResult(
                status="success",
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                trigger=trigger,
                mode="full_sweep",
                window=overall,
                counts=counts,
                windows_processed=windows_processed,
            )
        except Exception as exc:
            result = self._record_error(
                run_id=run_id,
                trigger=trigger,
                mode="full_sweep",
                started_at=started_at,
                exc=exc,
                counts=counts,
                window=window,
            )
            result.windows_processed = windows_processed
            return result

    def reset_progress(self) -> None:
        """Forget the cursor and reset date so the next batch restarts at the start date."""
        ProgressTracker(self.state_store).clear()
        logger.info("Sync progress cleared")
        self.state_store.record_audit_event(
            calendar_id="system",
            uid="progress",
            action="reset_progress",
            details={},
        )

    def progress(self) -> dict[str, object]:
        return ProgressTracker(self.state_store).load().to_dict()
