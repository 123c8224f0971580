from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Callable

from tutti.caldav_client import CalDAVService
from tutti.config_manager import ConfigManager
from tutti.description import DescriptionRenderer
from tutti.diff_sync import WATERMARK_KEY, DiffScheduler
from tutti.event_time import resolve_zone, sync_window
from tutti.ledger import Ledger
from tutti.models import (
    AppConfig,
    DiffSyncResult,
    PushResult,
    SyncOutcome,
    WriteOptions,
    serialize_datetime,
    utc_now,
)
from tutti.pull_reconciler import PullReconciler
from tutti.push_sync import ACTION_FAILED, ACTION_SKIPPED, PushSync

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "CalDAV config missing base_url/username. Sync skipped."


@dataclass
class CalendarSession:
    calendar: CalDAVService
    push_sync: PushSync
    tz: tzinfo


class SyncEngine:
    """Entry points used by the scheduler and the HTTP surface.

    Also acts as the ledger's change listener: user writes that do not carry
    ``skip_external_sync`` are pushed (events) or re-rendered (responses).
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        ledger: Ledger,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.ledger = ledger
        self.clock = clock
        self._lock = threading.RLock()
        ledger.on_event_changed = self._on_event_changed
        ledger.on_responses_changed = self._on_responses_changed

    def _elapsed_ms(self, started_at: datetime) -> int:
        return int((self.clock() - started_at).total_seconds() * 1000)

    def use_timezone(self, name: str) -> tzinfo:
        """Point the ledger at the configured zone so its all-day normalization matches the sync's."""
        tz = resolve_zone(name)
        if self.ledger.tz != tz:
            logger.info("ledger timezone now %s", tz)
            self.ledger.tz = tz
        return tz

    def _open_session(self, config: AppConfig) -> CalendarSession:
        tz = self.use_timezone(config.sync.timezone)
        calendar = CalDAVService(config.caldav, tz)
        info = calendar.ensure_calendar(config.caldav.calendar_id, config.caldav.calendar_name)
        if info.calendar_id != config.caldav.calendar_id:
            self.config_manager.set_calendar_id(info.calendar_id)
        renderer = DescriptionRenderer(config.description, tz)
        return CalendarSession(
            calendar=calendar,
            push_sync=PushSync(self.ledger, calendar, renderer, tz, clock=self.clock),
            tz=tz,
        )

    def sync_all(self, limit_to_window: bool = True, trigger: str = "manual") -> SyncOutcome:
        started_at = self.clock()
        outcome = SyncOutcome()
        status = "success"
        run_id = self.ledger.start_sync_run(trigger=trigger)
        with self._lock:
            try:
                config = self.config_manager.load()
                if not config.caldav.is_configured:
                    outcome.failure(NOT_CONFIGURED)
                    status = "skipped"
                    return outcome

                session = self._open_session(config)
                window_start, window_end = sync_window(
                    self.clock(),
                    config.sync.window_past_days,
                    config.sync.window_future_days,
                )
                reconciler = PullReconciler(self.ledger, session.calendar, session.push_sync, session.tz, run_id=run_id)
                outcome.merge(reconciler.run(window_start, window_end, limit_to_window))

                window = (window_start, window_end) if limit_to_window else None
                for record in self.ledger.list_events("active", window):
                    if not record.external_ref:
                        continue
                    result = session.push_sync.refresh_description(record.id)
                    if result.action == ACTION_FAILED:
                        outcome.failure(f"{record.id}: {result.error}")
                    elif result.action != ACTION_SKIPPED:
                        outcome.bump("descriptions_refreshed")
                if outcome.failed:
                    status = "partial"
                return outcome
            except Exception as exc:
                error_message = f"{type(exc).__name__}: {exc}"
                logger.exception("sync run %s failed", run_id)
                outcome.failure(error_message)
                status = "error"
                self.ledger.record_audit_event(
                    event_id="system",
                    action="run_error",
                    details={
                        "trigger": trigger,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                    run_id=run_id,
                )
                return outcome
            finally:
                self.ledger.finish_sync_run(
                    run_id=run_id,
                    status=status,
                    message="; ".join(outcome.errors[:3]) or f"stats={outcome.stats}",
                    duration_ms=self._elapsed_ms(started_at),
                    succeeded=outcome.succeeded,
                    failed=outcome.failed,
                )

    def sync_one_event(self, event_id: str) -> PushResult:
        event = self.ledger.get_event(event_id)
        if event is None:
            return PushResult(event_id=event_id, action=ACTION_FAILED, error="event not found")
        with self._lock:
            try:
                config = self.config_manager.load()
                if not config.caldav.is_configured:
                    return PushResult(event_id=event_id, action=ACTION_FAILED, error=NOT_CONFIGURED)
                session = self._open_session(config)
            except Exception as exc:
                logger.exception("calendar unavailable while pushing %s", event_id)
                return PushResult(
                    event_id=event_id,
                    action=ACTION_FAILED,
                    external_ref=event.external_ref,
                    error=f"{type(exc).__name__}: {exc}",
                )
            return session.push_sync.push(event)

    def scheduled_diff_sync(self) -> DiffSyncResult:
        try:
            config = self.config_manager.load()
        except Exception as exc:
            logger.exception("config unreadable for diff sync")
            return DiffSyncResult(ran=False, reason="error", errors=[f"{type(exc).__name__}: {exc}"])
        if not config.caldav.is_configured:
            return DiffSyncResult(ran=False, reason="not_configured")
        with self._lock:
            scheduler = DiffScheduler(
                self.ledger,
                lambda: self._open_session(config).push_sync,
                config.sync.diff_min_interval_seconds,
                clock=self.clock,
            )
            try:
                return scheduler.run()
            except Exception as exc:
                logger.exception("diff sync failed")
                return DiffSyncResult(ran=False, reason="error", errors=[f"{type(exc).__name__}: {exc}"])

    def delete_event(self, event_id: str) -> bool:
        """Soft-delete in the ledger and remove the linked calendar event."""
        event = self.ledger.get_event(event_id)
        if event is None or event.status == "deleted":
            return False
        deleted = self.ledger.update_event(event_id, {"status": "deleted"}, WriteOptions(skip_external_sync=True))
        if not deleted:
            return False
        details: dict[str, Any] = {"external_ref": event.external_ref}
        if event.external_ref:
            with self._lock:
                try:
                    config = self.config_manager.load()
                    if config.caldav.is_configured:
                        session = self._open_session(config)
                        details["external_deleted"] = session.calendar.delete_event(event.external_ref)
                except Exception as exc:
                    logger.exception("deleting calendar event %s failed", event.external_ref)
                    details["error"] = f"{type(exc).__name__}: {exc}"
        self.ledger.record_audit_event(event_id=event_id, action="delete_event", details=details)
        return True

    def status(self) -> dict[str, Any]:
        watermark = self.ledger.get_config(WATERMARK_KEY)
        return {
            "now": serialize_datetime(self.clock()),
            "diff_sync_watermark": watermark,
            "runs": self.ledger.recent_sync_runs(limit=20),
        }

    def _on_event_changed(self, event_id: str) -> None:
        event = self.ledger.get_event(event_id)
        if event is None or not event.is_active:
            return
        result = self.sync_one_event(event_id)
        if not result.ok:
            logger.warning("calendar push for %s failed: %s", event_id, result.error)

    def _on_responses_changed(self, event_id: str) -> None:
        with self._lock:
            try:
                config = self.config_manager.load()
                if not config.caldav.is_configured:
                    return
                session = self._open_session(config)
            except Exception:
                logger.exception("calendar unavailable for description refresh of %s", event_id)
                return
            result = session.push_sync.refresh_description(event_id)
        if not result.ok:
            logger.warning("description refresh for %s failed: %s", event_id, result.error)
