from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from tutti.ledger import Ledger
from tutti.models import DiffSyncResult, ensure_tz, parse_iso_datetime, serialize_datetime, utc_now
from tutti.push_sync import ACTION_SKIPPED, PushSync

logger = logging.getLogger(__name__)

WATERMARK_KEY = "diff_sync_watermark"


class DiffScheduler:
    """Response-driven description refresh guarded by a persisted watermark.

    ``push_sync_factory`` is only called when some event actually needs a
    refresh, so a guarded or empty run never touches the calendar. When the
    factory fails the previous watermark is kept instead of advancing to
    ``now``, so the same responses are retried on the next run.
    """

    def __init__(
        self,
        ledger: Ledger,
        push_sync_factory: Callable[[], PushSync],
        min_interval_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.push_sync_factory = push_sync_factory
        self.min_interval = timedelta(seconds=max(0, int(min_interval_seconds)))
        self.clock = clock

    def load_watermark(self) -> datetime | None:
        raw = self.ledger.get_config(WATERMARK_KEY)
        try:
            return parse_iso_datetime(raw)
        except ValueError:
            logger.warning("ignoring unreadable %s value %r", WATERMARK_KEY, raw)
            return None

    def sync_since(self, watermark: datetime | None, now: datetime) -> DiffSyncResult:
        now = ensure_tz(now)
        if watermark is not None and now - ensure_tz(watermark) < self.min_interval:
            logger.debug("diff sync skipped: last run at %s", serialize_datetime(watermark))
            return DiffSyncResult(ran=False, reason="min_interval", watermark=watermark)

        responses = self.ledger.list_responses_updated_since(watermark)
        event_ids = sorted({response.event_id for response in responses})
        result = DiffSyncResult(ran=True, reason="scanned", watermark=now, event_ids=event_ids)
        if not event_ids:
            return result
        try:
            push_sync = self.push_sync_factory()
        except Exception as exc:
            # Keep the old watermark so these responses are picked up next time.
            logger.exception("calendar unavailable for diff sync")
            result.reason = "calendar_unavailable"
            result.watermark = watermark
            result.failed = len(event_ids)
            result.errors.append(f"{type(exc).__name__}: {exc}")
            return result
        for event_id in event_ids:
            pushed = push_sync.refresh_description(event_id)
            if not pushed.ok:
                result.failed += 1
                result.errors.append(f"{event_id}: {pushed.error}")
            elif pushed.action != ACTION_SKIPPED:
                result.refreshed += 1
        logger.info(
            "diff sync: %s events touched, %s refreshed, %s failed",
            len(event_ids),
            result.refreshed,
            result.failed,
        )
        return result

    def run(self, now: datetime | None = None) -> DiffSyncResult:
        result = self.sync_since(self.load_watermark(), now or self.clock())
        if result.reason == "scanned" and result.watermark is not None:
            self.ledger.set_config(WATERMARK_KEY, serialize_datetime(result.watermark) or "")
        return result
