"""
Usage log retention.

There is no scheduler: admitted traffic triggers the sweep. Each key carries
the time of the last sweep it triggered, and a key triggers at most one sweep
per interval. The sweep itself is global (a date threshold across all keys),
so with many active keys it runs more often than strictly needed. Deleting by
date threshold is idempotent, which keeps that harmless.
"""
from datetime import date, timedelta
from typing import Optional

from movie_api_server.clock import Clock, SystemClock, utc_day
from movie_api_server.logging_config import log_cleanup_run
from movie_api_server.store import DurableStore

DEFAULT_RETENTION_DAYS = 90
DEFAULT_CLEANUP_INTERVAL = timedelta(hours=24)


class RetentionPolicy:
    """Decides when a key's traffic should trigger a usage-log sweep."""

    def __init__(
        self,
        store: DurableStore,
        clock: Optional[Clock] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        interval: timedelta = DEFAULT_CLEANUP_INTERVAL,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.retention_days = retention_days
        self.interval = interval

    def cutoff(self) -> date:
        """Logs dated before this UTC day are expired."""
        return utc_day(self.clock.now()) - timedelta(days=self.retention_days)

    async def is_due(self, key_id: int) -> bool:
        last_run = await self.store.last_cleanup_marker(key_id)
        if last_run is None:
            return True
        return self.clock.now() - last_run > self.interval

    async def maybe_cleanup(self, key_id: int) -> bool:
        """
        Sweep expired usage logs if this key has not done so recently.

        Returns:
            True if the deletion ran, False if it was skipped

        Raises:
            StoreError: If the store fails; callers treat this as non-fatal
        """
        if not await self.is_due(key_id):
            return False

        cutoff = self.cutoff()
        deleted = await self.store.delete_usage_logs_before(cutoff)
        await self.store.record_cleanup_marker(key_id, self.clock.now())

        log_cleanup_run(key_id=key_id, cutoff=cutoff.isoformat(), deleted_rows=deleted)
        return True
