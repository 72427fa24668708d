"""
Daily report scheduler for cl-routing-ledger

Once per day, daily_run_delay_minutes after local midnight, computes the
report for yesterday. A failed run is logged and counted; the next tick
tries again. On start-up a missing report for yesterday is computed once,
so a node that was down over midnight still gets its row.
"""

import random
import threading
import time
from datetime import timedelta
from typing import Optional

from .periods import local_midnight, local_now


class DailyScheduler:
    """Background thread that triggers ReportAggregator.run_daily."""

    def __init__(self, aggregator, database, config, plugin, shutdown_event: threading.Event,
                 clock=time.time):
        self.aggregator = aggregator
        self.database = database
        self.config = config
        self.plugin = plugin
        self.shutdown_event = shutdown_event
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self.last_run_date: Optional[str] = None
        self.last_error: Optional[str] = None

    def yesterday(self):
        return local_now(self.aggregator.tz, self._clock()).date() - timedelta(days=1)

    def seconds_until_next_run(self, now: Optional[float] = None) -> float:
        """Seconds from now until the next local midnight + delay."""
        now = self._clock() if now is None else now
        cfg = self.config.snapshot()
        now_local = local_now(self.aggregator.tz, now)
        delay = timedelta(minutes=cfg.daily_run_delay_minutes)

        target = local_midnight(now_local.date(), self.aggregator.tz) + delay
        if target.timestamp() <= now:
            target = local_midnight(now_local.date() + timedelta(days=1), self.aggregator.tz) + delay
        return max(1.0, target.timestamp() - now)

    def tick(self) -> bool:
        """Aggregate yesterday. Returns True on success; failures are logged, not raised."""
        day = self.yesterday()
        try:
            self.aggregator.run_daily(day, trigger="scheduled")
        except Exception as e:
            self.last_error = str(e)
            self.plugin.log(f"Scheduled report for {day} failed: {e}. Will retry next tick.", level='error')
            return False
        self.last_run_date = day.isoformat()
        self.last_error = None
        return True

    def catch_up(self) -> bool:
        """Compute yesterday's report if it is missing. Returns True if a run was attempted."""
        day = self.yesterday()
        if self.database.get_daily_report(day.isoformat()) is not None:
            return False
        self.plugin.log(f"No report stored for {day}; computing it now")
        self.tick()
        return True

    def _loop(self):
        # Initial delay (interruptible)
        if self.shutdown_event.wait(30):
            return
        try:
            self.catch_up()
        except Exception as e:
            self.plugin.log(f"Report catch-up failed: {e}", level='warn')

        while not self.shutdown_event.is_set():
            # Add up to 60s of jitter
            sleep_time = self.seconds_until_next_run() + random.randint(0, 60)
            self.plugin.log(f"Next daily report in {int(sleep_time)}s", level='debug')
            if self.shutdown_event.wait(sleep_time):
                self.plugin.log("Daily report scheduler stopping due to shutdown signal")
                break
            self.tick()

    def start(self):
        self._thread = threading.Thread(target=self._loop, daemon=True, name="ledger-daily-report")
        self._thread.start()

    def status(self):
        return {
            "running": bool(self._thread and self._thread.is_alive()),
            "last_run_date": self.last_run_date,
            "last_error": self.last_error,
            "next_run_in_seconds": int(self.seconds_until_next_run()),
        }
