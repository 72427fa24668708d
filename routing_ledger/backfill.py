"""
Backfill Driver module for cl-routing-ledger

Recomputes daily reports over an explicit [from, to] range, one date at a
time in ascending order. The range is validated before any work starts.
The first failing date stops the run; days already written stay, since
each day's upsert stands on its own.
"""

import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .periods import iter_dates, parse_date, validate_custom_range


@dataclass
class BackfillResult:
    start: date
    end: date
    completed: List[date] = field(default_factory=list)
    failed_date: Optional[date] = None
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed_date is None and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok" if self.ok else ("cancelled" if self.cancelled else "error"),
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
            "completed": [d.isoformat() for d in self.completed],
            "completed_count": len(self.completed),
            "failed_date": self.failed_date.isoformat() if self.failed_date else None,
            "error": self.error,
        }


class BackfillDriver:
    """Runs the report aggregator sequentially over a date range."""

    def __init__(self, aggregator, config, plugin, shutdown_event: Optional[threading.Event] = None):
        self.aggregator = aggregator
        self.config = config
        self.plugin = plugin
        self.shutdown_event = shutdown_event or threading.Event()

    def run(self, start, end, max_days: Optional[int] = None) -> BackfillResult:
        """
        Backfill [start, end] inclusive.

        Raises:
            RangeValidationError: bad dates, start after end, or more than
                max_days days (default: max_range_days); raised before any
                report is computed
        """
        start_date = parse_date(start)
        end_date = parse_date(end)
        limit = max_days if max_days is not None else self.config.snapshot().max_range_days
        days = validate_custom_range(start_date, end_date, limit)

        self.plugin.log(f"Backfill {start_date}..{end_date} ({days} days) starting")
        result = BackfillResult(start=start_date, end=end_date)

        for day in iter_dates(start_date, end_date):
            if self.shutdown_event.is_set():
                result.cancelled = True
                self.plugin.log(f"Backfill cancelled by shutdown before {day}", level='warn')
                break
            try:
                self.aggregator.run_daily(day, trigger="backfill")
            except Exception as e:
                result.failed_date = day
                result.error = str(e)
                self.plugin.log(f"Backfill stopped at {day}: {e}", level='error')
                break
            result.completed.append(day)

        if result.ok:
            self.plugin.log(f"Backfill {start_date}..{end_date} complete ({len(result.completed)} days)")
        return result
