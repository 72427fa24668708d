"""
Report Query Service module for cl-routing-ledger

Read-only API over stored daily reports. A query is either a range tag
(d-1, month, 3m, 6m, 12m, all) resolved against today's local date, or an
explicit closed [from, to] date interval validated against max_range_days.
Validation happens before the store is touched. Windows that include
today also carry the live projection, since today has no stored row yet.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .aggregator import DailyReport, msat_to_sat
from .live import LiveReport
from .periods import (
    DateWindow,
    RangeValidationError,
    ReportRange,
    local_today,
    parse_date,
    resolve_range_window,
    validate_custom_range,
)


SUMMARY_FIELDS = (
    'forward_fee_revenue_msat',
    'rebalance_fee_cost_msat',
    'net_routing_profit_msat',
    'forward_count',
    'rebalance_count',
    'routed_volume_msat',
)


def _with_sats(values: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(values)
    for key, value in values.items():
        if key.endswith('_msat'):
            result[key[:-5] + '_sat'] = msat_to_sat(value)
    return result


@dataclass(frozen=True)
class ReportSeries:
    range_key: str
    window: DateWindow
    reports: List[DailyReport]
    live: Optional[LiveReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "range": self.range_key,
            "window": self.window.to_dict(),
            "count": len(self.reports),
            "series": [r.to_dict() for r in self.reports],
            "live": self.live.to_dict() if self.live else None,
        }


@dataclass(frozen=True)
class ReportSummary:
    range_key: str
    window: DateWindow
    days: int
    totals: Dict[str, int]
    averages: Dict[str, int]
    latest_balances: Optional[Dict[str, Optional[int]]] = None
    live: Optional[LiveReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "range": self.range_key,
            "window": self.window.to_dict(),
            "days": self.days,
            "totals": _with_sats(self.totals),
            "averages": _with_sats(self.averages),
            "latest_balances": _with_sats(self.latest_balances) if self.latest_balances else None,
            "live": self.live.to_dict() if self.live else None,
        }


class ReportQueryService:
    """
    Translates range/summary/live requests into store reads.

    Args:
        database: Database instance (read-only use)
        live_cache: LiveReportCache
        config: Config (max_range_days)
        tz: tzinfo for "today" (None = system local)
        clock: time source, injectable for tests
    """

    def __init__(self, database, live_cache, config, tz=None, clock=time.time):
        self.database = database
        self.live_cache = live_cache
        self.config = config
        self.tz = tz
        self._clock = clock

    def resolve_window(self, range_key: Optional[str] = None, start=None,
                       end=None) -> Tuple[str, DateWindow]:
        """
        Resolve request parameters to (label, window).

        Raises:
            RangeValidationError: unknown tag, bad dates, or too long a range
        """
        if start is not None or end is not None:
            if start is None or end is None:
                raise RangeValidationError("Both from and to are required for a custom range")
            start_date, end_date = parse_date(start), parse_date(end)
            validate_custom_range(start_date, end_date, self.config.snapshot().max_range_days)
            return "custom", DateWindow(start=start_date, end=end_date)

        report_range = ReportRange.parse(range_key or ReportRange.D_MINUS_1.value)
        today = local_today(self.tz, self._clock())
        return report_range.value, resolve_range_window(report_range, today)

    def _live_if_today(self, window: DateWindow) -> Optional[LiveReport]:
        if window.includes(local_today(self.tz, self._clock())):
            # Always the calendar day so far, whatever ledger-live is set to
            return self.live_cache.get(0)
        return None

    def _rows(self, window: DateWindow) -> List[Dict[str, Any]]:
        return self.database.get_daily_reports(
            window.start.isoformat() if window.start else None,
            window.end.isoformat() if window.end else None,
        )

    def query_range(self, range_key: Optional[str] = None, start=None, end=None) -> ReportSeries:
        """Stored reports for the window, ascending, plus today's live projection when included."""
        label, window = self.resolve_window(range_key, start, end)
        reports = [DailyReport.from_row(row) for row in self._rows(window)]
        return ReportSeries(range_key=label, window=window, reports=reports,
                            live=self._live_if_today(window))

    def query_summary(self, range_key: Optional[str] = None, start=None, end=None) -> ReportSummary:
        """Totals and per-day averages over the stored reports in the window."""
        label, window = self.resolve_window(range_key, start, end)
        rows = self._rows(window)

        totals = {key: sum(row[key] or 0 for row in rows) for key in SUMMARY_FIELDS}
        days = len(rows)
        averages = {key: (value // days if days else 0) for key, value in totals.items()}

        latest_balances = None
        if rows:
            last = rows[-1]
            latest_balances = {
                'report_date': last['report_date'],
                'onchain_balance_msat': last['onchain_balance_msat'],
                'lightning_balance_msat': last['lightning_balance_msat'],
                'total_balance_msat': last['total_balance_msat'],
            }

        return ReportSummary(
            range_key=label,
            window=window,
            days=days,
            totals=totals,
            averages=averages,
            latest_balances=latest_balances,
            live=self._live_if_today(window),
        )

    def query_live(self, lookback_hours: Optional[int] = None) -> LiveReport:
        """The cached live projection (at most live_ttl_seconds old)."""
        if lookback_hours is not None and int(lookback_hours) < 0:
            raise RangeValidationError("lookback_hours must not be negative")
        return self.live_cache.get(lookback_hours)
