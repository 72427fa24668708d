"""
Live Report Cache module for cl-routing-ledger

Best-effort routing report for the still-open current day
([today's local midnight, now), or a trailing lookback window when one is
configured). Results are cached for live_ttl_seconds, keyed by local date
and lookback, so the cache resets at local midnight and a burst of
callers costs one computation. Balances are optional here: if the daemon
does not answer, the projection is still returned without them. Nothing
is persisted.
"""

import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Tuple

from .aggregator import RoutingMetrics, msat_to_sat
from .metrics import MetricNames, METRIC_HELP
from .periods import build_time_range_for_lookback, build_time_range_for_today, local_today


@dataclass(frozen=True)
class LiveReport:
    report_date: date
    window_start: int
    window_end: int
    lookback_hours: int
    routing: RoutingMetrics
    onchain_balance_msat: Optional[int]
    lightning_balance_msat: Optional[int]
    computed_at: float
    balance_error: Optional[str] = None

    @property
    def total_balance_msat(self) -> Optional[int]:
        if self.onchain_balance_msat is None or self.lightning_balance_msat is None:
            return None
        return self.onchain_balance_msat + self.lightning_balance_msat

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "report_date": self.report_date.isoformat(),
            "live": True,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "lookback_hours": self.lookback_hours,
            "computed_at": int(self.computed_at),
        }
        result.update(self.routing.to_dict())
        for key in ("onchain_balance_msat", "lightning_balance_msat", "total_balance_msat"):
            value = getattr(self, key)
            result[key] = value
            result[key[:-5] + "_sat"] = msat_to_sat(value)
        if self.balance_error:
            result["balance_error"] = self.balance_error
        return result


class LiveReportCache:
    """
    Short-lived cache in front of the live projection.

    Args:
        aggregator: ReportAggregator (window computation and time zone)
        node_client: NodeEventClient (best-effort balances)
        config: Config (live_ttl_seconds, live_lookback_hours)
        plugin: pyln Plugin for logging
        metrics: Optional PrometheusExporter
        clock: time source, injectable for tests
    """

    def __init__(self, aggregator, node_client, config, plugin, metrics=None, clock=time.time):
        self.aggregator = aggregator
        self.node_client = node_client
        self.config = config
        self.plugin = plugin
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[date, int], LiveReport] = {}

    def get(self, lookback_hours: Optional[int] = None) -> LiveReport:
        """
        Live projection, at most live_ttl_seconds old.

        Concurrent callers serialize on the cache lock, so only the first
        one within a TTL window queries the daemon.
        """
        cfg = self.config.snapshot()
        lookback = cfg.live_lookback_hours if lookback_hours is None else int(lookback_hours)

        with self._lock:
            now = self._clock()
            key = (local_today(self.aggregator.tz, now), lookback)
            cached = self._entries.get(key)
            if cached is not None and now - cached.computed_at < cfg.live_ttl_seconds:
                if self.metrics:
                    self.metrics.inc_counter(
                        MetricNames.LIVE_CACHE_HITS_TOTAL, 1, {},
                        METRIC_HELP.get(MetricNames.LIVE_CACHE_HITS_TOTAL, "")
                    )
                return cached

            report = self._compute(key[0], lookback, now)
            # Entries for earlier dates can never be hit again
            self._entries = {k: v for k, v in self._entries.items() if k[0] == key[0]}
            self._entries[key] = report
            return report

    def _compute(self, today: date, lookback: int, now: float) -> LiveReport:
        if lookback > 0:
            time_range = build_time_range_for_lookback(lookback, self.aggregator.tz, now)
        else:
            time_range = build_time_range_for_today(self.aggregator.tz, now)
        routing = self.aggregator.compute_window(time_range)

        onchain = lightning = None
        balance_error = None
        try:
            balances = self.node_client.get_balances(attempts=1)
            onchain, lightning = balances.onchain_msat, balances.lightning_msat
        except Exception as e:
            balance_error = str(e)
            self.plugin.log(f"Live report without balances: {e}", level='debug')

        return LiveReport(
            report_date=today,
            window_start=time_range.start_ts,
            window_end=time_range.end_ts,
            lookback_hours=lookback,
            routing=routing,
            onchain_balance_msat=onchain,
            lightning_balance_msat=lightning,
            computed_at=now,
            balance_error=balance_error,
        )

    def invalidate(self):
        with self._lock:
            self._entries.clear()
