"""
Report Aggregator module for cl-routing-ledger

Computes the DailyReport for one local calendar date from the recorded
events plus a point-in-time balance snapshot, and upserts it.

Revenue is the sum of forward fees, cost is the sum of rebalance fees and
net profit is always exactly revenue - cost. Routed volume sums the amounts
of forwards and rebalances. Balances reflect the node at computation time,
not at the end of the reported day, so the snapshot is most meaningful
when the report runs shortly after midnight.

Runs for the same date are single-flight: the scheduler, the operator
command and the backfill loop may ask for the same date at once, and a
second caller waits for the run in progress and shares its outcome.
Different dates run concurrently.
"""

import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Optional

from .events import EventKind
from .metrics import MetricNames, METRIC_HELP
from .node_client import NodeUnavailableError
from .periods import (
    TimeRange,
    build_time_range_for_date,
    parse_date,
    resolve_timezone,
)


def msat_to_sat(value: Optional[int]) -> Optional[int]:
    """Whole satoshis, rounded down."""
    if value is None:
        return None
    return int(value) // 1000


class AggregationError(Exception):
    """A daily report could not be computed; nothing was written."""

    def __init__(self, report_date, reason: str):
        self.report_date = report_date
        self.reason = reason
        super().__init__(f"Report for {report_date} failed: {reason}")


@dataclass(frozen=True)
class RoutingMetrics:
    forward_fee_revenue_msat: int = 0
    rebalance_fee_cost_msat: int = 0
    forward_count: int = 0
    rebalance_count: int = 0
    routed_volume_msat: int = 0

    @property
    def net_routing_profit_msat(self) -> int:
        return self.forward_fee_revenue_msat - self.rebalance_fee_cost_msat

    @classmethod
    def from_totals(cls, totals: Dict[str, Dict[str, int]]) -> 'RoutingMetrics':
        forwards = totals.get(EventKind.FORWARD.value, {})
        rebalances = totals.get(EventKind.REBALANCE.value, {})
        return cls(
            forward_fee_revenue_msat=forwards.get('fee_msat', 0),
            rebalance_fee_cost_msat=rebalances.get('fee_msat', 0),
            forward_count=forwards.get('count', 0),
            rebalance_count=rebalances.get('count', 0),
            routed_volume_msat=forwards.get('amount_msat', 0) + rebalances.get('amount_msat', 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['net_routing_profit_msat'] = self.net_routing_profit_msat
        for key in list(result):
            if key.endswith('_msat'):
                result[key[:-5] + '_sat'] = msat_to_sat(result[key])
        return result


@dataclass(frozen=True)
class DailyReport:
    """The stored aggregate for one local calendar day."""
    report_date: date
    forward_fee_revenue_msat: int
    rebalance_fee_cost_msat: int
    net_routing_profit_msat: int
    forward_count: int
    rebalance_count: int
    routed_volume_msat: int
    onchain_balance_msat: Optional[int]
    lightning_balance_msat: Optional[int]
    total_balance_msat: Optional[int]
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'DailyReport':
        return cls(
            report_date=parse_date(row['report_date']),
            forward_fee_revenue_msat=row['forward_fee_revenue_msat'],
            rebalance_fee_cost_msat=row['rebalance_fee_cost_msat'],
            net_routing_profit_msat=row['net_routing_profit_msat'],
            forward_count=row['forward_count'],
            rebalance_count=row['rebalance_count'],
            routed_volume_msat=row['routed_volume_msat'],
            onchain_balance_msat=row.get('onchain_balance_msat'),
            lightning_balance_msat=row.get('lightning_balance_msat'),
            total_balance_msat=row.get('total_balance_msat'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict with every *_msat field mirrored as a floored *_sat field."""
        result = asdict(self)
        result['report_date'] = self.report_date.isoformat()
        for key in list(result):
            if key.endswith('_msat'):
                result[key[:-5] + '_sat'] = msat_to_sat(result[key])
        return result


class ReportAggregator:
    """
    Computes and stores daily routing reports.

    Args:
        database: Database instance
        node_client: NodeEventClient (balance snapshots)
        config: Config
        plugin: pyln Plugin for logging
        metrics: Optional PrometheusExporter
    """

    def __init__(self, database, node_client, config, plugin, metrics=None):
        self.database = database
        self.node_client = node_client
        self.config = config
        self.plugin = plugin
        self.metrics = metrics
        self.tz = resolve_timezone(config.timezone)

        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    def compute_window(self, time_range: TimeRange) -> RoutingMetrics:
        """Routing metrics for events with start_ts <= occurred_at < end_ts."""
        totals = self.database.get_event_totals(
            time_range.start_ts, time_range.end_ts,
            kinds=[EventKind.FORWARD.value, EventKind.REBALANCE.value]
        )
        return RoutingMetrics.from_totals(totals)

    def run_daily(self, report_date, trigger: str = "manual") -> DailyReport:
        """
        Compute and upsert the report for report_date (date or YYYY-MM-DD).

        Raises:
            AggregationError: balance snapshot or storage failed; no row was
                written, or the wait on a concurrent run for the same date
                exceeded run_timeout_seconds
        """
        day = parse_date(report_date)
        key = day.isoformat()

        with self._inflight_lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            timeout = self.config.snapshot().run_timeout_seconds
            self.plugin.log(f"Report for {key} already running; waiting for it ({trigger})")
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                raise AggregationError(key, f"timed out after {timeout}s waiting for the run in progress")

        try:
            report = self._compute_and_store(day, trigger)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(report)
            return report
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def _compute_and_store(self, day: date, trigger: str) -> DailyReport:
        key = day.isoformat()
        started = time.time()
        self._count(MetricNames.REPORT_RUNS_TOTAL, trigger)

        try:
            time_range = build_time_range_for_date(day, self.tz)
            routing = self.compute_window(time_range)
        except Exception as e:
            self._count(MetricNames.REPORT_FAILURES_TOTAL, trigger)
            raise AggregationError(key, f"reading events failed: {e}")

        try:
            balances = self.node_client.get_balances()
        except NodeUnavailableError as e:
            self._count(MetricNames.REPORT_FAILURES_TOTAL, trigger)
            raise AggregationError(key, f"balance snapshot unavailable: {e}")

        values = {
            'forward_fee_revenue_msat': routing.forward_fee_revenue_msat,
            'rebalance_fee_cost_msat': routing.rebalance_fee_cost_msat,
            'net_routing_profit_msat': routing.net_routing_profit_msat,
            'forward_count': routing.forward_count,
            'rebalance_count': routing.rebalance_count,
            'routed_volume_msat': routing.routed_volume_msat,
            'onchain_balance_msat': balances.onchain_msat,
            'lightning_balance_msat': balances.lightning_msat,
            'total_balance_msat': balances.total_msat,
        }

        try:
            self.database.upsert_daily_report(key, values)
            row = self.database.get_daily_report(key)
        except Exception as e:
            self._count(MetricNames.REPORT_FAILURES_TOTAL, trigger)
            raise AggregationError(key, f"writing report failed: {e}")

        if self.metrics:
            self.metrics.set_gauge(
                MetricNames.REPORT_LAST_SUCCESS_TIMESTAMP, int(time.time()), {},
                METRIC_HELP.get(MetricNames.REPORT_LAST_SUCCESS_TIMESTAMP, "")
            )
        self.plugin.log(
            f"Report {key} ({trigger}): revenue={routing.forward_fee_revenue_msat}msat "
            f"cost={routing.rebalance_fee_cost_msat}msat net={routing.net_routing_profit_msat}msat "
            f"forwards={routing.forward_count} rebalances={routing.rebalance_count} "
            f"in {time.time() - started:.2f}s"
        )
        return DailyReport.from_row(row)

    def _count(self, name: str, trigger: str):
        if self.metrics:
            self.metrics.inc_counter(name, 1, {"trigger": trigger}, METRIC_HELP.get(name, ""))

    def is_running(self, report_date) -> bool:
        with self._inflight_lock:
            return parse_date(report_date).isoformat() in self._inflight
