"""
Tests for LiveReportCache.
"""

import pytest
from unittest.mock import MagicMock

from routing_ledger.aggregator import ReportAggregator
from routing_ledger.events import EventKind, RecordedEvent
from routing_ledger.live import LiveReportCache
from routing_ledger.metrics import MetricNames
from routing_ledger.node_client import NodeUnavailableError

from conftest import utc_ts


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock(utc_ts(2024, 6, 1, 12))


@pytest.fixture
def aggregator(database, mock_node_client, config, mock_plugin):
    return ReportAggregator(database, mock_node_client, config, mock_plugin)


@pytest.fixture
def cache(aggregator, mock_node_client, config, mock_plugin, clock):
    return LiveReportCache(aggregator, mock_node_client, config, mock_plugin, clock=clock)


class TestLiveProjection:

    def test_window_is_today_so_far(self, cache, clock):
        report = cache.get()
        assert report.window_start == utc_ts(2024, 6, 1)
        assert report.window_end == clock.now
        assert report.report_date.isoformat() == "2024-06-01"

    def test_counts_todays_events_only(self, cache, database, clock):
        database.insert_event(RecordedEvent(EventKind.FORWARD, "forward:a:1", clock.now - 60, 1_000, 30_000))
        database.insert_event(RecordedEvent(EventKind.FORWARD, "forward:a:2", utc_ts(2024, 5, 31, 23), 1_000, 50_000))
        database.insert_event(RecordedEvent(EventKind.REBALANCE, "payment:b:0:0", clock.now - 30, 1_000, 10_000))

        out = cache.get().to_dict()

        assert out["forward_fee_revenue_msat"] == 30_000
        assert out["net_routing_profit_msat"] == 20_000
        assert out["net_routing_profit_sat"] == 20
        assert out["live"] is True

    def test_lookback_window(self, cache, clock):
        report = cache.get(lookback_hours=2)
        assert report.window_end - report.window_start == 7200
        assert report.lookback_hours == 2

    def test_balances_are_best_effort(self, cache, mock_node_client):
        mock_node_client.get_balances.side_effect = NodeUnavailableError("listfunds", 1)

        report = cache.get()

        assert report.onchain_balance_msat is None
        assert report.total_balance_msat is None
        assert "listfunds" in report.balance_error
        mock_node_client.get_balances.assert_called_once_with(attempts=1)


class TestLiveCaching:

    def test_second_call_within_ttl_is_cached(self, cache, clock, mock_node_client):
        first = cache.get()
        clock.now += 10
        second = cache.get()

        assert second is first
        assert mock_node_client.get_balances.call_count == 1

    def test_expires_after_ttl(self, cache, clock, mock_node_client):
        first = cache.get()
        clock.now += 60
        second = cache.get()

        assert second is not first
        assert mock_node_client.get_balances.call_count == 2

    def test_new_local_day_recomputes(self, cache, clock, mock_node_client):
        clock.now = utc_ts(2024, 6, 1, 23, 59, 50)
        first = cache.get()
        clock.now += 15
        second = cache.get()

        assert second.report_date.isoformat() == "2024-06-02"
        assert second is not first

    def test_lookback_is_part_of_cache_key(self, cache, mock_node_client):
        cache.get()
        cache.get(lookback_hours=3)
        assert mock_node_client.get_balances.call_count == 2

    def test_invalidate(self, cache, mock_node_client):
        cache.get()
        cache.invalidate()
        cache.get()
        assert mock_node_client.get_balances.call_count == 2

    def test_cache_hit_metric(self, aggregator, mock_node_client, config, mock_plugin, clock):
        metrics = MagicMock()
        cache = LiveReportCache(aggregator, mock_node_client, config, mock_plugin, metrics, clock=clock)
        cache.get()
        cache.get()
        assert metrics.inc_counter.call_args[0][0] == MetricNames.LIVE_CACHE_HITS_TOTAL
