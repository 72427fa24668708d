"""
Tests for ReportQueryService.

Tests:
- Range tags and custom windows
- Validation before any store access
- Summary totals, averages and latest balances
- Live projection attached when the window includes today
"""

import pytest
from datetime import date, timedelta
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

from routing_ledger.periods import RangeValidationError
from routing_ledger.query import ReportQueryService

from conftest import utc_ts


NOW = utc_ts(2024, 6, 1, 12)


def _values(revenue, cost, balance):
    return {
        'forward_fee_revenue_msat': revenue,
        'rebalance_fee_cost_msat': cost,
        'net_routing_profit_msat': revenue - cost,
        'forward_count': 2,
        'rebalance_count': 1,
        'routed_volume_msat': 10_000_000,
        'onchain_balance_msat': balance,
        'lightning_balance_msat': balance,
        'total_balance_msat': 2 * balance,
    }


@pytest.fixture
def live_cache():
    cache = MagicMock()
    cache.get.return_value.to_dict.return_value = {"live": True}
    return cache


@pytest.fixture
def service(database, live_cache, config):
    database.upsert_daily_report("2024-05-01", _values(500_000, 0, 1_000))
    database.upsert_daily_report("2024-05-30", _values(1_000_000, 400_000, 2_000))
    database.upsert_daily_report("2024-05-31", _values(2_000_001, 0, 3_000))
    database.upsert_daily_report("2023-01-01", _values(9_000, 0, 4_000))
    return ReportQueryService(database, live_cache, config, tz=ZoneInfo("UTC"), clock=lambda: NOW)


class TestRangeQueries:

    def test_default_is_yesterday(self, service, live_cache):
        series = service.query_range()

        assert series.range_key == "d-1"
        assert [r.report_date for r in series.reports] == [date(2024, 5, 31)]
        assert series.live is None
        live_cache.get.assert_not_called()

    def test_month(self, service):
        out = service.query_range("month").to_dict()

        assert out["window"] == {"from": "2024-05-02", "to": "2024-05-31"}
        assert [r["report_date"] for r in out["series"]] == ["2024-05-30", "2024-05-31"]
        assert out["series"][0]["net_routing_profit_sat"] == 600

    def test_all_includes_everything_and_live(self, service, live_cache):
        series = service.query_range("all")

        assert len(series.reports) == 4
        assert series.reports[0].report_date == date(2023, 1, 1)
        assert series.live is live_cache.get.return_value

    def test_custom_range_including_today_has_live(self, service, live_cache):
        series = service.query_range(start="2024-05-31", end="2024-06-01")

        assert series.range_key == "custom"
        assert len(series.reports) == 1
        assert series.to_dict()["live"] == {"live": True}

    def test_range_live_view_ignores_lookback_setting(self, service, live_cache, config):
        """A range that ends today shows today so far, not a trailing lookback window."""
        config.live_lookback_hours = 6

        service.query_range("all")

        live_cache.get.assert_called_once_with(0)


class TestValidation:

    def test_too_long_range_never_touches_store(self, live_cache, config):
        database = MagicMock()
        service = ReportQueryService(database, live_cache, config, tz=ZoneInfo("UTC"), clock=lambda: NOW)
        start = date(2022, 1, 1)

        with pytest.raises(RangeValidationError):
            service.query_range(start=start.isoformat(), end=(start + timedelta(days=730)).isoformat())

        database.get_daily_reports.assert_not_called()

    def test_custom_range_needs_both_ends(self, service):
        with pytest.raises(RangeValidationError):
            service.query_range(start="2024-05-01")

    def test_inverted_range(self, service):
        with pytest.raises(RangeValidationError):
            service.query_summary(start="2024-05-31", end="2024-05-01")

    def test_unknown_tag(self, service):
        with pytest.raises(RangeValidationError):
            service.query_range("quarter")

    def test_runtime_max_range_days(self, service, config):
        config.max_range_days = 7
        with pytest.raises(RangeValidationError):
            service.query_range(start="2024-05-01", end="2024-05-08")


class TestSummary:

    def test_totals_and_averages(self, service):
        summary = service.query_summary("month")

        assert summary.days == 2
        assert summary.totals["forward_fee_revenue_msat"] == 3_000_001
        assert summary.totals["rebalance_fee_cost_msat"] == 400_000
        assert summary.totals["net_routing_profit_msat"] == 2_600_001
        assert summary.averages["net_routing_profit_msat"] == 1_300_000
        assert summary.latest_balances["report_date"] == "2024-05-31"
        assert summary.latest_balances["total_balance_msat"] == 6_000

    def test_summary_dict_has_sats(self, service):
        out = service.query_summary("month").to_dict()
        assert out["totals"]["net_routing_profit_sat"] == 2_600
        assert out["latest_balances"]["total_balance_sat"] == 6

    def test_empty_window(self, service):
        summary = service.query_summary(start="2024-04-01", end="2024-04-30")

        assert summary.days == 0
        assert summary.averages["forward_count"] == 0
        assert summary.latest_balances is None


class TestLive:

    def test_live_delegates_to_cache(self, service, live_cache):
        assert service.query_live(3) is live_cache.get.return_value
        live_cache.get.assert_called_once_with(3)

    def test_negative_lookback_rejected(self, service):
        with pytest.raises(RangeValidationError):
            service.query_live(-1)
