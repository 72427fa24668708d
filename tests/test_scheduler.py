"""
Tests for DailyScheduler.
"""

import pytest
from datetime import date
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

from routing_ledger.aggregator import AggregationError
from routing_ledger.scheduler import DailyScheduler

from conftest import utc_ts


@pytest.fixture
def mock_aggregator():
    aggregator = MagicMock()
    aggregator.tz = ZoneInfo("UTC")
    return aggregator


@pytest.fixture
def mock_database():
    db = MagicMock()
    db.get_daily_report.return_value = None
    return db


@pytest.fixture
def scheduler(mock_aggregator, mock_database, config, mock_plugin, shutdown_event):
    return DailyScheduler(mock_aggregator, mock_database, config, mock_plugin, shutdown_event,
                          clock=lambda: utc_ts(2024, 3, 5, 0, 5))


class TestTiming:

    def test_yesterday(self, scheduler):
        assert scheduler.yesterday() == date(2024, 3, 4)

    def test_before_todays_run(self, scheduler):
        assert scheduler.seconds_until_next_run(utc_ts(2024, 3, 5, 0, 5)) == 300

    def test_after_todays_run(self, scheduler):
        assert scheduler.seconds_until_next_run(utc_ts(2024, 3, 5, 0, 20)) == 86400 - 600

    def test_local_zone_midnight(self, mock_aggregator, mock_database, config, mock_plugin, shutdown_event):
        mock_aggregator.tz = ZoneInfo("Europe/Berlin")
        scheduler = DailyScheduler(mock_aggregator, mock_database, config, mock_plugin, shutdown_event)
        # 22:00 UTC on 2024-01-10 is 23:00 in Berlin; the run is at 00:10 local
        assert scheduler.seconds_until_next_run(utc_ts(2024, 1, 10, 22)) == 70 * 60


class TestTick:

    def test_tick_runs_yesterday(self, scheduler, mock_aggregator):
        assert scheduler.tick() is True
        mock_aggregator.run_daily.assert_called_once_with(date(2024, 3, 4), trigger="scheduled")
        assert scheduler.status()["last_run_date"] == "2024-03-04"

    def test_tick_failure_is_logged_not_raised(self, scheduler, mock_aggregator, mock_plugin):
        mock_aggregator.run_daily.side_effect = AggregationError("2024-03-04", "balance snapshot unavailable")

        assert scheduler.tick() is False
        assert "balance snapshot unavailable" in scheduler.last_error
        assert mock_plugin.log.call_args[1]["level"] == "error"


class TestCatchUp:

    def test_missing_report_is_computed(self, scheduler, mock_aggregator, mock_database):
        assert scheduler.catch_up() is True
        mock_database.get_daily_report.assert_called_once_with("2024-03-04")
        mock_aggregator.run_daily.assert_called_once()

    def test_existing_report_is_left_alone(self, scheduler, mock_aggregator, mock_database):
        mock_database.get_daily_report.return_value = {"report_date": "2024-03-04"}
        assert scheduler.catch_up() is False
        mock_aggregator.run_daily.assert_not_called()
