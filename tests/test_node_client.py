"""
Tests for NodeEventClient.

Tests:
- Paged streams resume after their cursor and restart after errors
- Channel and on-chain snapshot streams
- Balance snapshot retries
- Self-payment detection for rebalance invoices
"""

import json

import pytest
from unittest.mock import MagicMock

from routing_ledger.events import EventCategory
from routing_ledger.metrics import MetricNames
from routing_ledger.node_client import Backoff, NodeEventClient, NodeUnavailableError

from conftest import OWN_NODE_ID, PEER_NODE_ID


@pytest.fixture
def client(mock_rpc, config, mock_plugin, shutdown_event):
    return NodeEventClient(mock_rpc, config, mock_plugin, shutdown_event)


class TestBackoff:

    def test_doubles_and_caps(self):
        backoff = Backoff(initial=1.0, maximum=5.0, rand=lambda a, b: 0.0)
        assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounds(self):
        assert Backoff(initial=10.0, rand=lambda a, b: b).next_delay() == pytest.approx(12.0)
        assert Backoff(initial=10.0, rand=lambda a, b: a).next_delay() == pytest.approx(8.0)

    def test_reset(self):
        backoff = Backoff(initial=1.0, rand=lambda a, b: 0.0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 1.0


class TestPagedStreams:

    def test_resumes_after_cursor(self, client, mock_rpc, shutdown_event):
        mock_rpc.call.side_effect = None
        mock_rpc.call.return_value = {"forwards": [
            {"updated_index": 11, "status": "settled"},
            {"updated_index": 12, "status": "failed"},
        ]}

        stream = client.subscribe_forwards(start=10)
        items = [next(stream), next(stream)]

        mock_rpc.call.assert_called_once_with(
            "listforwards", {"index": "updated", "start": 11, "limit": 500}
        )
        assert [i.cursor for i in items] == [11, 12]
        assert items[0].category == EventCategory.FORWARDS

        shutdown_event.set()
        assert list(stream) == []

    def test_full_page_fetches_next_page_immediately(self, client, config, mock_rpc):
        config.stream_page_size = 2
        mock_rpc.call.side_effect = [
            {"invoices": [{"updated_index": 1}, {"updated_index": 2}]},
            {"invoices": [{"updated_index": 3}]},
        ]

        stream = client.subscribe_invoices()
        cursors = [next(stream).cursor for _ in range(3)]

        assert cursors == [1, 2, 3]
        assert mock_rpc.call.call_args_list[1][0] == (
            "listinvoices", {"index": "updated", "start": 3, "limit": 2}
        )

    def test_restarts_after_error(self, config, mock_plugin, shutdown_event):
        rpc = MagicMock()
        rpc.call.side_effect = [
            ConnectionError("socket closed"),
            {"payments": [{"created_index": 4, "status": "complete"}]},
        ]
        metrics = MagicMock()
        client = NodeEventClient(rpc, config, mock_plugin, shutdown_event, metrics)

        item = next(client.subscribe_payments(start=3))

        assert item.cursor == 4
        assert rpc.call.call_count == 2
        assert rpc.call.call_args_list[1][0][1]["start"] == 4
        assert metrics.inc_counter.call_args[0][0] == MetricNames.STREAM_RESTARTS_TOTAL

    def test_shutdown_during_backoff_ends_stream(self, client, mock_rpc, shutdown_event):
        mock_rpc.call.side_effect = ConnectionError("down")
        shutdown_event.set()
        assert list(client.subscribe_forwards()) == []


class TestSnapshotStreams:

    def test_channels_pass_cursor(self, client, mock_rpc, shutdown_event):
        mock_rpc.responses["listpeerchannels"] = {"channels": [{"state": "CHANNELD_NORMAL"}]}
        mock_rpc.responses["listclosedchannels"] = {"closedchannels": [{"funding_txid": "aa"}]}

        stream = client.subscribe_channels()
        first, second = next(stream), next(stream)

        assert (first.source, first.cursor) == ("listpeerchannels", 1)
        assert (second.source, second.cursor) == ("listclosedchannels", 1)

    def test_channels_tolerate_missing_listclosedchannels(self, client, mock_rpc):
        def call(method, payload=None):
            if method == "listclosedchannels":
                raise ValueError("Unknown command")
            return {"channels": [{"state": "CHANNELD_NORMAL"}]}
        mock_rpc.call.side_effect = call

        item = next(client.subscribe_channels())
        assert item.source == "listpeerchannels"

    def test_onchain_filters_and_sorts(self, client, mock_rpc):
        mock_rpc.call.side_effect = None
        mock_rpc.call.return_value = {"events": [
            {"timestamp": 300, "tag": "deposit"},
            {"timestamp": 100, "tag": "deposit"},
            {"timestamp": 200, "tag": "withdrawal"},
        ]}

        stream = client.subscribe_onchain(start=200)
        items = [next(stream), next(stream)]

        assert [i.record["timestamp"] for i in items] == [200, 300]
        assert items[-1].cursor == 300
        mock_rpc.call.assert_called_once_with("bkpr-listaccountevents", {"account": "wallet"})


class TestBalances:

    def test_balances_from_listfunds(self, client, mock_rpc):
        mock_rpc.responses["listfunds"] = {
            "outputs": [
                {"amount_msat": 100_000_000, "status": "confirmed"},
                {"amount_msat": 50_000_000, "status": "unconfirmed"},
                {"amount_msat": 25_000_000, "status": "confirmed", "reserved": True},
            ],
            "channels": [
                {"our_amount_msat": 700_000_000, "state": "CHANNELD_NORMAL"},
                {"our_amount_msat": 300_000_000, "state": "ONCHAIN"},
            ],
        }

        balances = client.get_balances()

        assert balances.onchain_msat == 100_000_000
        assert balances.lightning_msat == 700_000_000
        assert balances.total_msat == 800_000_000

    def test_balances_raise_after_attempts(self, client, mock_rpc):
        mock_rpc.call.side_effect = ConnectionError("down")

        with pytest.raises(NodeUnavailableError) as exc_info:
            client.get_balances(attempts=2)

        assert exc_info.value.attempts == 2
        assert mock_rpc.call.call_count == 2

    def test_balances_recover_on_retry(self, client, mock_rpc):
        mock_rpc.call.side_effect = [ConnectionError("down"), {"outputs": [], "channels": []}]
        assert client.get_balances(attempts=3).total_msat == 0


class TestUnary:

    def test_node_id_is_cached(self, client, mock_rpc):
        assert client.get_node_id() == OWN_NODE_ID
        assert client.get_node_id() == OWN_NODE_ID
        assert [c[0][0] for c in mock_rpc.call.call_args_list] == ["getinfo"]

    def test_export_channel_backup(self, client, mock_rpc):
        mock_rpc.responses["staticbackup"] = {"scb": ["0000000000000001abcd"]}
        assert json.loads(client.export_channel_backup()) == {"scb": ["0000000000000001abcd"]}

    def test_empty_backup_rejected(self, client):
        with pytest.raises(ValueError):
            client.export_channel_backup()

    def test_self_payment_detected_by_destination(self, client, mock_rpc):
        mock_rpc.responses["listsendpays"] = {"payments": [
            {"payment_hash": "ab" * 32, "destination": OWN_NODE_ID, "status": "pending"},
        ]}
        assert client.is_self_payment("ab" * 32) is True
        assert mock_rpc.call.call_args[0] == ("listsendpays", {"payment_hash": "ab" * 32})

    def test_payment_to_peer_or_failed_is_not_self_payment(self, client, mock_rpc):
        mock_rpc.responses["listsendpays"] = {"payments": [
            {"payment_hash": "ab" * 32, "destination": PEER_NODE_ID, "status": "complete"},
            {"payment_hash": "ab" * 32, "destination": OWN_NODE_ID, "status": "failed"},
        ]}
        assert client.is_self_payment("ab" * 32) is False

    def test_unknown_hash_is_not_self_payment(self, client, mock_rpc):
        mock_rpc.responses["listsendpays"] = {"payments": []}
        assert client.is_self_payment("cd" * 32) is False
