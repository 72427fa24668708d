"""
Tests for daemon record conversion.

Tests:
- Only final facts are recorded (settled forwards, paid invoices, ...)
- Dedup keys depend on daemon identifiers only
- Rebalance classification for self-payments
"""

from routing_ledger.events import (
    EventKind,
    RecordedEvent,
    channel_events_from_record,
    forward_from_record,
    invoice_from_record,
    onchain_from_record,
    parse_msat,
    payment_from_record,
)

from conftest import OWN_NODE_ID, PEER_NODE_ID


class TestParseMsat:

    def test_formats(self):
        assert parse_msat(1500) == 1500
        assert parse_msat("1500msat") == 1500
        assert parse_msat("1500") == 1500
        assert parse_msat(None) == 0
        assert parse_msat("garbage") == 0

    def test_millisatoshi_like_object(self):
        class Msat:
            millisatoshis = 2500
        assert parse_msat(Msat()) == 2500


class TestForwards:

    def test_settled_forward(self, settled_forward):
        event = forward_from_record(settled_forward)
        assert event.kind == EventKind.FORWARD
        assert event.dedup_key == "forward:800000x1x0:42"
        assert event.fee_msat == 250_000
        assert event.amount_msat == 100_000_000
        assert event.occurred_at == 1704067201

    def test_redelivery_maps_to_same_key(self, settled_forward):
        """A later update of the same HTLC keeps its dedup key."""
        again = dict(settled_forward, updated_index=50)
        assert forward_from_record(again).dedup_key == forward_from_record(settled_forward).dedup_key
        assert forward_from_record(again) == forward_from_record(settled_forward)

    def test_failed_and_offered_forwards_skipped(self, settled_forward):
        for status in ("failed", "local_failed", "offered"):
            assert forward_from_record(dict(settled_forward, status=status)) is None

    def test_fee_derived_when_missing(self, settled_forward):
        record = dict(settled_forward)
        del record["fee_msat"]
        assert forward_from_record(record).fee_msat == 250_000

    def test_falls_back_to_created_index(self, settled_forward):
        record = dict(settled_forward)
        del record["in_htlc_id"]
        assert forward_from_record(record).dedup_key == "forward:created:7"

    def test_received_time_used_when_unresolved(self, settled_forward):
        record = dict(settled_forward)
        del record["resolved_time"]
        assert forward_from_record(record).occurred_at == 1704067200


class TestInvoices:

    def test_paid_invoice(self):
        event = invoice_from_record({
            "label": "coffee",
            "payment_hash": "ab" * 32,
            "status": "paid",
            "amount_msat": 10_000,
            "amount_received_msat": 10_100,
            "paid_at": 1704070000,
        })
        assert event.kind == EventKind.INVOICE_SETTLED
        assert event.dedup_key == "invoice:" + "ab" * 32
        assert event.amount_msat == 10_100

    def test_unpaid_invoice_skipped(self):
        assert invoice_from_record({"payment_hash": "ab" * 32, "status": "unpaid"}) is None
        assert invoice_from_record({"payment_hash": "ab" * 32, "status": "expired"}) is None


class TestPayments:

    def _payment(self, destination, status="complete"):
        return {
            "payment_hash": "cd" * 32,
            "groupid": 1,
            "partid": 2,
            "status": status,
            "destination": destination,
            "amount_msat": 500_000_000,
            "amount_sent_msat": 500_400_000,
            "created_at": 1704070000,
            "completed_at": 1704070005,
        }

    def test_self_payment_is_rebalance(self):
        event = payment_from_record(self._payment(OWN_NODE_ID), OWN_NODE_ID)
        assert event.kind == EventKind.REBALANCE
        assert event.fee_msat == 400_000
        assert event.dedup_key == f"payment:{'cd' * 32}:1:2"
        assert event.occurred_at == 1704070005

    def test_external_payment(self):
        event = payment_from_record(self._payment(PEER_NODE_ID), OWN_NODE_ID)
        assert event.kind == EventKind.PAYMENT_SENT

    def test_unknown_own_id_never_classifies_rebalance(self):
        event = payment_from_record(self._payment(OWN_NODE_ID), None)
        assert event.kind == EventKind.PAYMENT_SENT

    def test_pending_and_failed_skipped(self):
        assert payment_from_record(self._payment(OWN_NODE_ID, "pending"), OWN_NODE_ID) is None
        assert payment_from_record(self._payment(OWN_NODE_ID, "failed"), OWN_NODE_ID) is None


class TestChannels:

    def _channel(self, state, **extra):
        record = {
            "peer_id": PEER_NODE_ID,
            "state": state,
            "funding_txid": "ef" * 32,
            "funding_outnum": 1,
            "short_channel_id": "800000x5x1",
            "total_msat": 2_000_000_000,
            "opener": "local",
        }
        record.update(extra)
        return record

    def test_open_channel(self):
        events = channel_events_from_record(self._channel(
            "CHANNELD_NORMAL",
            state_changes=[
                {"timestamp": "2024-01-01T00:00:00.000Z", "old_state": "CHANNELD_AWAITING_LOCKIN",
                 "new_state": "CHANNELD_NORMAL"},
            ],
        ))
        assert len(events) == 1
        event = events[0]
        assert event.kind == EventKind.CHANNEL_OPENED
        assert event.dedup_key == f"channel:open:{'ef' * 32}:1"
        assert event.channel_point == f"{'ef' * 32}:1"
        assert event.occurred_at == 1704067200

    def test_pending_channel(self):
        events = channel_events_from_record(self._channel("CHANNELD_AWAITING_LOCKIN"), now=1704067200)
        assert events[0].kind == EventKind.CHANNEL_PENDING
        assert events[0].dedup_key.startswith("channel:opening:")
        assert events[0].occurred_at == 1704067200

    def test_closed_channel_record(self):
        record = self._channel("ONCHAIN", final_to_us_msat=1_500_000_000, close_cause="remote")
        events = channel_events_from_record(record, closed=True, now=1704067200)
        assert events[0].kind == EventKind.CHANNEL_CLOSED
        assert events[0].dedup_key == f"channel:close:{'ef' * 32}:1"
        assert events[0].amount_msat == 1_500_000_000

    def test_funding_outnum_from_nested_funding(self):
        record = self._channel("CHANNELD_NORMAL")
        del record["funding_outnum"]
        record["funding"] = {"outnum": 3}
        assert channel_events_from_record(record)[0].channel_point == f"{'ef' * 32}:3"

    def test_missing_funding_skipped(self):
        assert channel_events_from_record({"state": "CHANNELD_NORMAL"}) == []


class TestOnchain:

    def test_deposit(self):
        event = onchain_from_record({
            "account": "wallet", "type": "chain", "tag": "deposit",
            "credit_msat": 300_000_000, "debit_msat": 0,
            "outpoint": "aa" * 32 + ":0", "timestamp": 1704067300, "blockheight": 820000,
        })
        assert event.kind == EventKind.ONCHAIN_RECEIVE
        assert event.dedup_key == "onchain:receive:" + "aa" * 32 + ":0"
        assert event.amount_msat == 300_000_000

    def test_withdrawal(self):
        event = onchain_from_record({
            "account": "wallet", "type": "chain", "tag": "withdrawal",
            "credit_msat": 0, "debit_msat": 200_000_000,
            "outpoint": "bb" * 32 + ":1", "timestamp": 1704067300,
        })
        assert event.kind == EventKind.ONCHAIN_SEND
        assert event.amount_msat == 200_000_000

    def test_non_chain_and_other_tags_skipped(self):
        assert onchain_from_record({"type": "channel", "tag": "invoice", "timestamp": 1}) is None
        assert onchain_from_record({"type": "chain", "tag": "lease_fee",
                                    "outpoint": "cc" * 32 + ":0", "timestamp": 1704067300}) is None


class TestRecordedEvent:

    def test_sats_are_floored(self):
        event = RecordedEvent(EventKind.FORWARD, "forward:x:1", 1704067200, amount_msat=1999, fee_msat=999)
        assert event.amount_sats == 1
        assert event.fee_sats == 0
