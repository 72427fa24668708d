"""
Event model for cl-routing-ledger

Defines the recorded event kinds and converts Core Lightning records
(listforwards, listinvoices, listsendpays, listpeerchannels,
listclosedchannels, bkpr-listaccountevents) into RecordedEvent values.

Each converter returns None for records that do not describe a final,
countable fact (failed forwards, unpaid invoices, pending payments, ...).
The dedup_key is derived only from daemon identifiers, so the same
underlying fact always maps to the same key no matter how often it is
redelivered.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class EventKind(str, Enum):
    """Kinds of recorded events."""
    ONCHAIN_RECEIVE = "onchain_receive"
    ONCHAIN_SEND = "onchain_send"
    INVOICE_SETTLED = "invoice_settled"
    PAYMENT_SENT = "payment_sent"
    CHANNEL_OPENED = "channel_opened"
    CHANNEL_CLOSED = "channel_closed"
    CHANNEL_PENDING = "channel_pending"
    FORWARD = "forward"
    REBALANCE = "rebalance"


class EventCategory(str, Enum):
    """Daemon streams, one producer/consumer pair each."""
    FORWARDS = "forwards"
    INVOICES = "invoices"
    PAYMENTS = "payments"
    CHANNELS = "channels"
    ONCHAIN = "onchain"


# Kinds that trigger a channel backup export once newly recorded
BACKUP_TRIGGER_KINDS = frozenset({EventKind.CHANNEL_OPENED, EventKind.CHANNEL_CLOSED})

# listpeerchannels states
PENDING_CHANNEL_STATES = frozenset({
    "OPENINGD",
    "CHANNELD_AWAITING_LOCKIN",
    "DUALOPEND_OPEN_INIT",
    "DUALOPEND_OPEN_COMMITTED",
    "DUALOPEND_OPEN_COMMIT_READY",
    "DUALOPEND_AWAITING_LOCKIN",
})
OPEN_CHANNEL_STATES = frozenset({
    "CHANNELD_NORMAL",
    "CHANNELD_AWAITING_SPLICE",
})
CLOSED_CHANNEL_STATES = frozenset({
    "CLOSINGD_COMPLETE",
    "AWAITING_UNILATERAL",
    "FUNDING_SPEND_SEEN",
    "ONCHAIN",
    "CLOSED",
})


@dataclass(frozen=True)
class RecordedEvent:
    """
    An immutable fact ingested from the node daemon.

    occurred_at is UTC unix seconds; amounts are millisatoshis.
    """
    kind: EventKind
    dedup_key: str
    occurred_at: int
    amount_msat: int = 0
    fee_msat: int = 0
    raw_metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def amount_sats(self) -> int:
        return self.amount_msat // 1000

    @property
    def fee_sats(self) -> int:
        return self.fee_msat // 1000

    @property
    def channel_point(self) -> Optional[str]:
        return self.raw_metadata.get("channel_point")


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        return 0
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, float):
        return int(msat_val)
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


def _timestamp(*candidates: Any) -> Optional[int]:
    """First usable unix timestamp among candidates (floats are truncated)."""
    for value in candidates:
        if value is None:
            continue
        try:
            ts = int(float(value))
        except (TypeError, ValueError):
            continue
        if ts > 0:
            return ts
    return None


def forward_from_record(record: Dict[str, Any]) -> Optional[RecordedEvent]:
    """Convert a listforwards entry; only settled forwards are recorded."""
    if record.get("status") != "settled":
        return None

    in_channel = record.get("in_channel")
    in_htlc_id = record.get("in_htlc_id")
    if in_channel and in_htlc_id is not None:
        dedup_key = f"forward:{in_channel}:{in_htlc_id}"
    elif record.get("created_index") is not None:
        dedup_key = f"forward:created:{record['created_index']}"
    else:
        return None

    in_msat = parse_msat(record.get("in_msat"))
    out_msat = parse_msat(record.get("out_msat"))
    if "fee_msat" in record:
        fee_msat = parse_msat(record.get("fee_msat"))
    else:
        fee_msat = max(0, in_msat - out_msat)

    occurred_at = _timestamp(record.get("resolved_time"), record.get("received_time"))
    if occurred_at is None:
        return None

    return RecordedEvent(
        kind=EventKind.FORWARD,
        dedup_key=dedup_key,
        occurred_at=occurred_at,
        amount_msat=out_msat,
        fee_msat=fee_msat,
        raw_metadata={
            "in_channel": in_channel,
            "out_channel": record.get("out_channel"),
            "in_htlc_id": in_htlc_id,
            "out_htlc_id": record.get("out_htlc_id"),
            "in_msat": in_msat,
            "style": record.get("style"),
        },
    )


def invoice_from_record(record: Dict[str, Any]) -> Optional[RecordedEvent]:
    """Convert a listinvoices entry; only paid invoices are recorded."""
    if record.get("status") != "paid":
        return None
    payment_hash = record.get("payment_hash")
    occurred_at = _timestamp(record.get("paid_at"))
    if not payment_hash or occurred_at is None:
        return None

    return RecordedEvent(
        kind=EventKind.INVOICE_SETTLED,
        dedup_key=f"invoice:{payment_hash}",
        occurred_at=occurred_at,
        amount_msat=parse_msat(record.get("amount_received_msat")),
        fee_msat=0,
        raw_metadata={
            "label": record.get("label"),
            "description": record.get("description"),
            "amount_msat": parse_msat(record.get("amount_msat")),
            "pay_index": record.get("pay_index"),
        },
    )


def payment_from_record(record: Dict[str, Any], own_node_id: Optional[str]) -> Optional[RecordedEvent]:
    """
    Convert a listsendpays entry; only completed parts are recorded.

    A payment whose destination is our own node is a circular rebalance and
    its fee is a rebalancing cost.
    """
    if record.get("status") != "complete":
        return None
    payment_hash = record.get("payment_hash")
    if not payment_hash:
        return None

    occurred_at = _timestamp(record.get("completed_at"), record.get("created_at"))
    if occurred_at is None:
        return None

    amount_msat = parse_msat(record.get("amount_msat"))
    amount_sent_msat = parse_msat(record.get("amount_sent_msat"))
    fee_msat = max(0, amount_sent_msat - amount_msat) if amount_msat else 0

    destination = record.get("destination")
    is_rebalance = bool(own_node_id) and destination == own_node_id
    groupid = record.get("groupid", 0)
    partid = record.get("partid", 0)

    return RecordedEvent(
        kind=EventKind.REBALANCE if is_rebalance else EventKind.PAYMENT_SENT,
        dedup_key=f"payment:{payment_hash}:{groupid}:{partid}",
        occurred_at=occurred_at,
        amount_msat=amount_msat,
        fee_msat=fee_msat,
        raw_metadata={
            "payment_hash": payment_hash,
            "destination": destination,
            "amount_sent_msat": amount_sent_msat,
            "label": record.get("label"),
            "bolt11": record.get("bolt11"),
        },
    )


def _channel_point(record: Dict[str, Any]) -> Optional[str]:
    txid = record.get("funding_txid")
    outnum = record.get("funding_outnum")
    if outnum is None:
        funding = record.get("funding") or {}
        outnum = funding.get("outnum") if isinstance(funding, dict) else None
    if not txid or outnum is None:
        return None
    return f"{txid}:{outnum}"


def _state_change_time(record: Dict[str, Any], states: frozenset) -> Optional[int]:
    """Timestamp of the latest state_changes entry entering one of states."""
    latest = None
    for change in record.get("state_changes") or []:
        if change.get("new_state") not in states:
            continue
        ts = change.get("timestamp")
        try:
            parsed = _parse_iso_timestamp(ts) if isinstance(ts, str) else _timestamp(ts)
        except ValueError:
            parsed = None
        if parsed is not None and (latest is None or parsed > latest):
            latest = parsed
    return latest


def _parse_iso_timestamp(value: str) -> Optional[int]:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return int(datetime.fromisoformat(text).timestamp())


def channel_events_from_record(record: Dict[str, Any], closed: bool = False,
                               now: Optional[int] = None) -> List[RecordedEvent]:
    """
    Convert a listpeerchannels entry (or a listclosedchannels entry when
    closed=True) into channel lifecycle events.

    Only the event for the channel's current phase is produced; earlier
    phases were recorded on previous polls, or are lost if the channel went
    through them between two polls.
    """
    point = _channel_point(record)
    if point is None:
        return []

    observed_at = int(now if now is not None else time.time())
    state = record.get("state", "")
    metadata = {
        "channel_point": point,
        "peer_id": record.get("peer_id"),
        "short_channel_id": record.get("short_channel_id"),
        "state": state if not closed else "CLOSED",
        "opener": record.get("opener"),
    }
    capacity_msat = parse_msat(record.get("total_msat"))

    if closed or state in CLOSED_CHANNEL_STATES:
        metadata["close_cause"] = record.get("close_cause")
        metadata["closer"] = record.get("closer")
        occurred_at = _state_change_time(record, CLOSED_CHANNEL_STATES) or observed_at
        return [RecordedEvent(
            kind=EventKind.CHANNEL_CLOSED,
            dedup_key=f"channel:close:{point}",
            occurred_at=occurred_at,
            amount_msat=parse_msat(record.get("final_to_us_msat")) if closed else capacity_msat,
            raw_metadata=metadata,
        )]

    if state in OPEN_CHANNEL_STATES:
        occurred_at = _state_change_time(record, OPEN_CHANNEL_STATES) or observed_at
        return [RecordedEvent(
            kind=EventKind.CHANNEL_OPENED,
            dedup_key=f"channel:open:{point}",
            occurred_at=occurred_at,
            amount_msat=capacity_msat,
            raw_metadata=metadata,
        )]

    if state in PENDING_CHANNEL_STATES:
        occurred_at = _state_change_time(record, PENDING_CHANNEL_STATES) or observed_at
        return [RecordedEvent(
            kind=EventKind.CHANNEL_PENDING,
            dedup_key=f"channel:opening:{point}",
            occurred_at=occurred_at,
            amount_msat=capacity_msat,
            raw_metadata=metadata,
        )]

    return []


def onchain_from_record(record: Dict[str, Any]) -> Optional[RecordedEvent]:
    """Convert a bookkeeper wallet chain event (deposit/withdrawal)."""
    if record.get("type") != "chain":
        return None
    tag = record.get("tag")
    outpoint = record.get("outpoint") or record.get("txid")
    occurred_at = _timestamp(record.get("timestamp"))
    if not outpoint or occurred_at is None:
        return None

    if tag == "deposit":
        kind, amount_msat, direction = EventKind.ONCHAIN_RECEIVE, parse_msat(record.get("credit_msat")), "receive"
    elif tag == "withdrawal":
        kind, amount_msat, direction = EventKind.ONCHAIN_SEND, parse_msat(record.get("debit_msat")), "send"
    else:
        return None

    return RecordedEvent(
        kind=kind,
        dedup_key=f"onchain:{direction}:{outpoint}",
        occurred_at=occurred_at,
        amount_msat=amount_msat,
        fee_msat=parse_msat(record.get("fees_msat")),
        raw_metadata={
            "account": record.get("account"),
            "txid": record.get("txid"),
            "blockheight": record.get("blockheight"),
        },
    )
