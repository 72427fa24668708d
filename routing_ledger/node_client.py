"""
Node Event Client module for cl-routing-ledger

Thin adapter over lightningd's RPC interface:
- One restartable, unbounded generator per event category
- Balance snapshot (on-chain + Lightning) with bounded retries
- Node id lookup and static channel backup export

Core Lightning has no push subscription for most of these streams, so each
category is followed by paging its list* command with index="updated" and
remembering the highest index seen. A poll that fails for any reason ends
the current attempt; the generator waits out a capped exponential backoff
with jitter and starts again from its cursor, indefinitely, until the
shutdown event is set.
"""

import json
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

from .events import EventCategory, OPEN_CHANNEL_STATES, parse_msat
from .metrics import MetricNames, METRIC_HELP


class NodeUnavailableError(Exception):
    """The daemon could not be reached within the attempt budget."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")


class Backoff:
    """
    Capped exponential backoff with +/- 20% jitter.

    Each stream owns its own instance; a successful poll resets it.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 300.0, jitter: float = 0.2,
                 rand=random.uniform):
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self._rand = rand
        self.attempt = 0

    def next_delay(self) -> float:
        base = min(self.maximum, self.initial * (2 ** self.attempt))
        self.attempt += 1
        return max(0.0, base * (1 + self._rand(-self.jitter, self.jitter)))

    def reset(self):
        self.attempt = 0


@dataclass(frozen=True)
class StreamItem:
    """One daemon record plus the cursor value to persist once it is recorded."""
    category: EventCategory
    record: Dict[str, Any]
    cursor: int
    source: str = ""


@dataclass(frozen=True)
class BalanceSnapshot:
    onchain_msat: int
    lightning_msat: int

    @property
    def total_msat(self) -> int:
        return self.onchain_msat + self.lightning_msat


# (category, list command, result key)
PAGED_STREAMS = {
    EventCategory.FORWARDS: ("listforwards", "forwards"),
    EventCategory.INVOICES: ("listinvoices", "invoices"),
    EventCategory.PAYMENTS: ("listsendpays", "payments"),
}


class NodeEventClient:
    """
    Stateless (besides the cached node id) adapter around the daemon RPC.

    Args:
        rpc: ResilientRpc (or anything with call(method, payload))
        config: Config, read through snapshot() on every attempt
        plugin: pyln Plugin for logging
        shutdown_event: threading.Event that ends every generator
        metrics: Optional PrometheusExporter
    """

    def __init__(self, rpc, config, plugin, shutdown_event: threading.Event, metrics=None):
        self.rpc = rpc
        self.config = config
        self.plugin = plugin
        self.shutdown_event = shutdown_event
        self.metrics = metrics
        self._node_id: Optional[str] = None
        self._node_id_lock = threading.Lock()
        self._log_history: Dict[Tuple[str, str], float] = {}

    def _new_backoff(self) -> Backoff:
        cfg = self.config.snapshot()
        return Backoff(cfg.backoff_initial_seconds, cfg.backoff_max_seconds)

    def _should_log(self, category: str, msg_type: str, cooldown: int = 300) -> bool:
        """Rate-limit repeated stream error logs."""
        now = time.time()
        key = (category, msg_type)
        if now - self._log_history.get(key, 0) > cooldown:
            self._log_history[key] = now
            return True
        return False

    def _stream_failed(self, category: EventCategory, error: BaseException, delay: float):
        if self.metrics:
            self.metrics.inc_counter(
                MetricNames.STREAM_RESTARTS_TOTAL, 1, {"category": category.value},
                METRIC_HELP.get(MetricNames.STREAM_RESTARTS_TOTAL, "")
            )
        level = 'warn' if self._should_log(category.value, "restart") else 'debug'
        self.plugin.log(
            f"{category.value} stream interrupted: {error}. Restarting in {delay:.1f}s",
            level=level
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def _paged_stream(self, category: EventCategory, start: Optional[int]) -> Iterator[StreamItem]:
        method, result_key = PAGED_STREAMS[category]
        cursor = int(start or 0)
        backoff = self._new_backoff()

        while not self.shutdown_event.is_set():
            cfg = self.config.snapshot()
            try:
                result = self.rpc.call(method, {
                    "index": "updated",
                    "start": cursor + 1,
                    "limit": cfg.stream_page_size,
                })
                records = result.get(result_key, [])
            except Exception as e:
                delay = backoff.next_delay()
                self._stream_failed(category, e, delay)
                if self.shutdown_event.wait(delay):
                    return
                continue

            backoff.reset()
            for record in records:
                index = record.get("updated_index") or record.get("created_index")
                if index is not None:
                    cursor = max(cursor, int(index))
                yield StreamItem(category, record, cursor, method)

            if len(records) >= cfg.stream_page_size:
                continue
            if self.shutdown_event.wait(cfg.stream_poll_interval):
                return

    def subscribe_forwards(self, start: Optional[int] = None) -> Iterator[StreamItem]:
        """Forwarding events from listforwards, resuming after updated_index `start`."""
        return self._paged_stream(EventCategory.FORWARDS, start)

    def subscribe_invoices(self, start: Optional[int] = None) -> Iterator[StreamItem]:
        """Invoice updates from listinvoices."""
        return self._paged_stream(EventCategory.INVOICES, start)

    def subscribe_payments(self, start: Optional[int] = None) -> Iterator[StreamItem]:
        """Sent payment parts from listsendpays."""
        return self._paged_stream(EventCategory.PAYMENTS, start)

    def subscribe_channels(self, start: Optional[int] = None) -> Iterator[StreamItem]:
        """
        Channel lifecycle snapshots.

        Every pass yields each current channel (listpeerchannels) and each
        closed channel (listclosedchannels); the cursor is the pass number,
        starting at 1 for every new generator.
        """
        category = EventCategory.CHANNELS
        backoff = self._new_backoff()
        passes = 0

        while not self.shutdown_event.is_set():
            cfg = self.config.snapshot()
            try:
                channels = self.rpc.call("listpeerchannels", {}).get("channels", [])
            except Exception as e:
                delay = backoff.next_delay()
                self._stream_failed(category, e, delay)
                if self.shutdown_event.wait(delay):
                    return
                continue

            try:
                closed = self.rpc.call("listclosedchannels", {}).get("closedchannels", [])
            except Exception as e:
                # Older daemons lack listclosedchannels; closing states still show in listpeerchannels
                if self._should_log(category.value, "closedchannels"):
                    self.plugin.log(f"listclosedchannels unavailable: {e}", level='debug')
                closed = []

            backoff.reset()
            passes += 1
            for record in channels:
                yield StreamItem(category, record, passes, "listpeerchannels")
            for record in closed:
                yield StreamItem(category, record, passes, "listclosedchannels")

            if self.shutdown_event.wait(cfg.stream_poll_interval):
                return

    def subscribe_onchain(self, start: Optional[int] = None) -> Iterator[StreamItem]:
        """
        Wallet deposits/withdrawals from the bookkeeper's wallet account.

        The cursor is the latest event timestamp seen; events in that same
        second are yielded again on the next poll and deduplicated downstream.
        """
        category = EventCategory.ONCHAIN
        cursor = int(start or 0)
        backoff = self._new_backoff()

        while not self.shutdown_event.is_set():
            cfg = self.config.snapshot()
            try:
                events = self.rpc.call("bkpr-listaccountevents", {"account": "wallet"}).get("events", [])
            except Exception as e:
                delay = backoff.next_delay()
                self._stream_failed(category, e, delay)
                if self.shutdown_event.wait(delay):
                    return
                continue

            backoff.reset()
            fresh = [e for e in events if int(e.get("timestamp") or 0) >= cursor]
            fresh.sort(key=lambda e: int(e.get("timestamp") or 0))
            for record in fresh:
                cursor = max(cursor, int(record.get("timestamp") or 0))
                yield StreamItem(category, record, cursor, "bkpr-listaccountevents")

            if self.shutdown_event.wait(cfg.stream_poll_interval):
                return

    def subscribe(self, category: EventCategory, start: Optional[int] = None) -> Iterator[StreamItem]:
        """Dispatch to the subscription for category."""
        return {
            EventCategory.FORWARDS: self.subscribe_forwards,
            EventCategory.INVOICES: self.subscribe_invoices,
            EventCategory.PAYMENTS: self.subscribe_payments,
            EventCategory.CHANNELS: self.subscribe_channels,
            EventCategory.ONCHAIN: self.subscribe_onchain,
        }[category](start)

    # =========================================================================
    # Unary operations
    # =========================================================================

    def get_balances(self, attempts: Optional[int] = None) -> BalanceSnapshot:
        """
        Current on-chain (confirmed, unreserved outputs) and Lightning
        (our side of normal channels) balances.

        Raises:
            NodeUnavailableError: every attempt failed
        """
        cfg = self.config.snapshot()
        attempts = attempts or cfg.balance_attempts
        backoff = self._new_backoff()
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                funds = self.rpc.call("listfunds", {})
                return self._balances_from_funds(funds)
            except Exception as e:
                last_error = e
                self.plugin.log(
                    f"Balance snapshot attempt {attempt}/{attempts} failed: {e}",
                    level='warn'
                )
                if attempt < attempts and self.shutdown_event.wait(backoff.next_delay()):
                    break

        raise NodeUnavailableError("listfunds", attempts, last_error)

    @staticmethod
    def _balances_from_funds(funds: Dict[str, Any]) -> BalanceSnapshot:
        onchain_msat = 0
        for output in funds.get("outputs", []):
            if output.get("status") != "confirmed" or output.get("reserved"):
                continue
            onchain_msat += parse_msat(output.get("amount_msat"))

        lightning_msat = 0
        for channel in funds.get("channels", []):
            if channel.get("state") not in OPEN_CHANNEL_STATES:
                continue
            lightning_msat += parse_msat(channel.get("our_amount_msat"))

        return BalanceSnapshot(onchain_msat=onchain_msat, lightning_msat=lightning_msat)

    def get_node_id(self) -> str:
        """Our node id (cached after the first successful getinfo)."""
        with self._node_id_lock:
            if self._node_id is None:
                self._node_id = self.rpc.call("getinfo", {})["id"]
            return self._node_id

    def is_self_payment(self, payment_hash: str) -> bool:
        """
        True if we paid this hash to ourselves, i.e. the invoice that
        settled it is the receiving leg of a circular rebalance.
        """
        own_id = self.get_node_id()
        result = self.rpc.call("listsendpays", {"payment_hash": payment_hash})
        return any(
            part.get("destination") == own_id and part.get("status") in ("pending", "complete")
            for part in result.get("payments", [])
        )

    def export_channel_backup(self) -> bytes:
        """
        Full static channel backup as a JSON document.

        The document holds the `scb` list exactly as staticbackup returns
        it, which is what recoverchannel accepts.
        """
        result = self.rpc.call("staticbackup", {})
        scb = result.get("scb")
        if not scb:
            raise ValueError("staticbackup returned no channel backups")
        return json.dumps({"scb": scb}, indent=2).encode("utf-8")
