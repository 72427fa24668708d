"""
Event Recorder module for cl-routing-ledger

Turns daemon records into exactly one RecordedEvent row each, no matter how
often a stream restarts or redelivers the same fact.

For every event category a producer thread drains the node client's
generator into a bounded queue and a consumer thread records what arrives.
Categories run independently; the UNIQUE constraint on dedup_key is the
only synchronization between them. A consumer retries a failed write with
backoff before it moves on, and a category's cursor only advances after
its event is stored, so neither a storage hiccup nor a process restart
loses an event.

The invoice that settles one of our own circular payments is the receiving
leg of a rebalance, so it is never kept as income alongside the rebalance.
"""

import queue
import sqlite3
import threading
import time
from typing import Dict, Iterable, List, Optional

from .events import (
    BACKUP_TRIGGER_KINDS,
    EventCategory,
    EventKind,
    RecordedEvent,
    channel_events_from_record,
    forward_from_record,
    invoice_from_record,
    onchain_from_record,
    payment_from_record,
)
from .metrics import MetricNames, METRIC_HELP
from .node_client import Backoff, StreamItem


class RecorderStopped(Exception):
    """Shutdown was requested while an item was still being recorded."""


# Storage errors worth retrying; anything else is a bug and propagates
STORAGE_ERRORS = (sqlite3.Error, OSError)


class EventRecorder:
    """
    Consumes the node client's streams and persists deduplicated events.

    Args:
        database: Database instance (insert_event / cursors)
        node_client: NodeEventClient
        config: Config
        plugin: pyln Plugin for logging
        shutdown_event: threading.Event shared with the node client
        backup_trigger: Optional ChannelBackupTrigger for channel open/close
        metrics: Optional PrometheusExporter
    """

    def __init__(self, database, node_client, config, plugin, shutdown_event: threading.Event,
                 backup_trigger=None, metrics=None,
                 categories: Optional[Iterable[EventCategory]] = None):
        self.database = database
        self.node_client = node_client
        self.config = config
        self.plugin = plugin
        self.shutdown_event = shutdown_event
        self.backup_trigger = backup_trigger
        self.metrics = metrics
        self.categories = list(categories or EventCategory)

        self._threads: List[threading.Thread] = []
        self._channels_primed: Optional[bool] = None
        self._stats_lock = threading.Lock()
        self._stats: Dict[str, Dict[str, int]] = {
            c.value: {"recorded": 0, "duplicates": 0, "skipped": 0, "last_item_at": 0}
            for c in self.categories
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        """Spawn one producer and one consumer thread per category."""
        cfg = self.config.snapshot()
        for category in self.categories:
            q: queue.Queue = queue.Queue(maxsize=cfg.stream_queue_size)
            producer = threading.Thread(
                target=self._produce, args=(category, q),
                daemon=True, name=f"ledger-{category.value}-stream"
            )
            consumer = threading.Thread(
                target=self._consume, args=(category, q),
                daemon=True, name=f"ledger-{category.value}-recorder"
            )
            self._threads.extend([producer, consumer])
            producer.start()
            consumer.start()
        self.plugin.log(f"Event recorder started for {len(self.categories)} categories")

    def stop(self, timeout: float = 5.0):
        """Signal shutdown and wait briefly for the threads to exit."""
        self.shutdown_event.set()
        deadline = time.time() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.time()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            self.plugin.log(f"Recorder threads still running at shutdown: {alive}", level='warn')

    def _produce(self, category: EventCategory, q: queue.Queue):
        start = None
        if category != EventCategory.CHANNELS:
            try:
                start = self._with_retry(lambda: self.database.get_cursor(category.value),
                                         f"read {category.value} cursor")
            except RecorderStopped:
                return
        self.plugin.log(f"Subscribing to {category.value} (cursor={start})", level='debug')

        for item in self.node_client.subscribe(category, start):
            while not self.shutdown_event.is_set():
                try:
                    q.put(item, timeout=1.0)
                    break
                except queue.Full:
                    continue
            if self.shutdown_event.is_set():
                break

    def _consume(self, category: EventCategory, q: queue.Queue):
        while not self.shutdown_event.is_set():
            try:
                item = q.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.handle_item(item)
            except RecorderStopped:
                break
            finally:
                q.task_done()

    # =========================================================================
    # Recording
    # =========================================================================

    def _with_retry(self, operation, description: str):
        """Run a storage operation until it succeeds or shutdown is requested."""
        cfg = self.config.snapshot()
        backoff = Backoff(cfg.backoff_initial_seconds, cfg.backoff_max_seconds)
        while True:
            try:
                return operation()
            except STORAGE_ERRORS as e:
                delay = backoff.next_delay()
                if self.metrics:
                    self.metrics.inc_counter(
                        MetricNames.PERSIST_RETRIES_TOTAL, 1, {},
                        METRIC_HELP.get(MetricNames.PERSIST_RETRIES_TOTAL, "")
                    )
                self.plugin.log(f"Failed to {description}: {e}. Retrying in {delay:.1f}s", level='warn')
                if self.shutdown_event.wait(delay):
                    raise RecorderStopped(description)

    def record(self, event: RecordedEvent) -> bool:
        """
        Insert-if-absent.

        Returns:
            True if the event was new, False if its dedup_key already existed

        Raises:
            RecorderStopped: shutdown arrived while a failing write was being retried
        """
        inserted = self._with_retry(lambda: self.database.insert_event(event),
                                    f"record {event.dedup_key}")
        if self.metrics:
            name = MetricNames.EVENTS_RECORDED_TOTAL if inserted else MetricNames.EVENTS_DUPLICATE_TOTAL
            self.metrics.inc_counter(name, 1, {"kind": event.kind.value}, METRIC_HELP.get(name, ""))
        return inserted

    def _own_node_id(self) -> str:
        cfg = self.config.snapshot()
        backoff = Backoff(cfg.backoff_initial_seconds, cfg.backoff_max_seconds)
        while True:
            try:
                return self.node_client.get_node_id()
            except Exception as e:
                delay = backoff.next_delay()
                self.plugin.log(f"Could not fetch node id: {e}. Retrying in {delay:.1f}s", level='warn')
                if self.shutdown_event.wait(delay):
                    raise RecorderStopped("getinfo")

    def convert(self, item: StreamItem) -> List[RecordedEvent]:
        """Map a daemon record to zero or more events."""
        category = item.category
        if category == EventCategory.FORWARDS:
            event = forward_from_record(item.record)
        elif category == EventCategory.INVOICES:
            event = invoice_from_record(item.record)
            if event and self._is_rebalance_invoice(item.record["payment_hash"]):
                self.plugin.log(f"Skipping {event.dedup_key}: receiving leg of a rebalance", level='debug')
                return []
        elif category == EventCategory.PAYMENTS:
            event = payment_from_record(item.record, self._own_node_id())
        elif category == EventCategory.ONCHAIN:
            event = onchain_from_record(item.record)
        elif category == EventCategory.CHANNELS:
            return channel_events_from_record(item.record, closed=item.source == "listclosedchannels")
        else:
            event = None
        return [event] if event else []

    def _is_rebalance_invoice(self, payment_hash: str) -> bool:
        """An invoice we paid ourselves is rebalance traffic, not income."""
        if self._with_retry(lambda: self.database.has_rebalance(payment_hash),
                            f"look up rebalance {payment_hash}"):
            return True
        try:
            return self.node_client.is_self_payment(payment_hash)
        except Exception as e:
            # The rebalance row removes the invoice once it is recorded
            self.plugin.log(f"Could not check {payment_hash} against sent payments: {e}", level='warn')
            return False

    def _drop_rebalance_invoice(self, event: RecordedEvent):
        payment_hash = event.raw_metadata.get("payment_hash")
        if not payment_hash:
            return
        key = f"invoice:{payment_hash}"
        if self._with_retry(lambda: self.database.delete_event(key), f"drop {key}"):
            self.plugin.log(f"Dropped {key}: receiving leg of rebalance {event.dedup_key}")

    def _backups_allowed(self, item: StreamItem) -> bool:
        """
        Channels already present on the first pass against an empty store are
        history, not news; they are recorded without triggering backups.
        """
        if self._channels_primed is None:
            cursor = self._with_retry(lambda: self.database.get_cursor(EventCategory.CHANNELS.value),
                                      "read channels cursor")
            self._channels_primed = cursor is not None
        if not self._channels_primed and item.cursor >= 2:
            self._channels_primed = True
        return self._channels_primed

    def handle_item(self, item: StreamItem) -> int:
        """
        Record every event in item, fire side effects, then advance the cursor.

        Returns:
            Number of newly inserted events
        """
        try:
            events = self.convert(item)
        except (KeyError, TypeError, ValueError) as e:
            self.plugin.log(f"Skipping malformed {item.category.value} record: {e}", level='warn')
            events = []

        stats = self._stats.setdefault(
            item.category.value, {"recorded": 0, "duplicates": 0, "skipped": 0, "last_item_at": 0}
        )
        if not events:
            with self._stats_lock:
                stats["skipped"] += 1
            if self.metrics:
                self.metrics.inc_counter(
                    MetricNames.EVENTS_SKIPPED_TOTAL, 1, {"category": item.category.value},
                    METRIC_HELP.get(MetricNames.EVENTS_SKIPPED_TOTAL, "")
                )

        new_count = 0
        for event in events:
            inserted = self.record(event)
            with self._stats_lock:
                stats["recorded" if inserted else "duplicates"] += 1
            if event.kind == EventKind.REBALANCE:
                self._drop_rebalance_invoice(event)
            if not inserted:
                continue
            new_count += 1
            self.plugin.log(
                f"Recorded {event.kind.value} {event.dedup_key} "
                f"amount={event.amount_msat}msat fee={event.fee_msat}msat",
                level='debug'
            )
            if event.kind in BACKUP_TRIGGER_KINDS and self._backups_allowed(item):
                self._trigger_backup(event)

        # The channel cursor only exists once the first full pass is stored
        if item.category != EventCategory.CHANNELS or self._backups_allowed(item):
            self._with_retry(lambda: self.database.set_cursor(item.category.value, item.cursor),
                             f"advance {item.category.value} cursor")
        with self._stats_lock:
            stats["last_item_at"] = int(time.time())
        if self.metrics:
            self.metrics.set_gauge(
                MetricNames.STREAM_CURSOR, item.cursor, {"category": item.category.value},
                METRIC_HELP.get(MetricNames.STREAM_CURSOR, "")
            )
        return new_count

    def _trigger_backup(self, event: RecordedEvent):
        if self.backup_trigger is None:
            return
        reason = "open" if event.kind == EventKind.CHANNEL_OPENED else "close"
        try:
            self.backup_trigger.trigger(reason, event.channel_point)
        except Exception as e:
            self.plugin.log(f"Channel backup trigger failed for {event.dedup_key}: {e}", level='warn')

    def status(self) -> Dict[str, Dict[str, int]]:
        with self._stats_lock:
            return {category: dict(values) for category, values in self._stats.items()}

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)
