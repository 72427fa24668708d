"""
Channel backup delivery for cl-routing-ledger

When a channel opens or closes, the static channel backup changes. The
recorder hands such events to ChannelBackupTrigger, which exports the full
backup through the node client and posts it to a Telegram chat as a
document. Delivery is best-effort: it runs on a background worker, each
(reason, channel point) pair is sent at most once per process, and
failures are logged and counted but never propagate into event recording.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, Set, Tuple

import requests

from .metrics import MetricNames, METRIC_HELP


TELEGRAM_API_BASE = "https://api.telegram.org"


class BackupDeliveryError(Exception):
    """The notifier rejected or failed to deliver a backup."""


def backup_filename(reason: str, when: datetime) -> str:
    return f"scb-{reason}-{when.strftime('%Y%m%d-%H%M%S')}.json"


def backup_caption(reason: str, channel_point: Optional[str], when: datetime) -> str:
    caption = f"Lightning channel backup ({reason}) {when.strftime('%Y-%m-%d %H:%M:%S')} UTC"
    if channel_point:
        caption += f" channel {channel_point}"
    return caption


class TelegramBackupNotifier:
    """Sends backup documents through the Telegram Bot API (sendDocument)."""

    def __init__(self, bot_token: str, chat_id: str, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        return f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendDocument"

    def send_backup(self, filename: str, data: bytes, caption: str) -> None:
        try:
            resp = self.session.post(
                self.url,
                data={"chat_id": self.chat_id, "caption": caption},
                files={"document": (filename, data, "application/json")},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            # The request URL carries the bot token; keep it out of the message
            status = getattr(getattr(e, "response", None), "status_code", None)
            detail = f"HTTP {status}" if status else type(e).__name__
            raise BackupDeliveryError(f"Telegram sendDocument failed: {detail}") from None

        try:
            body = resp.json()
        except ValueError:
            raise BackupDeliveryError("Telegram sendDocument returned a non-JSON response")
        if not body.get("ok", False):
            raise BackupDeliveryError(
                f"Telegram sendDocument rejected: {body.get('description', 'unknown error')}"
            )


class ChannelBackupTrigger:
    """
    Best-effort export-and-send of the static channel backup.

    trigger() never raises and never blocks on I/O; export_and_send() is the
    synchronous path used by the backup test command.
    """

    def __init__(self, node_client, notifier: Optional[TelegramBackupNotifier], plugin,
                 metrics=None, executor: Optional[ThreadPoolExecutor] = None,
                 clock=lambda: datetime.now(timezone.utc)):
        self.node_client = node_client
        self.notifier = notifier
        self.plugin = plugin
        self.metrics = metrics
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-backup")
        self._seen: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.notifier is not None

    def trigger(self, reason: str, channel_point: Optional[str]) -> Optional[Future]:
        """
        Queue a backup for a channel event.

        Returns the Future of the queued job, or None when disabled or when
        this (reason, channel_point) pair was already handled.
        """
        if not self.enabled:
            return None
        key = (reason, channel_point or "")
        with self._lock:
            if key in self._seen:
                return None
            self._seen.add(key)

        try:
            return self._executor.submit(self._run, reason, channel_point)
        except RuntimeError as e:
            # Executor already shut down
            self.plugin.log(f"Channel backup ({reason}) not queued: {e}", level='warn')
            return None

    def _run(self, reason: str, channel_point: Optional[str]) -> bool:
        try:
            self.export_and_send(reason, channel_point)
            return True
        except Exception as e:
            if self.metrics:
                self.metrics.inc_counter(
                    MetricNames.BACKUP_FAILURES_TOTAL, 1, {"reason": reason},
                    METRIC_HELP.get(MetricNames.BACKUP_FAILURES_TOTAL, "")
                )
            self.plugin.log(
                f"Channel backup ({reason}) for {channel_point or 'node'} failed: {e}",
                level='warn'
            )
            return False

    def export_and_send(self, reason: str, channel_point: Optional[str] = None) -> str:
        """
        Export the backup and deliver it now.

        Returns:
            The delivered file name

        Raises:
            BackupDeliveryError, NodeUnavailableError, RpcError: on failure
        """
        if self.notifier is None:
            raise BackupDeliveryError("Backup delivery is not configured")

        data = self.node_client.export_channel_backup()
        when = self._clock()
        filename = backup_filename(reason, when)
        self.notifier.send_backup(filename, data, backup_caption(reason, channel_point, when))

        if self.metrics:
            self.metrics.inc_counter(
                MetricNames.BACKUPS_SENT_TOTAL, 1, {"reason": reason},
                METRIC_HELP.get(MetricNames.BACKUPS_SENT_TOTAL, "")
            )
        self.plugin.log(f"Channel backup ({reason}) sent as {filename}")
        return filename

    def shutdown(self, wait: bool = False):
        self._executor.shutdown(wait=wait)
