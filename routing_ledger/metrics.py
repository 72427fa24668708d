"""
Prometheus Metrics Exporter module for cl-routing-ledger

A small, thread-safe Prometheus text exporter built on the standard
library HTTP server. Tracks ingestion (events recorded, duplicates, stream
restarts), report runs and channel backup deliveries.

All metric names are prefixed with 'cl_ledger_'.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class PrometheusExporter:
    """
    Lightweight Prometheus metrics exporter.

    Usage:
        exporter = PrometheusExporter(port=9810, plugin=plugin)
        exporter.start_server()
        exporter.inc_counter(MetricNames.EVENTS_RECORDED_TOTAL, 1, {"kind": "forward"})
    """

    def __init__(self, port: int = 9810, plugin=None):
        self.port = port
        self.plugin = plugin
        self._lock = threading.Lock()

        # {name: {"type": ..., "help": ..., "values": {frozenset(labels.items()): value}}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _store(self, name: str, metric_type: str, help_text: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {"type": metric_type, "help": help_text, "values": {}}
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        """Set a gauge metric value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._store(name, MetricType.GAUGE, help_text)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        """Increment a counter metric."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._store(name, MetricType.COUNTER, help_text)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of a metric for an exact label set, or None."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def format_prometheus(self) -> str:
        """All metrics in Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric.get("help"):
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")

                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(sorted(x[0]))):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):
            """HTTP request handler for /metrics endpoint."""

            def log_message(self, format, *args):
                pass

            def do_GET(self):
                try:
                    if self.path in ('/', '/metrics'):
                        content = exporter.format_prometheus().encode('utf-8')
                        self.send_response(200)
                        self.send_header('Content-Type', 'text/plain; version=0.0.4; charset=utf-8')
                        self.send_header('Content-Length', str(len(content)))
                        self.end_headers()
                        self.wfile.write(content)
                    else:
                        self.send_response(404)
                        self.send_header('Content-Type', 'text/plain')
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                except (BrokenPipeError, ConnectionResetError):
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP server in a background thread.

        Returns:
            True if server started successfully, False otherwise
        """
        if self._running:
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._server_thread = threading.Thread(
                target=self._server.serve_forever,
                daemon=True,
                name="ledger-prometheus"
            )
            self._server_thread.start()
            self._running = True
            self._log(f"Prometheus metrics server started on port {self.port}")
            return True
        except OSError as e:
            self._log(
                f"Failed to start Prometheus server on port {self.port}: {e}. "
                "Plugin continues without metrics.",
                level='error'
            )
            return False

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running


class MetricNames:
    """Metric names used across cl-routing-ledger."""

    # Ingestion (Counters)
    EVENTS_RECORDED_TOTAL = "cl_ledger_events_recorded_total"
    EVENTS_DUPLICATE_TOTAL = "cl_ledger_events_duplicate_total"
    EVENTS_SKIPPED_TOTAL = "cl_ledger_events_skipped_total"
    STREAM_RESTARTS_TOTAL = "cl_ledger_stream_restarts_total"
    PERSIST_RETRIES_TOTAL = "cl_ledger_persist_retries_total"

    # Ingestion (Gauges)
    STREAM_CURSOR = "cl_ledger_stream_cursor"

    # Reports
    REPORT_RUNS_TOTAL = "cl_ledger_report_runs_total"
    REPORT_FAILURES_TOTAL = "cl_ledger_report_failures_total"
    REPORT_LAST_SUCCESS_TIMESTAMP = "cl_ledger_report_last_success_timestamp_seconds"
    LIVE_CACHE_HITS_TOTAL = "cl_ledger_live_cache_hits_total"

    # Channel backups
    BACKUPS_SENT_TOTAL = "cl_ledger_backups_sent_total"
    BACKUP_FAILURES_TOTAL = "cl_ledger_backup_failures_total"


METRIC_HELP = {
    MetricNames.EVENTS_RECORDED_TOTAL: "Events newly written to the ledger",
    MetricNames.EVENTS_DUPLICATE_TOTAL: "Redelivered events ignored by dedup key",
    MetricNames.EVENTS_SKIPPED_TOTAL: "Daemon records that did not describe a final event",
    MetricNames.STREAM_RESTARTS_TOTAL: "Event stream restarts after an error",
    MetricNames.PERSIST_RETRIES_TOTAL: "Event writes retried after a storage error",
    MetricNames.STREAM_CURSOR: "Last persisted daemon index per stream",
    MetricNames.REPORT_RUNS_TOTAL: "Daily report computations by trigger",
    MetricNames.REPORT_FAILURES_TOTAL: "Failed daily report computations by trigger",
    MetricNames.REPORT_LAST_SUCCESS_TIMESTAMP: "Unix timestamp of the last successful daily report",
    MetricNames.LIVE_CACHE_HITS_TOTAL: "Live projection requests served from cache",
    MetricNames.BACKUPS_SENT_TOTAL: "Channel backups delivered",
    MetricNames.BACKUP_FAILURES_TOTAL: "Channel backup exports or deliveries that failed",
}
