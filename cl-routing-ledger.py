#!/usr/bin/env python3
"""
cl-routing-ledger: A routing ledger plugin for Core Lightning

Follows lightningd's forwards, invoices, sent payments, channels and wallet
events, records each underlying fact exactly once in a local SQLite ledger,
and compresses the ledger into one financial report per local calendar day:
forward fee revenue, rebalance fee cost, net routing profit, routed volume
and a balance snapshot.

Reports are computed automatically shortly after local midnight, on demand
(ledger-report-run), or over a historical range (ledger-backfill), and can
be read by range (ledger-reports), as totals (ledger-summary), or live for
the still-open day (ledger-live).

Dependencies:
- pyln-client: Core Lightning plugin framework
- bookkeeper plugin (built-in): wallet deposit/withdrawal events
- requests: optional Telegram delivery of channel backups

License: MIT
"""

import os
import signal
import threading
from dataclasses import asdict
from typing import Any, Dict, Optional

from pyln.client import Plugin, RpcError

from routing_ledger.aggregator import AggregationError, ReportAggregator
from routing_ledger.backfill import BackfillDriver
from routing_ledger.backup import BackupDeliveryError, ChannelBackupTrigger, TelegramBackupNotifier
from routing_ledger.config import Config, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from routing_ledger.database import Database
from routing_ledger.events import EventKind
from routing_ledger.live import LiveReportCache
from routing_ledger.metrics import PrometheusExporter
from routing_ledger.node_client import NodeEventClient, NodeUnavailableError
from routing_ledger.periods import RangeValidationError, parse_date, resolve_timezone
from routing_ledger.query import ReportQueryService
from routing_ledger.recorder import EventRecorder
from routing_ledger.rpc_broker import ResilientRpc, RpcBroker
from routing_ledger.scheduler import DailyScheduler


plugin = Plugin()

# Set on SIGTERM (`lightning-cli plugin stop`); every background loop waits on it
shutdown_event = threading.Event()

# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
rpc_broker: Optional[RpcBroker] = None
rpc_client: Optional[ResilientRpc] = None
node_client: Optional[NodeEventClient] = None
recorder: Optional[EventRecorder] = None
aggregator: Optional[ReportAggregator] = None
backfill_driver: Optional[BackfillDriver] = None
live_cache: Optional[LiveReportCache] = None
query_service: Optional[ReportQueryService] = None
scheduler: Optional[DailyScheduler] = None
backup_trigger: Optional[ChannelBackupTrigger] = None
metrics_exporter: Optional[PrometheusExporter] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='ledger-db-path',
    default='~/.lightning/routing_ledger.db',
    description='Path to the SQLite ledger database'
)

plugin.add_option(
    name='ledger-timezone',
    default='',
    description='IANA time zone for report day boundaries (default: system local time)'
)

plugin.add_option(
    name='ledger-max-range-days',
    default='730',
    description='Longest custom report or backfill range in days (default: 730)'
)

plugin.add_option(
    name='ledger-live-ttl',
    default='60',
    description='Seconds a live report stays cached (default: 60)'
)

plugin.add_option(
    name='ledger-live-lookback-hours',
    default='0',
    description='Live report window in hours; 0 means since local midnight (default: 0)'
)

plugin.add_option(
    name='ledger-run-timeout-seconds',
    default='120',
    description='Max seconds to wait on an in-flight report for the same date (default: 120)'
)

plugin.add_option(
    name='ledger-daily-run-delay-minutes',
    default='10',
    description='Minutes after local midnight to compute yesterday\'s report (default: 10)'
)

plugin.add_option(
    name='ledger-stream-poll-interval',
    default='15',
    description='Seconds between polls of an idle event stream (default: 15)'
)

plugin.add_option(
    name='ledger-stream-page-size',
    default='500',
    description='Records fetched per list* page (default: 500)'
)

plugin.add_option(
    name='ledger-backoff-max-seconds',
    default='300',
    description='Upper bound for stream restart backoff (default: 300)'
)

plugin.add_option(
    name='ledger-balance-attempts',
    default='3',
    description='Balance snapshot attempts before a daily report fails (default: 3)'
)

plugin.add_option(
    name='ledger-rpc-timeout-seconds',
    default='15',
    description='Timeout for each lightningd RPC call (default: 15)'
)

plugin.add_option(
    name='ledger-rpc-circuit-breaker-seconds',
    default='60',
    description='Cooldown after an RPC timeout for that method group (default: 60)'
)

plugin.add_option(
    name='ledger-telegram-bot-token',
    default='',
    description='Telegram bot token for channel backup delivery (empty = disabled)'
)

plugin.add_option(
    name='ledger-telegram-chat-id',
    default='',
    description='Telegram chat id for channel backup delivery'
)

plugin.add_option(
    name='ledger-enable-prometheus',
    default='false',
    description='Expose Prometheus metrics (default: false)'
)

plugin.add_option(
    name='ledger-prometheus-port',
    default='9810',
    description='Port for the Prometheus metrics endpoint (default: 9810)'
)

plugin.add_option(
    name='ledger-enable-ingestion',
    default='true',
    description='Follow lightningd event streams; false only serves reports (default: true)'
)


def _rpc_socket_path(configuration: Dict[str, Any]) -> str:
    socket_path = getattr(plugin.rpc, "socket_path", None)
    if socket_path:
        return str(socket_path)
    ldir = configuration.get("lightning-dir") or "~/.lightning"
    rpcfile = configuration.get("rpc-file") or "lightning-rpc"
    if os.path.isabs(rpcfile):
        return rpcfile
    return os.path.expanduser(os.path.join(ldir, rpcfile))


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the routing ledger.

    1. Build configuration from options and stored overrides
    2. Start the RPC broker and the database
    3. Wire the engine components together
    4. Start ingestion threads and the daily scheduler
    """
    global config, database, rpc_broker, rpc_client, node_client, recorder, aggregator
    global backfill_driver, live_cache, query_service, scheduler, backup_trigger, metrics_exporter

    plugin.log("Initializing cl-routing-ledger plugin...")

    config = Config(
        db_path=os.path.expanduser(options['ledger-db-path']),
        timezone=options['ledger-timezone'].strip(),
        max_range_days=int(options['ledger-max-range-days']),
        live_ttl_seconds=int(options['ledger-live-ttl']),
        live_lookback_hours=int(options['ledger-live-lookback-hours']),
        run_timeout_seconds=int(options['ledger-run-timeout-seconds']),
        daily_run_delay_minutes=int(options['ledger-daily-run-delay-minutes']),
        stream_poll_interval=int(options['ledger-stream-poll-interval']),
        stream_page_size=int(options['ledger-stream-page-size']),
        backoff_max_seconds=float(options['ledger-backoff-max-seconds']),
        balance_attempts=int(options['ledger-balance-attempts']),
        rpc_timeout_seconds=int(options['ledger-rpc-timeout-seconds']),
        rpc_circuit_breaker_seconds=int(options['ledger-rpc-circuit-breaker-seconds']),
        telegram_bot_token=options['ledger-telegram-bot-token'].strip(),
        telegram_chat_id=options['ledger-telegram-chat-id'].strip(),
        enable_prometheus=options['ledger-enable-prometheus'].lower() == 'true',
        prometheus_port=int(options['ledger-prometheus-port']),
        enable_ingestion=options['ledger-enable-ingestion'].lower() == 'true',
    )

    # Fail at startup rather than computing reports on the wrong day boundaries
    resolve_timezone(config.timezone)

    plugin.log(f"Configuration loaded: db={config.db_path}, "
               f"timezone={config.timezone or 'system local'}, "
               f"max_range_days={config.max_range_days}, backups={'on' if config.backup_enabled else 'off'}")

    socket_path = _rpc_socket_path(configuration)
    rpc_broker = RpcBroker(socket_path, plugin)
    rpc_client = ResilientRpc(
        rpc_broker, plugin,
        timeout_seconds=lambda: config.rpc_timeout_seconds,
        breaker_seconds=lambda: config.rpc_circuit_breaker_seconds,
    )
    plugin.log(f"RPC broker initialized (socket={socket_path})")

    database = Database(config.db_path, plugin)
    database.initialize()

    try:
        config.load_overrides(database)
        if config._version > 0:
            plugin.log(f"Loaded config overrides from database (version {config._version})")
    except Exception as e:
        plugin.log(f"Warning: Could not load config overrides: {e}", level='warn')

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=plugin)
        if not metrics_exporter.start_server():
            plugin.log("Prometheus metrics disabled due to server startup failure", level='warn')
            metrics_exporter = None
    else:
        metrics_exporter = None

    node_client = NodeEventClient(rpc_client, config, plugin, shutdown_event, metrics_exporter)

    notifier = None
    if config.backup_enabled:
        notifier = TelegramBackupNotifier(
            config.telegram_bot_token, config.telegram_chat_id, timeout=config.backup_timeout_seconds
        )
    backup_trigger = ChannelBackupTrigger(node_client, notifier, plugin, metrics_exporter)

    aggregator = ReportAggregator(database, node_client, config, plugin, metrics_exporter)
    backfill_driver = BackfillDriver(aggregator, config, plugin, shutdown_event)
    live_cache = LiveReportCache(aggregator, node_client, config, plugin, metrics_exporter)
    query_service = ReportQueryService(database, live_cache, config, tz=aggregator.tz)
    scheduler = DailyScheduler(aggregator, database, config, plugin, shutdown_event)

    recorder = EventRecorder(
        database, node_client, config, plugin, shutdown_event,
        backup_trigger=backup_trigger, metrics=metrics_exporter
    )

    def handle_shutdown_signal(signum, frame):
        """Stop every loop promptly on SIGTERM and release resources."""
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if backup_trigger:
            backup_trigger.shutdown(wait=False)

        if metrics_exporter:
            try:
                metrics_exporter.stop_server()
            except OSError as e:
                plugin.log(f"Error stopping metrics server: {e}", level='warn')

        if rpc_broker:
            rpc_broker.stop()

        if database:
            database.close_all_connections()

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    if config.enable_ingestion:
        recorder.start()
    else:
        plugin.log("Event ingestion disabled by configuration")
    scheduler.start()

    plugin.log("cl-routing-ledger plugin initialized successfully!")
    return None


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("ledger-status")
def ledger_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Ingestion and reporting status.

    Usage: lightning-cli ledger-status
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}

    latest = database.get_latest_daily_report()
    return {
        "status": "running" if not shutdown_event.is_set() else "stopping",
        "ingestion": {
            "enabled": config.enable_ingestion,
            "running": recorder.is_running() if recorder else False,
            "categories": recorder.status() if recorder else {},
            "cursors": database.get_all_cursors(),
        },
        "event_counts": database.get_event_counts(),
        "latest_report_date": latest['report_date'] if latest else None,
        "scheduler": scheduler.status() if scheduler else None,
        "rpc_breakers_open": rpc_client.breaker_state() if rpc_client else {},
        "backups_enabled": config.backup_enabled,
        "config_version": config._version,
    }


@plugin.method("ledger-reports")
def ledger_reports(plugin: Plugin, range: Optional[str] = None,
                   start: Optional[str] = None, end: Optional[str] = None) -> Dict[str, Any]:
    """
    Daily reports for a range tag or an explicit [start, end] date interval.

    Usage:
      lightning-cli ledger-reports                  # yesterday (d-1)
      lightning-cli ledger-reports month            # d-1, month, 3m, 6m, 12m, all
      lightning-cli -k ledger-reports start=2024-01-01 end=2024-01-31
    """
    if query_service is None:
        return {"error": "Plugin not fully initialized"}
    try:
        return query_service.query_range(range, start, end).to_dict()
    except RangeValidationError as e:
        return {"error": str(e)}


@plugin.method("ledger-summary")
def ledger_summary(plugin: Plugin, range: Optional[str] = None,
                   start: Optional[str] = None, end: Optional[str] = None) -> Dict[str, Any]:
    """
    Totals and per-day averages for a range tag or [start, end].

    Usage: lightning-cli ledger-summary 12m
    """
    if query_service is None:
        return {"error": "Plugin not fully initialized"}
    try:
        return query_service.query_summary(range, start, end).to_dict()
    except RangeValidationError as e:
        return {"error": str(e)}


@plugin.method("ledger-live")
def ledger_live(plugin: Plugin, lookback_hours: Optional[int] = None) -> Dict[str, Any]:
    """
    Live report for the still-open day (cached for ledger-live-ttl seconds).

    Usage: lightning-cli ledger-live [lookback_hours]
    """
    if query_service is None:
        return {"error": "Plugin not fully initialized"}
    try:
        return query_service.query_live(lookback_hours).to_dict()
    except (RangeValidationError, ValueError) as e:
        return {"error": str(e)}


@plugin.method("ledger-report-run")
def ledger_report_run(plugin: Plugin, date: Optional[str] = None) -> Dict[str, Any]:
    """
    Compute (or recompute) the report for one date. Default: yesterday.

    Usage: lightning-cli ledger-report-run [YYYY-MM-DD]
    """
    if aggregator is None:
        return {"error": "Plugin not fully initialized"}
    try:
        day = parse_date(date) if date else scheduler.yesterday()
    except RangeValidationError as e:
        return {"error": str(e)}

    try:
        report = aggregator.run_daily(day, trigger="manual")
    except AggregationError as e:
        return {"status": "error", "date": day.isoformat(), "error": e.reason}
    return {"status": "ok", "report": report.to_dict()}


@plugin.async_method("ledger-backfill")
def ledger_backfill(plugin: Plugin, request, start: str, end: str, max_days: Optional[int] = None):
    """
    Recompute reports for every date in [start, end], stopping at the first failure.

    Runs on its own thread so a long backfill does not block other commands.

    Usage: lightning-cli ledger-backfill 2024-01-01 2024-03-31 [max_days]
    """
    if backfill_driver is None:
        request.set_result({"error": "Plugin not fully initialized"})
        return

    def run():
        try:
            limit = int(max_days) if max_days is not None else None
            result = backfill_driver.run(start, end, limit)
            request.set_result(result.to_dict())
        except (RangeValidationError, ValueError) as e:
            request.set_result({"error": str(e)})
        except Exception as e:
            plugin.log(f"Backfill crashed: {e}", level='error')
            request.set_exception(e)
        finally:
            database.close()

    threading.Thread(target=run, daemon=True, name="ledger-backfill").start()


@plugin.method("ledger-events")
def ledger_events(plugin: Plugin, kind: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
    """
    Most recent recorded events, optionally of one kind.

    Usage: lightning-cli ledger-events [kind] [limit]
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}
    if kind is not None:
        try:
            kind = EventKind(kind).value
        except ValueError:
            return {"error": f"Unknown kind '{kind}' (expected one of: {', '.join(k.value for k in EventKind)})"}
    limit = max(1, min(int(limit), 1000))
    events = database.get_recent_events(limit=limit, kind=kind)
    return {"count": len(events), "events": events}


@plugin.method("ledger-config")
def ledger_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli ledger-config get                 # all config
      lightning-cli ledger-config get <key>
      lightning-cli ledger-config set <key> <value>
      lightning-cli ledger-config reset <key>         # drop override (applies on restart)
      lightning-cli ledger-config list-mutable
    """
    if config is None or database is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        if key:
            if key not in CONFIG_FIELD_TYPES and key not in IMMUTABLE_CONFIG_KEYS:
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": getattr(config, key), "version": config._version}
        return {"config": asdict(config.snapshot()), "version": config._version}

    if action == "set":
        if not key or value is None:
            return {"error": "Usage: ledger-config set <key> <value>"}
        result = config.update_runtime(database, key, str(value))
        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})"
            )
        return result

    if action == "reset":
        if not key:
            return {"error": "Usage: ledger-config reset <key>"}
        if database.delete_config_override(key):
            return {"status": "success", "message": f"Override for '{key}' removed. Restart plugin to apply default."}
        return {"error": f"No override found for '{key}'"}

    if action == "list-mutable":
        mutable = sorted(k for k in CONFIG_FIELD_TYPES if k not in IMMUTABLE_CONFIG_KEYS)
        return {"mutable_keys": mutable, "count": len(mutable)}

    return {"error": f"Unknown action: {action}. Use 'get', 'set', 'reset', or 'list-mutable'"}


@plugin.method("ledger-backup-test")
def ledger_backup_test(plugin: Plugin) -> Dict[str, Any]:
    """
    Export the static channel backup and deliver it now.

    Usage: lightning-cli ledger-backup-test
    """
    if backup_trigger is None:
        return {"error": "Plugin not fully initialized"}
    if not backup_trigger.enabled:
        return {"error": "Backup delivery not configured (set ledger-telegram-bot-token and ledger-telegram-chat-id)"}
    try:
        filename = backup_trigger.export_and_send("test")
    except (BackupDeliveryError, NodeUnavailableError, RpcError, ValueError) as e:
        return {"status": "error", "error": str(e)}
    return {"status": "ok", "file": filename}


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
