"""
cl-routing-ledger package

Event ingestion and routing-report aggregation for the cl-routing-ledger plugin:
- node_client: restartable daemon event streams, balances, channel backup export
- recorder: deduplicated event persistence with per-category workers
- aggregator: daily routing reports (single-flight per date)
- backfill: sequential report recomputation over a date range
- live: cached projection for the still-open current day
- query: range/summary/live report queries
- scheduler: once-daily report trigger
- backup: Telegram delivery of static channel backups
- config / database / metrics / rpc_broker: plumbing
"""

from .aggregator import AggregationError, DailyReport, ReportAggregator, RoutingMetrics
from .backfill import BackfillDriver, BackfillResult
from .backup import ChannelBackupTrigger, TelegramBackupNotifier
from .config import Config
from .database import Database
from .events import EventCategory, EventKind, RecordedEvent
from .live import LiveReport, LiveReportCache
from .node_client import BalanceSnapshot, NodeEventClient, NodeUnavailableError
from .periods import RangeValidationError, ReportRange
from .query import ReportQueryService
from .recorder import EventRecorder
from .scheduler import DailyScheduler

__all__ = [
    'AggregationError',
    'BackfillDriver',
    'BackfillResult',
    'BalanceSnapshot',
    'ChannelBackupTrigger',
    'Config',
    'DailyReport',
    'DailyScheduler',
    'Database',
    'EventCategory',
    'EventKind',
    'EventRecorder',
    'LiveReport',
    'LiveReportCache',
    'NodeEventClient',
    'NodeUnavailableError',
    'RangeValidationError',
    'RecordedEvent',
    'ReportAggregator',
    'ReportQueryService',
    'ReportRange',
    'RoutingMetrics',
    'TelegramBackupNotifier',
]
