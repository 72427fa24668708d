"""
Configuration module for cl-routing-ledger

Contains the Config dataclass that holds all tunable parameters
for the ledger plugin, plus the runtime override machinery:
- ConfigSnapshot: Immutable snapshot captured at the start of each cycle
- Runtime configuration updates via RPC (ledger-config)
"""

from dataclasses import dataclass, field
from typing import Dict, Any, FrozenSet, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


# Keys that cannot be changed at runtime (they shape the store and the day boundaries)
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'timezone',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'max_range_days': int,
    'live_ttl_seconds': int,
    'live_lookback_hours': int,
    'run_timeout_seconds': int,
    'daily_run_delay_minutes': int,
    'stream_poll_interval': int,
    'stream_page_size': int,
    'stream_queue_size': int,
    'backoff_initial_seconds': float,
    'backoff_max_seconds': float,
    'balance_attempts': int,
    'rpc_timeout_seconds': int,
    'rpc_circuit_breaker_seconds': int,
    'backup_timeout_seconds': int,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'max_range_days': (1, 3650),
    'live_ttl_seconds': (1, 3600),
    'live_lookback_hours': (0, 24 * 30),
    'run_timeout_seconds': (5, 3600),
    'daily_run_delay_minutes': (0, 720),
    'stream_poll_interval': (1, 3600),
    'stream_page_size': (1, 10000),
    'stream_queue_size': (1, 100000),
    'backoff_initial_seconds': (0.1, 60.0),
    'backoff_max_seconds': (1.0, 3600.0),
    'balance_attempts': (1, 20),
    'rpc_timeout_seconds': (1, 300),
    'rpc_circuit_breaker_seconds': (0, 3600),
    'backup_timeout_seconds': (1, 300),
    'prometheus_port': (1, 65535),
}


def _convert(field_type: type, value: str) -> Any:
    if field_type == bool:
        return value.lower() in ('true', '1', 'yes', 'on')
    if field_type == int:
        return int(value)
    if field_type == float:
        return float(value)
    return value


@dataclass
class Config:
    """
    Configuration container for the routing ledger plugin.

    All values can be set via plugin options at startup; the keys listed in
    CONFIG_FIELD_TYPES (minus IMMUTABLE_CONFIG_KEYS) can also be changed at
    runtime through ledger-config.
    """

    # Database path
    db_path: str = '~/.lightning/routing_ledger.db'

    # IANA zone name for report day boundaries ('' = system local time)
    timezone: str = ''

    # Reports
    max_range_days: int = 730          # Longest custom/backfill range (inclusive days)
    live_ttl_seconds: int = 60         # Live projection cache lifetime
    live_lookback_hours: int = 0       # 0 = since local midnight
    run_timeout_seconds: int = 120     # Max wait on an in-flight run for the same date
    daily_run_delay_minutes: int = 10  # Run yesterday's report this long after midnight

    # Event streams
    stream_poll_interval: int = 15     # Seconds between polls when a stream is idle
    stream_page_size: int = 500        # Records per list* page
    stream_queue_size: int = 1000      # Bounded queue between producer and recorder

    # Retry policy
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    balance_attempts: int = 3          # Balance snapshot attempts before a run fails

    # RPC hardening
    rpc_timeout_seconds: int = 15
    rpc_circuit_breaker_seconds: int = 60

    # Channel backup delivery (Telegram); disabled when token or chat id is empty
    telegram_bot_token: str = ''
    telegram_chat_id: str = ''
    backup_timeout_seconds: int = 30

    # Prometheus Metrics
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Ingestion can be switched off to run reports over an existing store
    enable_ingestion: bool = True

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    @property
    def backup_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for cycle execution.

        Loops capture a snapshot at cycle start so a concurrent ledger-config
        set never changes values halfway through a run.
        """
        return ConfigSnapshot.from_config(self)

    def load_overrides(self, database: 'Database') -> None:
        """Load config overrides from database on startup."""
        overrides = database.get_all_config_overrides()
        for key, value in overrides.items():
            if key in CONFIG_FIELD_TYPES and key not in IMMUTABLE_CONFIG_KEYS:
                self._apply_override(key, value)
        self._version = database.get_config_version()

    def _apply_override(self, key: str, value: str) -> None:
        """Apply a single override with type conversion."""
        try:
            setattr(self, key, _convert(CONFIG_FIELD_TYPES[key], value))
        except (ValueError, TypeError):
            pass  # Keep option value if the stored override is unparseable

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Transactional runtime update: Validate -> Write DB -> Read-Back -> Update Memory.

        Returns:
            Dict with status, old_value, new_value, version (or an error key)
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if key not in CONFIG_FIELD_TYPES:
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES[key]
        try:
            typed_value = _convert(field_type, value)
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        old_value = getattr(self, key)

        new_version = database.set_config_override(key, value)

        read_back = database.get_config_override(key)
        if read_back != value:
            return {"error": "Database write verification failed"}

        setattr(self, key, typed_value)
        self._version = new_version

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for thread-safe cycle execution.

    Usage:
        def run_cycle(self):
            cfg = self.config.snapshot()
            # All logic uses cfg, never self.config directly
    """
    db_path: str
    timezone: str

    max_range_days: int
    live_ttl_seconds: int
    live_lookback_hours: int
    run_timeout_seconds: int
    daily_run_delay_minutes: int

    stream_poll_interval: int
    stream_page_size: int
    stream_queue_size: int

    backoff_initial_seconds: float
    backoff_max_seconds: float
    balance_attempts: int

    rpc_timeout_seconds: int
    rpc_circuit_breaker_seconds: int

    backup_enabled: bool
    backup_timeout_seconds: int

    enable_prometheus: bool
    prometheus_port: int
    enable_ingestion: bool

    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            db_path=config.db_path,
            timezone=config.timezone,
            max_range_days=config.max_range_days,
            live_ttl_seconds=config.live_ttl_seconds,
            live_lookback_hours=config.live_lookback_hours,
            run_timeout_seconds=config.run_timeout_seconds,
            daily_run_delay_minutes=config.daily_run_delay_minutes,
            stream_poll_interval=config.stream_poll_interval,
            stream_page_size=config.stream_page_size,
            stream_queue_size=config.stream_queue_size,
            backoff_initial_seconds=config.backoff_initial_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
            balance_attempts=config.balance_attempts,
            rpc_timeout_seconds=config.rpc_timeout_seconds,
            rpc_circuit_breaker_seconds=config.rpc_circuit_breaker_seconds,
            backup_enabled=config.backup_enabled,
            backup_timeout_seconds=config.backup_timeout_seconds,
            enable_prometheus=config.enable_prometheus,
            prometheus_port=config.prometheus_port,
            enable_ingestion=config.enable_ingestion,
            version=config._version,
        )
