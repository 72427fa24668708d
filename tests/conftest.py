"""
Pytest fixtures for cl-routing-ledger tests.

Provides a real temporary SQLite database plus mock plugin, RPC and
node client fixtures.
"""

import pytest
import tempfile
import threading
import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock

# Add the repo root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from routing_ledger.config import Config
from routing_ledger.database import Database
from routing_ledger.node_client import BalanceSnapshot


OWN_NODE_ID = "02" + "a" * 64
PEER_NODE_ID = "03" + "b" * 64


def utc_ts(year, month, day, hour=0, minute=0, second=0) -> int:
    """Unix timestamp for a UTC wall-clock time."""
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def config(temp_db_path):
    """Config with UTC day boundaries and fast retries."""
    return Config(
        db_path=temp_db_path,
        timezone='UTC',
        backoff_initial_seconds=0.01,
        backoff_max_seconds=0.05,
        stream_poll_interval=1,
    )


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """Initialized database on a temporary file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close_all_connections()


@pytest.fixture
def shutdown_event():
    return threading.Event()


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface (ResilientRpc.call signature)."""
    rpc = MagicMock()

    responses = {
        "getinfo": {"id": OWN_NODE_ID, "alias": "test-node", "network": "regtest"},
        "listfunds": {"outputs": [], "channels": []},
        "listpeerchannels": {"channels": []},
        "listclosedchannels": {"closedchannels": []},
        "staticbackup": {"scb": []},
    }
    rpc.call.side_effect = lambda method, payload=None: responses[method]
    rpc.responses = responses
    return rpc


@pytest.fixture
def mock_node_client():
    """Node client mock with fixed balances and node id."""
    client = MagicMock()
    client.get_balances.return_value = BalanceSnapshot(onchain_msat=5_000_000, lightning_msat=20_000_500)
    client.get_node_id.return_value = OWN_NODE_ID
    client.is_self_payment.return_value = False
    client.export_channel_backup.return_value = b'{"scb": ["0000"]}'
    return client


@pytest.fixture
def settled_forward():
    """A settled listforwards entry."""
    return {
        "created_index": 7,
        "updated_index": 9,
        "in_channel": "800000x1x0",
        "in_htlc_id": 42,
        "out_channel": "800001x2x1",
        "out_htlc_id": 11,
        "in_msat": 100_250_000,
        "out_msat": 100_000_000,
        "fee_msat": 250_000,
        "status": "settled",
        "style": "tlv",
        "received_time": 1704067200.25,
        "resolved_time": 1704067201.75,
    }
