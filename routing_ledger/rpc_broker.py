"""
Resilient RPC access for cl-routing-ledger

pyln-client calls can hang on a stuck lightningd socket, and a thread
timeout does not stop a hung call. Every daemon call therefore runs in a
broker subprocess that can be killed and restarted, which bounds how long
any caller waits. On top of the broker, ResilientRpc adds per-group
circuit breakers so a group that just timed out is skipped for a while
instead of stacking up more timeouts.
"""

import multiprocessing
import queue
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pyln.client import RpcError


class RpcTimeoutError(RpcError):
    """Exception raised when an RPC call times out."""
    def __init__(self, method):
        self.method = method
        super().__init__(method, {}, f"RPC timeout for method: {method}")


class RpcBreakerOpen(RpcError):
    """Exception raised when the circuit breaker is open for a method group."""
    def __init__(self, group, until_ts):
        self.group = group
        self.until_ts = until_ts
        until_str = datetime.fromtimestamp(until_ts).strftime('%H:%M:%S')
        super().__init__(group, {}, f"RPC circuit breaker open for group '{group}' until {until_str}")


def _broker_main(socket_path: str, req_q, resp_q):
    # Runs in the broker subprocess.
    from pyln.client import LightningRpc, RpcError as _RpcError
    import traceback as _traceback

    rpc = LightningRpc(socket_path)

    while True:
        req = req_q.get()
        if not req:
            continue
        if req.get("op") == "stop":
            break

        req_id = req.get("id")
        method = req.get("method")
        payload = req.get("payload")

        try:
            result = rpc.call(method, {} if payload is None else payload)
            resp_q.put({"id": req_id, "ok": True, "result": result})
        except _RpcError as e:
            resp_q.put({
                "id": req_id,
                "ok": False,
                "error_type": "RpcError",
                "error": getattr(e, "error", None),
                "message": str(e),
            })
        except Exception as e:
            resp_q.put({
                "id": req_id,
                "ok": False,
                "error_type": "Exception",
                "message": str(e),
                "traceback": _traceback.format_exc(),
            })


class RpcBroker:
    """
    Executes lightningd RPC calls in a separate process.

    - One broker process, one request queue, one response queue
    - Calls are serialized via an internal call lock
    - On timeout: terminate broker, recreate queues, restart broker, raise TimeoutError
    """

    def __init__(self, socket_path: str, plugin, autostart: bool = True):
        self.socket_path = socket_path
        self._plugin = plugin

        # spawn: never fork a process after threads have started
        self._ctx = multiprocessing.get_context("spawn")

        self._proc: Optional[multiprocessing.Process] = None
        self._req_q: Any = None
        self._resp_q: Any = None

        self._call_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()

        if autostart:
            self.start()

    def start(self):
        with self._lifecycle_lock:
            # Fresh queues each start so no stale response survives a restart
            self._req_q = self._ctx.Queue()
            self._resp_q = self._ctx.Queue()

            self._proc = self._ctx.Process(
                target=_broker_main,
                args=(self.socket_path, self._req_q, self._resp_q),
                daemon=True,
                name="ledger_rpc_broker",
            )
            self._proc.start()

    def stop(self):
        with self._lifecycle_lock:
            if self._proc is None:
                return
            try:
                if self._req_q:
                    self._req_q.put_nowait({"op": "stop"})
            except (OSError, ValueError, queue.Full):
                pass

            try:
                if self._proc.is_alive():
                    self._proc.terminate()
                    self._proc.join(timeout=1.0)
            except (OSError, ValueError):
                pass

            self._proc = None
            self._req_q = None
            self._resp_q = None

    def restart(self, reason: str):
        self._plugin.log(f"RPC broker restart: {reason}", level="warn")
        self.stop()
        self.start()

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.is_alive()

    def request(self, method: str, payload: Optional[Dict[str, Any]] = None, timeout: int = 15):
        """
        Perform a single RPC request through the broker.

        Raises:
            TimeoutError: if the broker does not return within timeout.
            RpcError: reconstructed from broker error payload.
        """
        if not method:
            raise RpcError("request", {}, "Empty RPC method")

        with self._call_lock:
            if not self.is_alive():
                self.restart("broker not running")

            req_id = uuid.uuid4().hex
            self._req_q.put({"id": req_id, "method": method, "payload": payload or {}})

            try:
                resp = self._resp_q.get(timeout=timeout)
                # Drain anything left over from an earlier caller until ours arrives
                while resp and resp.get("id") != req_id:
                    resp = self._resp_q.get(timeout=timeout)
            except queue.Empty:
                self.restart(f"timeout waiting for RPC response ({timeout}s) on {method}")
                raise TimeoutError(f"RPC broker timeout on {method}")

            if resp.get("ok"):
                return resp.get("result")

            if resp.get("traceback"):
                self._plugin.log(
                    f"RPC broker exception in {method}: {resp.get('message')}\n{resp.get('traceback')}",
                    level="error"
                )

            err = resp.get("error")
            msg = resp.get("message") or "RPC error"
            raise RpcError(method, payload or {}, err if err is not None else msg)


# Method groups share a circuit breaker
RPC_METHOD_GROUPS = {
    "listforwards": "streams",
    "listinvoices": "streams",
    "listsendpays": "streams",
    "listpeerchannels": "streams",
    "listclosedchannels": "streams",
    "listfunds": "balances",
    "getinfo": "balances",
    "staticbackup": "backup",
}


class ResilientRpc:
    """
    RPC facade with timeouts and circuit breakers.

    Callers write rpc.call("listforwards", {"index": "updated"}) and get a
    dict back.
    `transport` is anything with request(method, payload, timeout): the
    RpcBroker in production, a fake in tests.
    """

    def __init__(self, transport, plugin,
                 timeout_seconds: Callable[[], int] = lambda: 15,
                 breaker_seconds: Callable[[], int] = lambda: 60,
                 clock: Callable[[], float] = time.time):
        self._transport = transport
        self._plugin = plugin
        self._timeout_seconds = timeout_seconds
        self._breaker_seconds = breaker_seconds
        self._clock = clock
        self._breakers: Dict[str, float] = {}
        self._breakers_lock = threading.Lock()
        self._log_history: Dict[Tuple[str, str], float] = {}

    @staticmethod
    def group_for(method_name: str) -> str:
        if method_name.startswith("bkpr-"):
            return "bkpr"
        return RPC_METHOD_GROUPS.get(method_name, "general")

    def _should_log(self, group: str, msg_type: str, cooldown: int = 60) -> bool:
        """Rate-limit logs to once per cooldown window."""
        now = self._clock()
        key = (group, msg_type)
        if now - self._log_history.get(key, 0) > cooldown:
            self._log_history[key] = now
            return True
        return False

    def breaker_state(self) -> Dict[str, float]:
        """Open breakers as {group: reopen timestamp}."""
        now = self._clock()
        with self._breakers_lock:
            return {group: until for group, until in self._breakers.items() if until > now}

    def call(self, method_name: str, payload: Optional[Dict[str, Any]] = None):
        """Call method_name with a bounded wait and circuit breaker."""
        group = self.group_for(method_name)
        now = self._clock()

        with self._breakers_lock:
            until = self._breakers.get(group, 0)
        if until > now:
            if self._should_log(group, "breaker_open"):
                self._plugin.log(
                    f"RPC circuit breaker OPEN for group '{group}' until "
                    f"{datetime.fromtimestamp(until).strftime('%H:%M:%S')}. Skipping call.",
                    level="warn",
                )
            raise RpcBreakerOpen(group, until)

        timeout = self._timeout_seconds()
        try:
            return self._transport.request(method_name, payload or {}, timeout=timeout)
        except TimeoutError:
            breaker_window = self._breaker_seconds()
            with self._breakers_lock:
                self._breakers[group] = self._clock() + breaker_window
            self._plugin.log(
                f"RPC TIMEOUT after {timeout}s on {method_name}. "
                f"Group '{group}' breaker tripped for {breaker_window}s.",
                level="warn",
            )
            raise RpcTimeoutError(method_name)
