"""Persistent WebSocket connection to the collector backend.

Reports are produced on whatever thread hit the error; socket I/O runs on a
private asyncio loop in a background thread.

Architecture:
    Application thread             Transport thread
    +------------------+           +--------------------------+
    | send_exception() |-- send -->| ws.send() / queue flush  |
    +------------------+           | register, reconnect, ... |
                                   +--------------------------+

State machine:
    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> READY
    any state -> DISCONNECTED on close/error or disconnect()
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import platform
import threading
import time
from collections import deque
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import connect as ws_connect
from websockets.protocol import State

if TYPE_CHECKING:
    from .capture import ExceptionReport
    from .config import AgentConfig

_logger = logging.getLogger(__name__)

MAX_QUEUE_SIZE = 1000
MAX_RECONNECT_ATTEMPTS = 10
BASE_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30000
SHUTDOWN_TIMEOUT = 5.0


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"


def reconnect_delay(attempt: int) -> int:
    """Backoff in milliseconds before reconnect number ``attempt`` (0-based)."""
    return min(BASE_RECONNECT_DELAY_MS * 2**attempt, MAX_RECONNECT_DELAY_MS)


def _agent_version() -> str:
    try:
        from . import __version__
    except Exception:
        return "unknown"
    return __version__


def _now_ms() -> int:
    return int(time.time() * 1000)


class BackendConnection:
    """Owns the socket, the send queue and the reconnect timer.

    Args:
        config: agent configuration (backend URL, identity, debug flag)

    Usage:
        connection = BackendConnection(config)
        connection.connect()
        connection.send_exception(report)   # from any thread
        connection.disconnect()
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.reconnect_attempts = 0
        self._state = ConnectionState.DISCONNECTED
        self._queue: deque[str] = deque()
        self._lock = threading.Lock()
        self._ws: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._loop_ready = threading.Event()
        self._task: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._closing = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def authenticated(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def pending(self) -> tuple[str, ...]:
        """Messages waiting for the connection to become ready."""
        with self._lock:
            return tuple(self._queue)

    # -- public API -------------------------------------------------------

    def connect(self) -> None:
        """Open the connection if it is not already open or opening."""
        self._closing = False
        self.reconnect_attempts = 0
        loop = self._ensure_loop()
        if loop is None:
            _logger.warning("Transport thread did not start; reports stay queued")
            return
        loop.call_soon_threadsafe(self._open)

    def disconnect(self) -> None:
        """Cancel reconnects, close the socket and stop the transport thread."""
        self._closing = True
        loop, thread = self._loop, self._thread

        if loop is not None and thread is not None and thread.is_alive():
            if threading.current_thread() is thread:
                loop.create_task(self._shutdown())
                return
            future = asyncio.run_coroutine_threadsafe(self._shutdown(), loop)
            try:
                future.result(timeout=SHUTDOWN_TIMEOUT)
            except Exception as e:
                _logger.debug("Error during shutdown: %s", e)
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=2.0)

        self._loop = None
        self._thread = None
        self._drop_socket()
        _logger.debug("Disconnected")

    def send(self, message: str) -> None:
        """Transmit now when ready, otherwise queue (newest dropped when full)."""
        with self._lock:
            ws = self._ws
            if self._state is ConnectionState.READY and _is_open(ws):
                self._transmit(ws, message)
                return
            if len(self._queue) >= MAX_QUEUE_SIZE:
                _logger.debug("Send queue full, dropping message")
                return
            self._queue.append(message)

    def send_exception(self, report: ExceptionReport) -> None:
        """Wrap a report in the exception envelope and send it."""
        payload = report.to_dict()
        payload.update(
            {
                "agent_id": self.config.agent_id,
                "environment": self.config.environment,
                "runtime": "python",
                "runtime_info": self.config.get_runtime_info(),
            }
        )
        try:
            message = json.dumps(
                {"type": "exception", "payload": payload, "timestamp": _now_ms()},
                ensure_ascii=False,
                default=str,
            )
        except (TypeError, ValueError) as e:
            _logger.debug("Dropping unencodable report %s: %s", report.id, e)
            return
        self.send(message)

    # -- event loop thread ------------------------------------------------

    def _ensure_loop(self) -> asyncio.AbstractEventLoop | None:
        if self._loop is not None and self._thread is not None and self._thread.is_alive():
            return self._loop

        self._loop = None
        self._loop_ready.clear()
        self._thread = threading.Thread(
            target=self._run_event_loop,
            daemon=True,
            name="crashwire-transport",
        )
        self._thread.start()
        if not self._loop_ready.wait(timeout=5.0):
            return None
        return self._loop

    def _run_event_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        loop.call_soon(self._loop_ready.set)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def _open(self) -> None:
        self._cancel_reconnect()
        if self._closing or self._state is not ConnectionState.DISCONNECTED:
            return
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run_connection())

    async def _run_connection(self) -> None:
        try:
            async with ws_connect(self.config.backend_url) as ws:
                _logger.debug("WebSocket connected")
                self._on_open(ws)
                async for raw in ws:
                    self._handle_message(raw)
                _logger.debug("WebSocket closed: %s", ws.close_code)
        except Exception as e:
            _logger.debug("Connection error: %s", e)
        self._on_close()

    async def _shutdown(self) -> None:
        self._cancel_reconnect()
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close(1000, "Agent shutdown")
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # -- state machine ----------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state

    def _drop_socket(self) -> None:
        with self._lock:
            self._ws = None
            self._state = ConnectionState.DISCONNECTED

    def _on_open(self, ws: Any) -> None:
        with self._lock:
            self._ws = ws
            self._state = ConnectionState.AUTHENTICATING
        self.reconnect_attempts = 0
        self._authenticate(ws)

    def _authenticate(self, ws: Any) -> None:
        message = json.dumps(
            {
                "type": "register",
                "payload": {
                    "api_key": self.config.api_key,
                    "agent_id": self.config.agent_id,
                    "hostname": self.config.hostname,
                    "runtime": "python",
                    "runtime_version": platform.python_version(),
                    "agent_version": _agent_version(),
                    "environment": self.config.environment,
                },
                "timestamp": _now_ms(),
            }
        )
        self._transmit(ws, message)

    def _handle_message(self, data: str | bytes) -> None:
        try:
            message = json.loads(data)
        except ValueError as e:
            _logger.debug("Failed to parse message: %s", e)
            return
        if not isinstance(message, dict):
            _logger.debug("Ignoring non-object message")
            return

        msg_type = message.get("type")
        _logger.debug("Received: %s", msg_type)

        if msg_type == "registered":
            with self._lock:
                self._state = ConnectionState.READY
                self._flush_queue()
            _logger.debug("Agent registered")
        elif msg_type == "error":
            payload = message.get("payload")
            detail = payload.get("message") if isinstance(payload, dict) else None
            _logger.warning("Backend error: %s", detail)

    def _flush_queue(self) -> None:
        # Caller holds self._lock.
        ws = self._ws
        while self._queue and _is_open(ws):
            self._transmit(ws, self._queue.popleft())

    def _on_close(self) -> None:
        self._drop_socket()
        if self._closing:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> int | None:
        """Arm the reconnect timer; returns the delay in ms, or None when giving up."""
        if self.reconnect_attempts >= MAX_RECONNECT_ATTEMPTS:
            _logger.debug("Max reconnect attempts reached")
            return None

        delay = reconnect_delay(self.reconnect_attempts)
        self.reconnect_attempts += 1
        _logger.debug("Reconnecting in %dms (attempt %d)", delay, self.reconnect_attempts)

        self._cancel_reconnect()
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay / 1000, self._open)
        return delay

    def _transmit(self, ws: Any, message: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            _logger.debug("Transport loop gone, dropping message")
            return
        future = asyncio.run_coroutine_threadsafe(ws.send(message), loop)
        future.add_done_callback(_log_send_failure)


def _is_open(ws: Any) -> bool:
    return ws is not None and ws.state is State.OPEN


def _log_send_failure(future: Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        _logger.debug("Send failed: %s", exc)
