"""Core exception capture logic."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import sys
import threading
import traceback
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import timezone
from types import TracebackType
from typing import TYPE_CHECKING, Any

from .fingerprint import calculate_fingerprint
from .serialize import CapturedVariable, serialize_variables
from .stacktrace import StackFrame, parse_stack_trace

if TYPE_CHECKING:
    from .config import AgentConfig
    from .transport import BackendConnection

_logger = logging.getLogger(__name__)

ORIGIN_ERROR = "error"
ORIGIN_UNHANDLED_REJECTION = "unhandledrejection"


@dataclass(frozen=True)
class ExceptionReport:
    """Everything captured about one exception, ready to transmit."""

    id: str
    exception_type: str
    message: str
    fingerprint: str
    stack_trace: list[StackFrame]
    local_variables: dict[str, CapturedVariable] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    captured_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "exception_type": self.exception_type,
            "message": self.message,
            "fingerprint": self.fingerprint,
            "stack_trace": [f.to_dict() for f in self.stack_trace],
            "local_variables": {k: v.to_dict() for k, v in self.local_variables.items()},
            "context": self.context,
            "captured_at": self.captured_at,
        }


def _timestamp() -> str:
    return dt.datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _as_exception(error: Any) -> BaseException:
    if isinstance(error, BaseException):
        return error
    return Exception(str(error))


def format_trace(exc: BaseException) -> str:
    """Render the exception's own traceback (no chained causes) as text."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__, chain=False))


def crash_frame_locals(tb: TracebackType | None) -> dict[str, Any]:
    """Locals of the innermost frame of a traceback, dunder names skipped."""
    if tb is None:
        return {}
    while tb.tb_next is not None:
        tb = tb.tb_next
    return {
        name: value
        for name, value in tb.tb_frame.f_locals.items()
        if not (name.startswith("__") and name.endswith("__"))
    }


class ExceptionHandler:
    """Turns exceptions into reports and hands them to the transport.

    Manual captures go through ``capture``; the hooks installed by
    ``install`` go through ``handle``. Neither ever raises.
    """

    def __init__(self, config: AgentConfig, connection: BackendConnection):
        self.config = config
        self.connection = connection
        self.installed = False
        self._previous_excepthook: Any = None
        self._previous_threading_excepthook: Any = None
        self._previous_new_event_loop: Any = None
        # loop -> exception handler it had before hook_loop
        self._loops: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Any] = (
            weakref.WeakKeyDictionary()
        )

    # -- hooks ------------------------------------------------------------

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Hook uncaught exceptions; repeat calls are no-ops.

        Synchronous errors are taken from ``sys.excepthook`` and
        ``threading.excepthook``. Unretrieved task/future exceptions are taken
        from the exception handler of ``loop`` (or the running loop, if any)
        and of every event loop created while installed, ``asyncio.run``
        included.
        """
        if self.installed:
            return

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

        self._previous_threading_excepthook = threading.excepthook
        threading.excepthook = self._threading_excepthook

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            self.hook_loop(loop)

        self._previous_new_event_loop = asyncio.events.new_event_loop
        asyncio.events.new_event_loop = self._new_event_loop
        asyncio.new_event_loop = self._new_event_loop

        self.installed = True
        _logger.debug("Exception handlers installed")

    def uninstall(self) -> None:
        """Restore the hooks that were active before ``install``."""
        if not self.installed:
            return

        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook
        if threading.excepthook == self._threading_excepthook:
            threading.excepthook = self._previous_threading_excepthook
        if asyncio.events.new_event_loop == self._new_event_loop:
            asyncio.events.new_event_loop = self._previous_new_event_loop
        if asyncio.new_event_loop == self._new_event_loop:
            asyncio.new_event_loop = self._previous_new_event_loop
        for loop, previous in list(self._loops.items()):
            if not loop.is_closed() and loop.get_exception_handler() == self._loop_exception_handler:
                loop.set_exception_handler(previous)
        self._loops.clear()

        self._previous_excepthook = None
        self._previous_threading_excepthook = None
        self.installed = False
        _logger.debug("Exception handlers uninstalled")

    def hook_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route ``loop``'s unhandled exceptions through this handler."""
        if loop in self._loops:
            return
        self._loops[loop] = loop.get_exception_handler()
        loop.set_exception_handler(self._loop_exception_handler)

    def _new_event_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._previous_new_event_loop()
        if self.installed:
            self.hook_loop(loop)
        return loop

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            self.handle(exc, {"origin": ORIGIN_ERROR})
        previous = self._previous_excepthook or sys.__excepthook__
        previous(exc_type, exc, tb)

    def _threading_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_value is not None and not issubclass(args.exc_type, SystemExit):
            thread_name = args.thread.name if args.thread is not None else None
            self.handle(args.exc_value, {"origin": ORIGIN_ERROR, "thread": thread_name})
        previous = self._previous_threading_excepthook or threading.__excepthook__
        previous(args)

    def _loop_exception_handler(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        error = context.get("exception") or context.get("message", "Unhandled error in event loop")
        self.handle(error, {"origin": ORIGIN_UNHANDLED_REJECTION})
        previous = self._loops.get(loop)
        if previous is not None:
            previous(loop, context)
        else:
            loop.default_exception_handler(context)

    # -- capture ----------------------------------------------------------

    def capture(
        self,
        error: Any,
        context: dict[str, Any] | None = None,
        local_vars: dict[str, Any] | None = None,
    ) -> ExceptionReport | None:
        """Capture an exception with optional call-site context and locals."""
        if not self.config.should_sample():
            return None
        try:
            local_variables = serialize_variables(local_vars, self.config) if local_vars else {}
            report = self.create_report(error, context, local_variables)
            self.connection.send_exception(report)
            return report
        except Exception as e:
            _logger.debug("Capture failed: %s", e)
            return None

    def handle(self, error: Any, origin_context: dict[str, Any] | None = None) -> ExceptionReport | None:
        """Capture path used by the installed hooks; locals are not collected."""
        if not self.config.should_sample():
            return None
        try:
            report = self.create_report(error, origin_context)
            self.connection.send_exception(report)
            return report
        except Exception as e:
            _logger.debug("Capture failed: %s", e)
            return None

    def create_report(
        self,
        error: Any,
        context: dict[str, Any] | None = None,
        local_variables: dict[str, CapturedVariable] | None = None,
    ) -> ExceptionReport:
        exc = _as_exception(error)
        exception_type = type(exc).__name__ or "Error"
        stack_trace = parse_stack_trace(format_trace(exc))

        return ExceptionReport(
            id=str(uuid.uuid4()),
            exception_type=exception_type,
            message=str(exc),
            fingerprint=calculate_fingerprint(exception_type, stack_trace),
            stack_trace=stack_trace,
            local_variables=local_variables or {},
            context={
                **self.config.get_custom_context(),
                **(context or {}),
                "user": self.config.get_user(),
            },
            captured_at=_timestamp(),
        )
