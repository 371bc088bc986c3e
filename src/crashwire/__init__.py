"""In-process error capture streamed to a remote collector."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Callable
from typing import Any

from .agent import Agent
from .capture import ExceptionReport, crash_frame_locals
from .config import AgentConfig
from .serialize import UNDEFINED, CapturedVariable
from .stacktrace import StackFrame

__version__ = "0.1.0"
__all__ = [
    "Agent",
    "AgentConfig",
    "CapturedVariable",
    "ExceptionReport",
    "StackFrame",
    "UNDEFINED",
    "capture_errors",
    "capture_exception",
    "capture_section",
    "get_agent",
    "init",
    "is_initialized",
    "set_context",
    "set_user",
    "shutdown",
]

_logger = logging.getLogger(__name__)

_agent: Agent | None = None


def init(loop: asyncio.AbstractEventLoop | None = None, **options: Any) -> Agent | None:
    """Initialize the default agent.

    ``loop`` is an already created event loop to hook; loops created later,
    such as the one ``asyncio.run`` makes, are hooked automatically. Options
    are ``AgentConfig`` fields; unset ones fall back to CRASHWIRE_*
    environment variables and then to defaults.

    Usage:
        crashwire.init(api_key="...", environment="staging")
    """
    global _agent
    if _agent is not None:
        _logger.info("Agent already initialized")
        return _agent

    agent = Agent(AgentConfig.from_env(**options))
    if not agent.start(loop):
        return None
    _agent = agent
    return agent


def get_agent() -> Agent | None:
    return _agent


def is_initialized() -> bool:
    return _agent is not None


def capture_exception(
    error: BaseException,
    context: dict[str, Any] | None = None,
    local_vars: dict[str, Any] | None = None,
) -> ExceptionReport | None:
    """Manually capture an exception.

    Args:
        error: The exception to report
        context: Extra context merged over the custom context
        local_vars: Variables to serialize into the report
    """
    if _agent is None:
        _logger.warning("Agent not initialized")
        return None
    return _agent.capture(error, context, local_vars)


def set_context(context: dict[str, Any]) -> None:
    """Set custom context sent with every capture."""
    if _agent is None:
        _logger.warning("Agent not initialized")
        return
    _agent.set_context(context)


def set_user(user: dict[str, Any]) -> None:
    """Set the current user for context."""
    if _agent is None:
        _logger.warning("Agent not initialized")
        return
    _agent.set_user(user)


def shutdown() -> None:
    """Shut down the default agent; ``init`` may be called again afterwards."""
    global _agent
    if _agent is None:
        return
    _agent.shutdown()
    _agent = None


def _capture_active(name: str, exc: BaseException, kind: str) -> None:
    agent = _agent
    if agent is None:
        return
    try:
        agent.capture(exc, {kind: name}, crash_frame_locals(exc.__traceback__))
    except Exception:
        _logger.debug("capture failed for %s", name)


def capture_errors(
    *, name: str | None = None
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator that reports exceptions, with the crash frame's locals.

    The exception is always re-raised. Does nothing while no agent is
    initialized.

    Usage:
        @capture_errors()
        def main():
            ...
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        fn_name = name or getattr(fn, "__qualname__", fn.__name__)

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                _capture_active(fn_name, e, "function")
                raise

        return wrapper

    return decorator


@contextlib.contextmanager
def capture_section(section_name: str):
    """Context manager that reports exceptions raised inside the block.

    Usage:
        with capture_section("data_loading"):
            ...
    """
    try:
        yield
    except Exception as e:
        _capture_active(section_name, e, "section")
        raise
