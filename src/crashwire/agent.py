"""Agent lifecycle: one config, connection and handler per instance."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .capture import ExceptionHandler, ExceptionReport
from .config import AgentConfig
from .log import configure_logging
from .transport import BackendConnection

_logger = logging.getLogger(__name__)


class Agent:
    """Explicit context object behind the module-level API.

    Lifecycle: construct -> start() -> active -> shutdown() -> start() again.
    """

    def __init__(self, config: AgentConfig, connection: BackendConnection | None = None):
        self.config = config
        self.connection = connection if connection is not None else BackendConnection(config)
        self.handler = ExceptionHandler(config, self.connection)
        self.active = False

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Connect and install hooks. Returns False when no API key is configured."""
        if self.active:
            _logger.info("Agent already initialized")
            return True

        configure_logging(self.config.debug)

        if not self.config.api_key:
            _logger.warning(
                "API key is required. Set CRASHWIRE_API_KEY or pass api_key."
            )
            return False

        self.connection.connect()
        self.handler.install(loop)
        self.active = True

        from . import __version__

        _logger.info("Agent v%s initialized (environment: %s)", __version__, self.config.environment)
        return True

    def capture(
        self,
        error: Any,
        context: dict[str, Any] | None = None,
        local_vars: dict[str, Any] | None = None,
    ) -> ExceptionReport | None:
        if not self.active:
            _logger.warning("Agent not initialized")
            return None
        return self.handler.capture(error, context, local_vars)

    def set_context(self, context: dict[str, Any]) -> None:
        """Replace the custom context sent with every capture."""
        self.config.set_custom_context(context)

    def set_user(self, user: dict[str, Any]) -> None:
        self.config.set_user(user)

    def shutdown(self) -> None:
        if not self.active:
            return
        _logger.info("Shutting down agent")
        self.handler.uninstall()
        self.connection.disconnect()
        self.active = False
