"""Agent configuration and identity."""

from __future__ import annotations

import os
import platform
import random
import socket
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

DEFAULT_BACKEND_URL = "ws://localhost:8765/ws/agent"

_TRUTHY = {"1", "true", "yes", "on"}


def _new_agent_id() -> str:
    return f"agent-{int(time.time() * 1000):x}-{uuid.uuid4().hex[:8]}"


@dataclass
class AgentConfig:
    """Configuration shared by the capture pipeline and the transport.

    Everything except the custom context and the current user is fixed
    after construction.
    """

    api_key: str = ""
    backend_url: str = DEFAULT_BACKEND_URL
    environment: str = "production"
    sampling_rate: float = 1.0
    max_capture_depth: int = 10
    max_string_length: int = 1000
    max_collection_size: int = 100
    debug: bool = False
    hostname: str = field(default_factory=socket.gethostname)
    agent_id: str = field(default_factory=_new_agent_id)
    _custom_context: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _user: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_capture_depth < 0:
            raise ValueError("max_capture_depth must be >= 0")
        if self.max_string_length < 0:
            raise ValueError("max_string_length must be >= 0")
        if self.max_collection_size < 0:
            raise ValueError("max_collection_size must be >= 0")

    @classmethod
    def from_env(cls, **overrides: Any) -> AgentConfig:
        """Build a config from CRASHWIRE_* variables; non-None overrides win."""
        env = os.environ
        values: dict[str, Any] = {}

        if "CRASHWIRE_API_KEY" in env:
            values["api_key"] = env["CRASHWIRE_API_KEY"]
        if "CRASHWIRE_BACKEND_URL" in env:
            values["backend_url"] = env["CRASHWIRE_BACKEND_URL"]
        if "CRASHWIRE_ENVIRONMENT" in env:
            values["environment"] = env["CRASHWIRE_ENVIRONMENT"]
        if "CRASHWIRE_SAMPLING_RATE" in env:
            values["sampling_rate"] = float(env["CRASHWIRE_SAMPLING_RATE"])
        if "CRASHWIRE_MAX_DEPTH" in env:
            values["max_capture_depth"] = int(env["CRASHWIRE_MAX_DEPTH"])
        if "CRASHWIRE_MAX_STRING_LENGTH" in env:
            values["max_string_length"] = int(env["CRASHWIRE_MAX_STRING_LENGTH"])
        if "CRASHWIRE_MAX_COLLECTION_SIZE" in env:
            values["max_collection_size"] = int(env["CRASHWIRE_MAX_COLLECTION_SIZE"])
        if "CRASHWIRE_DEBUG" in env:
            values["debug"] = env["CRASHWIRE_DEBUG"].lower() in _TRUTHY

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def should_sample(self) -> bool:
        """Decide whether the next eligible error is reported."""
        if self.sampling_rate >= 1.0:
            return True
        if self.sampling_rate <= 0.0:
            return False
        return random.random() < self.sampling_rate

    def set_custom_context(self, context: dict[str, Any]) -> None:
        self._custom_context = dict(context)

    def get_custom_context(self) -> dict[str, Any]:
        return dict(self._custom_context)

    def set_user(self, user: dict[str, Any]) -> None:
        self._user = dict(user)

    def get_user(self) -> dict[str, Any]:
        return dict(self._user)

    def get_runtime_info(self) -> dict[str, str]:
        """Describe the interpreter the agent is running in."""
        return {
            "runtime": "python",
            "runtime_version": platform.python_version(),
            "implementation": platform.python_implementation(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
        }
