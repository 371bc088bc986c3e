"""Pytest plugin reporting failing tests through an active agent."""

from __future__ import annotations

import logging
import sys

import pytest

from . import get_agent
from .capture import crash_frame_locals
from .serialize import safe_repr

_logger = logging.getLogger(__name__)


def pytest_configure(config):
    """Register the no_crashwire marker."""
    config.addinivalue_line(
        "markers",
        "no_crashwire: do not report this test's failure to crashwire",
    )


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Capture the failure of a test call when an agent is active."""
    outcome = yield
    report = outcome.get_result()

    # Only test call failures (not setup/teardown)
    if report.when != "call" or not report.failed:
        return

    if item.get_closest_marker("no_crashwire"):
        return

    if call.excinfo is None:
        return

    agent = get_agent()
    if agent is None or not agent.active:
        return

    exc = call.excinfo.value
    tb = call.excinfo.tb

    params = None
    callspec = getattr(item, "callspec", None)
    if callspec is not None:
        max_len = agent.config.max_string_length
        params = {k: safe_repr(v, max_len) for k, v in callspec.params.items()}

    pytest_context = {
        "nodeid": report.nodeid,
        "outcome": report.outcome,
        "when": report.when,
        "params": params,
        "repro": [sys.executable, "-m", "pytest", report.nodeid, "-q"],
    }
    try:
        agent.capture(exc, {"pytest": pytest_context}, crash_frame_locals(tb))
    except Exception:
        _logger.debug("capture failed for %s", report.nodeid)
