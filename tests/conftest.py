"""Shared fixtures."""

import pytest

import crashwire
from crashwire.agent import Agent
from crashwire.config import AgentConfig


class RecordingConnection:
    """Stands in for BackendConnection and keeps what it was given."""

    def __init__(self):
        self.reports = []
        self.connected = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def send_exception(self, report):
        self.reports.append(report)


@pytest.fixture
def connection():
    return RecordingConnection()


@pytest.fixture
def config():
    return AgentConfig(api_key="test-key", environment="test")


@pytest.fixture
def agent(config, connection, monkeypatch):
    """An active default agent wired to a recording connection."""
    agent = Agent(config, connection=connection)
    assert agent.start()
    monkeypatch.setattr(crashwire, "_agent", agent)
    yield agent
    agent.shutdown()
