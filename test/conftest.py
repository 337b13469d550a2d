"""Shared fakes for the Salesforce MCP tests.

Nothing here talks to Salesforce: the client is a MagicMock, sessions run the
client call inline, and the clock/sleep are controlled by the test.
"""
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest

from salesforce_mcp.errors import translate_remote_error
from salesforce_mcp.services.polling import JobPoller

USER_ID = "005000000000001AAA"


class FakeSession:
    """Stands in for SalesforceSession; ``execute`` runs ``fn(client)`` inline."""

    def __init__(self, client=None, user_id=USER_ID, api_version="59.0"):
        self.client = client if client is not None else MagicMock()
        self.user_id = user_id
        self.api_version = api_version
        self.strategy_name = "Fake"
        self.instance_url = "https://example.my.salesforce.com"
        self.execute_calls = 0

    async def execute(self, fn):
        self.execute_calls += 1
        try:
            return fn(self.client)
        except Exception as e:
            translated = translate_remote_error(e)
            if translated is e:
                raise
            raise translated from e

    def describe(self) -> Dict[str, Any]:
        return {"instanceUrl": self.instance_url, "apiVersion": self.api_version,
                "strategy": self.strategy_name, "userId": self.user_id}


class FakeSessionManager:
    def __init__(self, session: FakeSession):
        self.session = session
        self.get_calls = 0
        self.health_checks = 0
        self.closed = False

    async def get_session(self):
        self.get_calls += 1
        return self.session

    async def ensure_healthy_session(self):
        self.health_checks += 1
        return self.session

    def close_session(self):
        self.closed = True

    def info(self):
        return {"connected": True, "lastHealthCheck": None, "availableStrategies": ["Fake"]}


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InstantSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def client():
    return MagicMock(name="Salesforce")


@pytest.fixture
def session(client):
    return FakeSession(client)


@pytest.fixture
def session_manager(session):
    return FakeSessionManager(session)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def instant_sleep():
    return InstantSleep()


@pytest.fixture
def poller(instant_sleep):
    return JobPoller(interval=5.0, max_attempts=60, sleep=instant_sleep)
