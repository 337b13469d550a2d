"""Tests for SessionManager health checks, token recovery and invalidation."""
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
from simple_salesforce.exceptions import SalesforceExpiredSession

from salesforce_mcp.errors import AuthenticationError, SalesforceConnectionError
from salesforce_mcp.services import session as session_module
from salesforce_mcp.services.metadata import MetadataService
from salesforce_mcp.services.salesforce import HEALTH_CHECK_INTERVAL, SessionManager
from salesforce_mcp.services.session import SalesforceSession


class StubSession:
    """Minimal session exposing the hooks SessionManager relies on."""

    def __init__(self, name, can_refresh=True):
        self.name = name
        self.instance_url = f"https://{name}.my.salesforce.com"
        self.strategy_name = "OAuth2"
        self.can_refresh = can_refresh
        self.trial_round_trip = AsyncMock()
        self.refresh = AsyncMock()
        self.refresh_handlers = []
        self.error_handlers = []

    def on_refresh(self, handler):
        self.refresh_handlers.append(handler)

    def on_error(self, handler):
        self.error_handlers.append(handler)


class StubAuthManager:
    def __init__(self, *sessions, error=None):
        self._sessions = list(sessions)
        self._error = error
        self.calls = 0

    async def authenticate(self):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return self._sessions.pop(0)

    def available_strategies(self):
        return ["OAuth2"]


def _expired():
    return SalesforceExpiredSession(
        "https://acme.my.salesforce.com/services/data/v59.0/query", 401, "query",
        [{"message": "Session expired or invalid", "errorCode": "INVALID_SESSION_ID"}],
    )


def _live_session(refresher=None):
    client = MagicMock(name="Salesforce")
    client.sf_instance = "acme.my.salesforce.com"
    client.sf_version = "59.0"
    client.session_id = "00Dxx!token"
    client.base_url = "https://acme.my.salesforce.com/services/data/v59.0/"
    return SalesforceSession(client, "OAuth2", refresher=refresher)


@pytest.mark.asyncio
async def test_first_call_authenticates(fake_clock):
    first = StubSession("a")
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)

    assert await manager.get_session() is first
    assert auth.calls == 1
    assert manager.info()["connected"] is True


@pytest.mark.asyncio
async def test_reuses_session_within_interval(fake_clock):
    first = StubSession("a")
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)

    s1 = await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL - 1)
    s2 = await manager.get_session()

    assert s1 is s2
    assert auth.calls == 1
    first.trial_round_trip.assert_not_awaited()


@pytest.mark.asyncio
async def test_revalidates_once_after_interval(fake_clock):
    first = StubSession("a")
    manager = SessionManager(StubAuthManager(first), clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)
    assert await manager.get_session() is first
    assert await manager.get_session() is first

    assert first.trial_round_trip.await_count == 1
    assert not manager.needs_health_check()


@pytest.mark.asyncio
async def test_expired_token_recovered_by_refresh(fake_clock):
    first = StubSession("a")
    first.trial_round_trip.side_effect = [_expired(), None]
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)
    assert await manager.get_session() is first

    first.refresh.assert_awaited_once()
    assert first.trial_round_trip.await_count == 2
    assert auth.calls == 1


@pytest.mark.asyncio
async def test_failed_refresh_retry_discards_and_reauthenticates(fake_clock):
    first = StubSession("a")
    first.trial_round_trip.side_effect = [_expired(), _expired()]
    second = StubSession("b")
    auth = StubAuthManager(first, second)
    manager = SessionManager(auth, clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)
    session = await manager.get_session()

    assert session is second
    first.refresh.assert_awaited_once()
    assert first.trial_round_trip.await_count == 2
    assert auth.calls == 2


@pytest.mark.asyncio
async def test_non_token_failure_skips_refresh(fake_clock):
    first = StubSession("a")
    first.trial_round_trip.side_effect = ConnectionError("connection refused")
    second = StubSession("b")
    auth = StubAuthManager(first, second)
    manager = SessionManager(auth, clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)

    assert await manager.get_session() is second
    first.refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_error_notification_discards_session(fake_clock):
    first = StubSession("a")
    second = StubSession("b")
    auth = StubAuthManager(first, second)
    manager = SessionManager(auth, clock=fake_clock)

    await manager.get_session()
    for handler in first.error_handlers:
        handler(first, SalesforceConnectionError("session expired"))

    assert manager.session is None
    assert await manager.get_session() is second
    assert auth.calls == 2


@pytest.mark.asyncio
async def test_refresh_notification_marks_check(fake_clock):
    first = StubSession("a")
    manager = SessionManager(StubAuthManager(first), clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)
    assert manager.needs_health_check()
    for handler in first.refresh_handlers:
        handler(first)

    assert not manager.needs_health_check()


@pytest.mark.asyncio
async def test_reconnect_failure_propagates(fake_clock):
    auth = StubAuthManager(error=AuthenticationError("All authentication strategies failed"))
    manager = SessionManager(auth, clock=fake_clock)

    with pytest.raises(AuthenticationError):
        await manager.get_session()
    assert manager.session is None


@pytest.mark.asyncio
async def test_close_session_is_idempotent(fake_clock):
    manager = SessionManager(StubAuthManager(StubSession("a")), clock=fake_clock)
    await manager.get_session()

    manager.close_session()
    manager.close_session()

    assert manager.session is None
    assert manager.needs_health_check()
    assert manager.info()["lastHealthCheck"] is None


@pytest.mark.asyncio
async def test_ensure_healthy_session_checks_inside_interval(fake_clock):
    first = StubSession("a")
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(1)
    assert await manager.ensure_healthy_session() is first

    first.trial_round_trip.assert_awaited_once()
    assert auth.calls == 1


@pytest.mark.asyncio
async def test_ensure_healthy_session_authenticates_when_empty(fake_clock):
    first = StubSession("a")
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)

    assert await manager.ensure_healthy_session() is first
    assert auth.calls == 1
    first.trial_round_trip.assert_not_awaited()


# --- With a real SalesforceSession ---

@pytest.mark.asyncio
async def test_connection_failure_in_execute_discards_session(fake_clock):
    first = _live_session()
    first.client.query.side_effect = _expired()
    second = _live_session()
    auth = StubAuthManager(first, second)
    manager = SessionManager(auth, clock=fake_clock)

    session = await manager.get_session()
    with pytest.raises(SalesforceConnectionError):
        await session.execute(lambda sf: sf.query("SELECT Id FROM Account"))

    assert manager.session is None
    assert await manager.get_session() is second
    assert auth.calls == 2


@pytest.mark.asyncio
async def test_refresh_rebuilds_client_and_marks_check(fake_clock, monkeypatch):
    fresh_client = MagicMock(name="RefreshedSalesforce")
    factory = MagicMock(return_value=fresh_client)
    monkeypatch.setattr(session_module, "Salesforce", factory)
    first = _live_session(refresher=MagicMock(return_value="00Dxx!fresh"))
    old_client = first.client
    manager = SessionManager(StubAuthManager(first), clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)
    await first.refresh()

    assert first.client is fresh_client
    factory.assert_called_once_with(
        instance_url="https://acme.my.salesforce.com",
        session_id="00Dxx!fresh",
        version="59.0",
        session=old_client.session,
    )
    assert manager.session is first
    assert not manager.needs_health_check()


@pytest.mark.asyncio
async def test_health_check_heals_expired_token_in_place(fake_clock, monkeypatch):
    fresh_client = MagicMock(name="RefreshedSalesforce")
    monkeypatch.setattr(session_module, "Salesforce", MagicMock(return_value=fresh_client))
    first = _live_session(refresher=MagicMock(return_value="00Dxx!fresh"))
    first.client.query.side_effect = _expired()
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)

    await manager.get_session()
    fake_clock.advance(HEALTH_CHECK_INTERVAL + 1)

    assert await manager.get_session() is first
    assert first.client is fresh_client
    fresh_client.query.assert_called_once_with("SELECT Id FROM Organization LIMIT 1")
    assert auth.calls == 1


@pytest.mark.asyncio
async def test_expired_session_on_metadata_rest_call_discards_session(fake_clock, poller):
    first = _live_session()
    auth = StubAuthManager(first)
    manager = SessionManager(auth, clock=fake_clock)
    response = MagicMock(status_code=401)
    response.json.return_value = [{"errorCode": "INVALID_SESSION_ID", "message": "Session expired or invalid"}]
    response.raise_for_status.side_effect = requests.HTTPError("401 Client Error: Unauthorized", response=response)
    http = MagicMock(name="requests")
    http.get.return_value = response
    service = MetadataService(manager, poller, http=http)

    with pytest.raises(SalesforceConnectionError) as excinfo:
        await service.get_deploy_status("0Af000000000001AAA")

    assert excinfo.value.error_code == "INVALID_SESSION_ID"
    assert excinfo.value.status_code == 401
    assert manager.session is None
