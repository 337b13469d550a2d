"""Salesforce session management.

Owns the single shared :class:`SalesforceSession`, re-validates it on a fixed
interval, heals stale tokens in place where possible and otherwise falls back
to full re-authentication.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from salesforce_mcp.auth.manager import AuthenticationManager
from salesforce_mcp.errors import is_token_error
from salesforce_mcp.services.session import SalesforceSession

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = 5 * 60  # seconds


class SessionManager:
    def __init__(
        self,
        auth_manager: AuthenticationManager,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._auth_manager = auth_manager
        self._interval = health_check_interval
        self._clock = clock
        self._session: Optional[SalesforceSession] = None
        self._last_check: Optional[float] = None
        self._last_check_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[SalesforceSession]:
        return self._session

    def needs_health_check(self) -> bool:
        if self._last_check is None:
            return True
        return self._clock() - self._last_check > self._interval

    def _is_fresh(self) -> bool:
        return self._session is not None and not self.needs_health_check()

    async def get_session(self) -> SalesforceSession:
        """Return a live session, validating or re-creating it when due.

        Raises:
            AuthenticationError, SalesforceConnectionError, ConfigurationError:
                reconnecting failed.
        """
        if self._is_fresh():
            return self._session
        async with self._lock:
            if self._is_fresh():
                return self._session
            return await self._ensure_healthy()

    async def ensure_healthy_session(self) -> SalesforceSession:
        """Validate now, ignoring the health-check interval."""
        async with self._lock:
            return await self._ensure_healthy()

    async def _ensure_healthy(self) -> SalesforceSession:
        if self._session is not None:
            try:
                await self._validate(self._session)
                self._mark_checked()
                logger.info("Connection health check passed")
                return self._session
            except Exception as e:
                logger.warning("Health check failed, reconnecting: %s", e)
                self._discard()

        logger.info("🔗 Creating new Salesforce session...")
        session = await self._auth_manager.authenticate()
        self._install(session)
        logger.info("✅ Connected to %s via %s", session.instance_url, session.strategy_name)
        return session

    async def _validate(self, session: SalesforceSession) -> None:
        try:
            await session.trial_round_trip()
        except Exception as e:
            if not (is_token_error(e) and session.can_refresh):
                raise
            logger.warning("Token error during health check, forcing token refresh: %s", e)
            await session.refresh()
            await session.trial_round_trip()
            logger.info("Recovered from token error")

    def _install(self, session: SalesforceSession) -> None:
        self._session = session
        self._mark_checked()
        session.on_refresh(self._handle_refresh)
        session.on_error(self._handle_error)

    def _mark_checked(self) -> None:
        self._last_check = self._clock()
        self._last_check_at = datetime.now(timezone.utc)

    def _discard(self) -> None:
        self._session = None
        self._last_check = None
        self._last_check_at = None

    def _handle_refresh(self, session: SalesforceSession) -> None:
        if session is self._session:
            self._mark_checked()

    def _handle_error(self, session: SalesforceSession, error: BaseException) -> None:
        if session is self._session:
            logger.error("Connection error, invalidating session: %s", error)
            self._discard()

    def close_session(self) -> None:
        """Drop the session (idempotent)."""
        if self._session is not None:
            logger.info("Closing Salesforce session...")
        self._discard()

    def info(self) -> Dict[str, Any]:
        return {
            "connected": self._session is not None,
            "lastHealthCheck": self._last_check_at.isoformat() if self._last_check_at else None,
            "availableStrategies": self._auth_manager.available_strategies(),
        }
