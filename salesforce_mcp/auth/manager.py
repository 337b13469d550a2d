"""Tries authentication strategies in priority order."""
import logging
from typing import List, Optional, Sequence

from salesforce_mcp.auth.strategies import (
    AuthStrategy,
    OAuth2Strategy,
    UsernamePasswordStrategy,
)
from salesforce_mcp.config import Settings
from salesforce_mcp.errors import AuthenticationError, ConfigurationError
from salesforce_mcp.services.session import SalesforceSession

logger = logging.getLogger(__name__)


class AuthenticationManager:
    """Returns the first session produced by an eligible strategy.

    Per-strategy failure details are logged but not surfaced: the caller only
    learns that every eligible strategy failed.
    """

    def __init__(
        self,
        strategies: Sequence[AuthStrategy],
        required_variables: Optional[List[str]] = None,
    ):
        self._strategies = list(strategies)
        self._required_variables = list(required_variables or [])

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthenticationManager":
        strategies: List[AuthStrategy] = [
            OAuth2Strategy(settings.oauth, settings.api_version, timeout=settings.timeout_seconds),
            UsernamePasswordStrategy(settings.password, settings.api_version),
        ]
        return cls(strategies, required_variables=settings.missing_variables())

    @property
    def strategies(self) -> List[AuthStrategy]:
        return list(self._strategies)

    def available_strategies(self) -> List[str]:
        return [s.name for s in self._strategies if s.can_authenticate()]

    async def authenticate(self) -> SalesforceSession:
        eligible = [s for s in self._strategies if s.can_authenticate()]
        if not eligible:
            missing = ", ".join(self._required_variables) or "credential variables"
            raise ConfigurationError(
                f"No authentication strategy is configured. Missing: {missing}",
                missing_variables=self._required_variables,
            )

        for strategy in eligible:
            logger.info("Attempting authentication with %s", strategy.name)
            try:
                session = await strategy.authenticate()
            except AuthenticationError as e:
                logger.error("%s authentication failed: %s", strategy.name, e)
                continue
            logger.info("✅ Authenticated with %s", strategy.name)
            return session

        raise AuthenticationError(
            "All authentication strategies failed",
            failure_kind="all-strategies-failed",
            remediation="See the server log for per-strategy details",
        )
