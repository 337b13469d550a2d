"""Authentication strategies.

Each strategy answers three questions: what it is called, whether it has
enough credentials to try, and how to turn those credentials into a live,
verified :class:`~salesforce_mcp.services.session.SalesforceSession`.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import urlparse

import requests
from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

from salesforce_mcp.config import OAuthCredentials, PasswordCredentials
from salesforce_mcp.errors import (
    AuthenticationError,
    is_network_error,
    is_token_error,
)
from salesforce_mcp.services.session import SalesforceSession
from salesforce_mcp.services.soql import soql_quote

logger = logging.getLogger(__name__)


class AuthStrategy(Protocol):
    name: str

    def can_authenticate(self) -> bool:
        ...

    async def authenticate(self) -> SalesforceSession:
        ...


class TokenRequestError(Exception):
    """The OAuth2 token endpoint answered with an error payload."""


def classify_oauth_failure(error: BaseException) -> Tuple[str, str, str]:
    """Return ``(failure_kind, message, remediation)`` for an OAuth2 failure."""
    text = str(error)
    lowered = text.lower()

    if "invalid_client" in lowered:
        return (
            "invalid-client-credentials",
            "Invalid client credentials - client ID or secret is incorrect",
            "Verify SF_CLIENT_ID and SF_CLIENT_SECRET against your Connected App",
        )
    if "redirect_uri_mismatch" in lowered:
        return (
            "redirect-configuration-mismatch",
            "OAuth2 configuration error - redirect URI mismatch",
            "Make sure the Connected App callback URL matches the one used to issue the refresh token",
        )
    if is_token_error(error):
        return (
            "invalid-refresh-token",
            "OAuth2 token error - refresh token may be invalid, expired or revoked",
            "Re-authorize the Connected App to generate a new SF_REFRESH_TOKEN",
        )
    if is_network_error(error):
        return (
            "network-unreachable",
            "Network error - unable to connect to the Salesforce instance",
            "Check SF_INSTANCE_URL and network connectivity",
        )
    return (
        "unknown",
        f"OAuth2 authentication failed: {text or type(error).__name__}",
        "Check the OAuth2 configuration and Connected App settings",
    )


class OAuth2Strategy:
    """Refresh-token flow against a connected app.

    Preferred over username/password because it never needs a long-lived
    password in the environment.
    """

    name = "OAuth2"
    max_refresh_retries = 1

    def __init__(
        self,
        credentials: OAuthCredentials,
        api_version: str,
        timeout: float = 120.0,
        http: Any = requests,
    ):
        self._credentials = credentials
        self._api_version = api_version
        self._timeout = timeout
        self._http = http
        self._retry_count = 0

    def can_authenticate(self) -> bool:
        return self._credentials.is_complete()

    def request_token(self) -> Dict[str, Any]:
        """POST the refresh token to the token endpoint (blocking)."""
        creds = self._credentials
        data = {
            "grant_type": "refresh_token",
            "client_id": creds.client_id,
            "refresh_token": creds.refresh_token,
        }
        if creds.client_secret:
            data["client_secret"] = creds.client_secret

        resp = self._http.post(
            f"{creds.instance_url}/services/oauth2/token", data=data, timeout=self._timeout
        )
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {"error": resp.text}
            raise TokenRequestError(
                f"{payload.get('error', resp.status_code)}: {payload.get('error_description', '')}".strip()
            )
        return resp.json()

    def _build_session(self, token: Dict[str, Any]) -> SalesforceSession:
        client = Salesforce(
            instance_url=token.get("instance_url") or self._credentials.instance_url,
            session_id=token["access_token"],
            version=self._api_version,
        )
        user_id = (token.get("id") or "").rstrip("/").split("/")[-1] or None
        return SalesforceSession(
            client,
            strategy_name=self.name,
            user_id=user_id,
            refresher=lambda: self.request_token()["access_token"],
        )

    async def authenticate(self) -> SalesforceSession:
        if not self.can_authenticate():
            missing = ", ".join(self._credentials.missing_variables())
            raise AuthenticationError(
                f"OAuth2 authentication requires: {missing}",
                strategy=self.name,
                failure_kind="configuration",
                remediation="Set the missing environment variables",
            )

        logger.info("🔐 Attempting OAuth2 authentication against %s", self._credentials.instance_url)
        logger.info("Client ID: %s...", (self._credentials.client_id or "")[:8])
        self._retry_count = 0
        try:
            token = await asyncio.to_thread(self.request_token)
            session = self._build_session(token)
            await self._trial_with_retry(session)
        except Exception as e:
            kind, message, remediation = classify_oauth_failure(e)
            logger.error("OAuth2 authentication failed (%s): %s", kind, e)
            raise AuthenticationError(
                f"{message}. {remediation}",
                strategy=self.name,
                failure_kind=kind,
                remediation=remediation,
            ) from e

        logger.info("✅ OAuth2 authentication successful (%s, API v%s)", session.instance_url, session.api_version)
        return session

    async def _trial_with_retry(self, session: SalesforceSession) -> None:
        try:
            await session.trial_round_trip()
        except Exception as e:
            if not is_token_error(e) or self._retry_count >= self.max_refresh_retries:
                raise
            self._retry_count += 1
            logger.warning(
                "Token error during trial query, refresh retry %d/%d",
                self._retry_count,
                self.max_refresh_retries,
            )
            await session.refresh()
            await session.trial_round_trip()
            logger.info("Recovered from token error")


def login_domain(login_url: str) -> str:
    """``https://test.salesforce.com`` -> ``test`` (the form simple_salesforce expects)."""
    host = urlparse(login_url).netloc or login_url
    suffix = ".salesforce.com"
    return host[: -len(suffix)] if host.endswith(suffix) else host


class UsernamePasswordStrategy:
    name = "Username/Password"

    def __init__(self, credentials: PasswordCredentials, api_version: str):
        self._credentials = credentials
        self._api_version = api_version

    def can_authenticate(self) -> bool:
        return self._credentials.is_complete()

    def _login(self) -> Salesforce:
        creds = self._credentials
        return Salesforce(
            username=creds.username,
            password=creds.password,
            security_token=creds.security_token,
            domain=login_domain(creds.login_url),
            version=self._api_version,
        )

    async def _lookup_user_id(self, session: SalesforceSession) -> Optional[str]:
        query = (
            "SELECT Id FROM User WHERE Username = "
            f"'{soql_quote(self._credentials.username)}' LIMIT 1"
        )
        result = await session.execute(lambda sf: sf.query(query))
        records = result.get("records") or []
        return records[0]["Id"] if records else None

    async def authenticate(self) -> SalesforceSession:
        if not self.can_authenticate():
            missing = ", ".join(self._credentials.missing_variables())
            raise AuthenticationError(
                f"Username/Password authentication requires: {missing}",
                strategy=self.name,
                failure_kind="configuration",
                remediation="Set the missing environment variables",
            )

        logger.info("🔐 Attempting username/password authentication via %s", self._credentials.login_url)
        try:
            client = await asyncio.to_thread(self._login)
            session = SalesforceSession(client, strategy_name=self.name)
            await session.trial_round_trip()
        except SalesforceAuthenticationFailed as e:
            logger.error("Username/password authentication rejected: %s", e)
            raise AuthenticationError(
                f"Username/Password authentication failed: {e}",
                strategy=self.name,
                failure_kind="invalid-credentials",
                remediation="Check SF_USERNAME, SF_PASSWORD and SF_SECURITY_TOKEN",
            ) from e
        except Exception as e:
            kind = "network-unreachable" if is_network_error(e) else "unknown"
            logger.error("Username/password authentication failed (%s): %s", kind, e)
            raise AuthenticationError(
                f"Username/Password authentication failed: {e}",
                strategy=self.name,
                failure_kind=kind,
                remediation="Check SF_LOGIN_URL and network connectivity"
                if kind == "network-unreachable"
                else "Check the username/password configuration",
            ) from e

        try:
            session.user_id = await self._lookup_user_id(session)
        except Exception as e:
            logger.warning("Could not resolve user id for %s: %s", self._credentials.username, e)

        logger.info("✅ Username/password authentication successful (%s)", session.instance_url)
        return session
