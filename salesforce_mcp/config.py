"""Environment-driven configuration.

Credentials and tuning knobs are read once at startup from the process
environment (optionally seeded from a ``.env`` file) into immutable models.
"""
import logging
import os
import re
from typing import ClassVar, Dict, List, Mapping, Optional

import pydantic
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from salesforce_mcp.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "59.0"
DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_MAX_REQUEST_SIZE = 10 * 1024 * 1024
DEFAULT_BULK_DML_THRESHOLD = 200
DEFAULT_BULK_QUERY_THRESHOLD = 2000
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Environment variable -> settings field for the numeric overrides.
_NUMERIC_OVERRIDES = {
    "SF_TIMEOUT": "timeout_ms",
    "SF_MAX_REQUEST_SIZE": "max_request_size",
    "SF_BULK_DML_THRESHOLD": "bulk_dml_threshold",
    "SF_BULK_QUERY_THRESHOLD": "bulk_query_threshold",
}


class OAuthCredentials(BaseModel):
    """Refresh-token credential set (connected app)."""

    model_config = ConfigDict(frozen=True)

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    instance_url: Optional[str] = None

    REQUIRED: ClassVar[Dict[str, str]] = {
        "SF_CLIENT_ID": "client_id",
        "SF_REFRESH_TOKEN": "refresh_token",
        "SF_INSTANCE_URL": "instance_url",
    }

    def missing_variables(self) -> List[str]:
        return [var for var, attr in self.REQUIRED.items() if not getattr(self, attr)]

    def is_complete(self) -> bool:
        return not self.missing_variables()


class PasswordCredentials(BaseModel):
    """Username/password credential set."""

    model_config = ConfigDict(frozen=True)

    username: Optional[str] = None
    password: Optional[str] = None
    security_token: str = ""
    login_url: str = DEFAULT_LOGIN_URL

    REQUIRED: ClassVar[Dict[str, str]] = {
        "SF_USERNAME": "username",
        "SF_PASSWORD": "password",
    }

    def missing_variables(self) -> List[str]:
        return [var for var, attr in self.REQUIRED.items() if not getattr(self, attr)]

    def is_complete(self) -> bool:
        return not self.missing_variables()


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    oauth: OAuthCredentials = Field(default_factory=OAuthCredentials)
    password: PasswordCredentials = Field(default_factory=PasswordCredentials)
    api_version: str = DEFAULT_API_VERSION
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    max_request_size: int = Field(default=DEFAULT_MAX_REQUEST_SIZE, gt=0)
    bulk_dml_threshold: int = Field(default=DEFAULT_BULK_DML_THRESHOLD, gt=0)
    bulk_query_threshold: int = Field(default=DEFAULT_BULK_QUERY_THRESHOLD, gt=0)
    log_level: str = "INFO"

    @field_validator("api_version")
    @classmethod
    def _check_api_version(cls, value: str) -> str:
        if not re.fullmatch(r"\d+\.\d", value):
            raise ValueError(f"expected a version like '59.0', got {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"expected one of {', '.join(LOG_LEVELS)}, got {value!r}")
        return value

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, load_dotenv_file: bool = True
    ) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``).

        Raises:
            ConfigurationError: a numeric override is not a positive integer,
                or the API version is malformed.
        """
        if environ is None:
            if load_dotenv_file:
                load_dotenv(override=False)
            environ = os.environ

        def _get(name: str) -> Optional[str]:
            value = environ.get(name)
            return value.strip() if value and value.strip() else None

        values: Dict[str, object] = {
            "oauth": OAuthCredentials(
                client_id=_get("SF_CLIENT_ID"),
                client_secret=_get("SF_CLIENT_SECRET"),
                refresh_token=_get("SF_REFRESH_TOKEN"),
                instance_url=(_get("SF_INSTANCE_URL") or "").rstrip("/") or None,
            ),
            "password": PasswordCredentials(
                username=_get("SF_USERNAME"),
                password=_get("SF_PASSWORD"),
                security_token=_get("SF_SECURITY_TOKEN") or "",
                login_url=(_get("SF_LOGIN_URL") or DEFAULT_LOGIN_URL).rstrip("/"),
            ),
            "log_level": (_get("SF_MCP_LOG_LEVEL") or "INFO").upper(),
        }
        if _get("SF_API_VERSION"):
            values["api_version"] = _get("SF_API_VERSION")

        for var, field in _NUMERIC_OVERRIDES.items():
            raw = _get(var)
            if raw is None:
                continue
            try:
                values[field] = int(raw)
            except ValueError:
                raise ConfigurationError(f"{var} must be an integer, got {raw!r}") from None

        try:
            return cls(**values)
        except pydantic.ValidationError as e:
            env_names = {field: var for var, field in _NUMERIC_OVERRIDES.items()}
            env_names["api_version"] = "SF_API_VERSION"
            env_names["log_level"] = "SF_MCP_LOG_LEVEL"
            bad = sorted({env_names.get(str(err["loc"][0]), str(err["loc"][0])) for err in e.errors()})
            raise ConfigurationError(f"Invalid configuration for {', '.join(bad)}: {e}") from e

    def missing_variables(self) -> List[str]:
        """Every variable missing across all credential sets, in priority order."""
        return self.oauth.missing_variables() + self.password.missing_variables()

    def validate_credentials(self) -> None:
        """Fail fast when no credential set is usable."""
        if self.oauth.is_complete() or self.password.is_complete():
            if self.oauth.is_complete():
                logger.info("OAuth2 credentials configured for %s", self.oauth.instance_url)
            if self.password.is_complete():
                logger.info("Username/password credentials configured for %s", self.password.login_url)
            return
        missing = self.missing_variables()
        raise ConfigurationError(
            "No Salesforce credentials configured. Set "
            f"{', '.join(self.oauth.missing_variables())} for OAuth2, or "
            f"{', '.join(self.password.missing_variables())} for username/password.",
            missing_variables=missing,
        )
