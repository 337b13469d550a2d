"""Error taxonomy for the Salesforce MCP server.

Every failure that reaches a tool caller is one of the types below. Remote
error text is carried through verbatim so the original Salesforce message and
error code stay available for debugging.
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from simple_salesforce.exceptions import (
    SalesforceAuthenticationFailed,
    SalesforceError,
    SalesforceExpiredSession,
)

logger = logging.getLogger(__name__)

# Substrings (lower-cased on match) that identify a stale or expired token.
TOKEN_ERROR_PATTERNS = (
    "invalid_session_id",
    "session_not_found",
    "invalid_grant",
    "expired access/refresh token",
    "authentication failure",
    "invalid_client",
)

NETWORK_ERROR_PATTERNS = (
    "enotfound",
    "econnrefused",
    "name or service not known",
    "nodename nor servname",
    "connection refused",
    "failed to establish a new connection",
)


class SalesforceMcpError(Exception):
    """Base class for every error raised by this package."""

    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": str(self),
            "errorCode": self.error_code or type(self).__name__,
        }


class ConfigurationError(SalesforceMcpError):
    """Required environment variables are missing or contradictory."""

    def __init__(self, message: str, missing_variables: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_variables = list(missing_variables or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["missingVariables"] = self.missing_variables
        return payload


class AuthenticationError(SalesforceMcpError):
    """An authentication strategy could not produce a live session."""

    def __init__(
        self,
        message: str,
        strategy: Optional[str] = None,
        failure_kind: str = "unknown",
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.strategy = strategy
        self.failure_kind = failure_kind
        self.remediation = remediation

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["strategy"] = self.strategy
        payload["failureKind"] = self.failure_kind
        if self.remediation:
            payload["remediation"] = self.remediation
        return payload


class SalesforceConnectionError(SalesforceMcpError):
    """The session is invalid or the instance is unreachable."""

    def __init__(self, message: str, error_code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        if error_code:
            self.error_code = error_code
        self.status_code = status_code


class RemoteOperationError(SalesforceMcpError):
    """Salesforce rejected a specific operation."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        fields: Optional[List[str]] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.fields = list(fields or [])
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["statusCode"] = self.status_code
        payload["fields"] = self.fields
        if self.details is not None:
            payload["details"] = self.details
        return payload


class JobTimeoutError(SalesforceMcpError):
    """An asynchronous job did not reach a terminal status in time."""

    error_code = "JOB_TIMEOUT"

    def __init__(
        self,
        job_id: str,
        attempts: int,
        interval: float,
        state: str = "TimedOut",
        last_status: Optional[str] = None,
    ):
        super().__init__(
            f"Job {job_id} did not finish after {attempts} status checks "
            f"({attempts * interval:.0f}s)"
        )
        self.job_id = job_id
        self.attempts = attempts
        self.state = state
        self.last_status = last_status

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["jobId"] = self.job_id
        payload["attempts"] = self.attempts
        payload["state"] = self.state
        payload["lastStatus"] = self.last_status
        return payload


class ValidationError(SalesforceMcpError):
    """A local pre-flight check failed; nothing was sent to Salesforce."""

    error_code = "VALIDATION_ERROR"


def _remote_error_entries(exc: SalesforceError) -> List[Dict[str, Any]]:
    content = getattr(exc, "content", None)
    if isinstance(content, list):
        return [entry for entry in content if isinstance(entry, dict)]
    if isinstance(content, dict):
        return [content]
    return []


def is_token_error(exc: BaseException) -> bool:
    """Return True when ``exc`` carries a stale/expired token signature."""
    if isinstance(exc, SalesforceExpiredSession):
        return True

    haystack = [str(exc).lower()]
    code = getattr(exc, "error_code", None) or getattr(exc, "code", None)
    if code:
        haystack.append(str(code).lower())
    if isinstance(exc, SalesforceError):
        for entry in _remote_error_entries(exc):
            haystack.append(str(entry.get("errorCode", "")).lower())
            haystack.append(str(entry.get("message", "")).lower())

    return any(pattern in text for pattern in TOKEN_ERROR_PATTERNS for text in haystack)


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in NETWORK_ERROR_PATTERNS)


def translate_remote_error(exc: BaseException) -> BaseException:
    """Map a client/HTTP exception into the package taxonomy.

    Exceptions that are already part of the taxonomy, and exceptions that do
    not come from the remote side at all, are returned unchanged.
    """
    if isinstance(exc, SalesforceMcpError):
        return exc

    if isinstance(exc, SalesforceExpiredSession):
        return SalesforceConnectionError(f"Salesforce session expired: {exc}")

    if isinstance(exc, SalesforceAuthenticationFailed):
        return AuthenticationError(
            str(getattr(exc, "message", exc)), failure_kind="invalid-credentials"
        )

    if isinstance(exc, SalesforceError):
        entries = _remote_error_entries(exc)
        first = entries[0] if entries else {}
        message = first.get("message") or str(exc)
        return RemoteOperationError(
            message,
            error_code=first.get("errorCode"),
            status_code=getattr(exc, "status", None),
            fields=first.get("fields"),
            details=entries[1:] or None,
        )

    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = response.text
        entry = body[0] if isinstance(body, list) and body and isinstance(body[0], dict) else {}
        if isinstance(body, dict):
            entry = body
        message = entry.get("message") or str(exc)
        code = entry.get("errorCode") or entry.get("error")
        # Hand-made REST calls (Metadata deployRequest) see expired sessions as a bare 401
        signature = f"{code or ''} {message}".lower()
        if response.status_code == 401 or any(p in signature for p in TOKEN_ERROR_PATTERNS):
            return SalesforceConnectionError(message, error_code=code, status_code=response.status_code)
        return RemoteOperationError(
            message,
            error_code=code,
            status_code=response.status_code,
            fields=entry.get("fields"),
            details=body,
        )

    if is_network_error(exc):
        return SalesforceConnectionError(f"Unable to reach Salesforce: {exc}")

    return exc
