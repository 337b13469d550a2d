"""Tests for environment-driven settings."""
import pytest

from salesforce_mcp.config import Settings
from salesforce_mcp.errors import ConfigurationError

OAUTH_ENV = {
    "SF_CLIENT_ID": "3MVG9abcdefgh",
    "SF_CLIENT_SECRET": "secret",
    "SF_REFRESH_TOKEN": "5Aep861refresh",
    "SF_INSTANCE_URL": "https://acme.my.salesforce.com/",
}

PASSWORD_ENV = {
    "SF_USERNAME": "admin@acme.com",
    "SF_PASSWORD": "hunter2",
    "SF_SECURITY_TOKEN": "tok",
    "SF_LOGIN_URL": "https://test.salesforce.com",
}


def test_defaults():
    settings = Settings.from_env({})
    assert settings.api_version == "59.0"
    assert settings.timeout_ms == 120000
    assert settings.timeout_seconds == 120.0
    assert settings.max_request_size == 10 * 1024 * 1024
    assert settings.bulk_dml_threshold == 200
    assert settings.bulk_query_threshold == 2000
    assert settings.password.login_url == "https://login.salesforce.com"
    assert settings.log_level == "INFO"


def test_oauth_credentials_loaded():
    settings = Settings.from_env(OAUTH_ENV)
    assert settings.oauth.is_complete()
    assert settings.oauth.instance_url == "https://acme.my.salesforce.com"
    assert not settings.password.is_complete()
    settings.validate_credentials()


def test_password_credentials_loaded():
    settings = Settings.from_env(PASSWORD_ENV)
    assert settings.password.is_complete()
    assert settings.password.security_token == "tok"
    assert settings.oauth.missing_variables() == ["SF_CLIENT_ID", "SF_REFRESH_TOKEN", "SF_INSTANCE_URL"]
    settings.validate_credentials()


def test_numeric_overrides():
    settings = Settings.from_env({
        "SF_TIMEOUT": "30000",
        "SF_BULK_DML_THRESHOLD": "50",
        "SF_BULK_QUERY_THRESHOLD": "500",
        "SF_MAX_REQUEST_SIZE": "1024",
        "SF_API_VERSION": "60.0",
        "SF_MCP_LOG_LEVEL": "debug",
    })
    assert settings.timeout_seconds == 30.0
    assert settings.bulk_dml_threshold == 50
    assert settings.bulk_query_threshold == 500
    assert settings.max_request_size == 1024
    assert settings.api_version == "60.0"
    assert settings.log_level == "DEBUG"


def test_non_integer_override_names_variable():
    with pytest.raises(ConfigurationError, match="SF_BULK_DML_THRESHOLD"):
        Settings.from_env({"SF_BULK_DML_THRESHOLD": "lots"})


def test_non_positive_override_names_variable():
    with pytest.raises(ConfigurationError, match="SF_TIMEOUT"):
        Settings.from_env({"SF_TIMEOUT": "0"})


def test_malformed_api_version():
    with pytest.raises(ConfigurationError, match="SF_API_VERSION"):
        Settings.from_env({"SF_API_VERSION": "v59"})


def test_no_credentials_lists_every_missing_variable():
    settings = Settings.from_env({"SF_CLIENT_ID": "abc"})
    with pytest.raises(ConfigurationError) as excinfo:
        settings.validate_credentials()
    assert excinfo.value.missing_variables == [
        "SF_REFRESH_TOKEN", "SF_INSTANCE_URL", "SF_USERNAME", "SF_PASSWORD",
    ]


def test_settings_are_immutable():
    settings = Settings.from_env({})
    with pytest.raises(Exception):
        settings.api_version = "58.0"
