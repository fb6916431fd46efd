"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from armstack.config import (
    DEFAULT_LOGIN_URL,
    DEFAULT_MANAGEMENT_RESOURCE,
    DEFAULT_ROOT_ORCHESTRATION_CONTAINER,
    Config,
    ConfigurationError,
    Credentials,
)
from azure_mock import (
    TEST_BLOB_ACCOUNT,
    TEST_BLOB_KEY,
    TEST_CLIENT_ID,
    TEST_SUBSCRIPTION_ID,
    TEST_TENANT_ID,
    make_credentials,
)

CREDENTIAL_ENV = {
    "AZURE_TENANT_ID": TEST_TENANT_ID,
    "AZURE_CLIENT_ID": TEST_CLIENT_ID,
    "AZURE_CLIENT_SECRET": "secret",
    "AZURE_SUBSCRIPTION_ID": TEST_SUBSCRIPTION_ID,
    "AZURE_REGION": "westeurope",
}


class TestCredentials:
    """Tests for Credentials class."""

    def test_valid_credentials(self) -> None:
        """Test creating valid credentials with defaults."""
        credentials = make_credentials(with_blob_storage=False)

        assert credentials.login_url == DEFAULT_LOGIN_URL
        assert credentials.resource == DEFAULT_MANAGEMENT_RESOURCE
        assert credentials.root_orchestration_container == DEFAULT_ROOT_ORCHESTRATION_CONTAINER
        assert credentials.has_blob_storage is False

    def test_blob_storage_detected(self) -> None:
        """Test that blob credentials are recognized when both fields are set."""
        assert make_credentials().has_blob_storage is True
        assert make_credentials(blob_secret_key=None).has_blob_storage is False

    def test_secret_key_not_in_repr(self) -> None:
        """Test that the shared key is kept out of repr()."""
        assert TEST_BLOB_KEY not in repr(make_credentials())

    def test_invalid_guid(self) -> None:
        """Test that a malformed tenant id raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_credentials(tenant_id="not-a-guid")

        assert "AZURE_TENANT_ID" in str(exc_info.value)

    def test_errors_are_collected(self) -> None:
        """Test that all problems are reported together."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_credentials(client_secret="", region="", subscription_id="")

        message = str(exc_info.value)
        assert "AZURE_CLIENT_SECRET" in message
        assert "AZURE_REGION" in message
        assert "AZURE_SUBSCRIPTION_ID" in message

    def test_non_https_login_url(self) -> None:
        """Test that the OAuth authority must use https."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_credentials(login_url="http://login.example.com")

        assert "AZURE_LOGIN_URL" in str(exc_info.value)

    def test_invalid_account_name(self) -> None:
        """Test that storage account names are validated."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_credentials(blob_account_name="Not_Valid")

        assert "AZURE_BLOB_ACCOUNT_NAME" in str(exc_info.value)

    def test_invalid_container_name(self) -> None:
        """Test that the orchestration container name is validated."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_credentials(root_orchestration_container="Bad--Name")

        assert "AZURE_ROOT_ORCHESTRATION_CONTAINER" in str(exc_info.value)

    def test_from_env(self) -> None:
        """Test loading credentials from environment."""
        env = {
            **CREDENTIAL_ENV,
            "AZURE_BLOB_ACCOUNT_NAME": TEST_BLOB_ACCOUNT,
            "AZURE_BLOB_SECRET_KEY": TEST_BLOB_KEY,
        }
        with patch.dict(os.environ, env, clear=True):
            credentials = Credentials.from_env()

        assert credentials.tenant_id == TEST_TENANT_ID
        assert credentials.blob_account_name == TEST_BLOB_ACCOUNT
        assert credentials.has_blob_storage is True

    def test_from_env_missing_values(self) -> None:
        """Test that an empty environment fails validation."""
        with patch.dict(os.environ, {}, clear=True), pytest.raises(ConfigurationError):
            Credentials.from_env()


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test default behavior flags."""
        config = Config(credentials=make_credentials())

        assert config.debug is False
        assert config.template_url_timeout_seconds == 3600
        assert config.always_externalize_templates is True
        assert config.request_timeout_seconds == 60

    def test_invalid_template_url_timeout(self) -> None:
        """Test that out-of-range template URL lifetime raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(credentials=make_credentials(), template_url_timeout_seconds=10)

        assert "TEMPLATE_URL_TIMEOUT" in str(exc_info.value)

    def test_invalid_request_timeout(self) -> None:
        """Test that a zero request timeout raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(credentials=make_credentials(), request_timeout_seconds=0)

        assert "REQUEST_TIMEOUT" in str(exc_info.value)

    def test_config_is_frozen(self) -> None:
        """Test that configuration cannot be mutated."""
        config = Config(credentials=make_credentials())

        with pytest.raises(AttributeError):
            config.debug = True  # type: ignore[misc]

    def test_from_env(self) -> None:
        """Test loading configuration from environment."""
        env = {
            **CREDENTIAL_ENV,
            "DEBUG": "true",
            "TEMPLATE_URL_TIMEOUT": "600",
            "ALWAYS_EXTERNALIZE_TEMPLATES": "false",
            "REQUEST_TIMEOUT": "30",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.debug is True
        assert config.template_url_timeout_seconds == 600
        assert config.always_externalize_templates is False
        assert config.request_timeout_seconds == 30

    def test_from_env_invalid_integer(self) -> None:
        """Test that non-integer values raise error."""
        env = {**CREDENTIAL_ENV, "TEMPLATE_URL_TIMEOUT": "soon"}
        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigurationError) as exc_info:
            Config.from_env()

        assert "TEMPLATE_URL_TIMEOUT must be an integer" in str(exc_info.value)
