"""Configuration management with validation.

Credentials and client behavior are validated at construction time so a
misconfigured client fails before the first remote call is attempted.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Provider API versions
DEPLOYMENT_API_VERSION = "2015-01-01"
BLOB_API_VERSION = "2015-04-05"

# Endpoints
DEFAULT_LOGIN_URL = "https://login.microsoftonline.com"
DEFAULT_MANAGEMENT_RESOURCE = "https://management.azure.com/"
DEFAULT_ROOT_ORCHESTRATION_CONTAINER = "armstack-orchestration-templates"

# Token refresh happens this many seconds before the provider's expiry
OAUTH_TOKEN_BUFFER_SECONDS = 240

# Template URL lifetime bounds (SAS expiry)
DEFAULT_TEMPLATE_URL_TIMEOUT_SECONDS = 3600
MIN_TEMPLATE_URL_TIMEOUT_SECONDS = 60
MAX_TEMPLATE_URL_TIMEOUT_SECONDS = 86400

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60

# Deployment request bodies above this size are rejected by the provider
MAX_INLINE_TEMPLATE_BYTES = 4 * 1024 * 1024

# Pagination guard against misbehaving providers
MAX_RESULT_PAGES = 1000

MAX_STACK_NAME_LENGTH = 90

# Local file limits for stack definitions
MAX_DEFINITION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max definition file
MAX_TEMPLATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max template file

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_REGION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_CONTAINER_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"
VALID_ACCOUNT_PATTERN = r"^[a-z0-9]{3,24}$"


@dataclass(frozen=True)
class ServiceConfig:
    """Per-client service description read by the request dispatcher.

    api_version is sent as ``x-ms-version`` on signed requests and as the
    ``api-version`` query parameter on bearer requests. root_path is
    prefixed to every bearer request path.
    """

    api_version: str | None = None
    root_path: str | None = None


@dataclass(frozen=True)
class Credentials:
    """Provider credentials, immutable after construction.

    The blob account fields are optional here; the storage client checks
    for them when it is built.
    """

    tenant_id: str
    client_id: str
    client_secret: str
    subscription_id: str
    region: str
    login_url: str = DEFAULT_LOGIN_URL
    resource: str = DEFAULT_MANAGEMENT_RESOURCE
    blob_account_name: str | None = None
    blob_secret_key: str | None = field(default=None, repr=False)
    root_orchestration_container: str = DEFAULT_ROOT_ORCHESTRATION_CONTAINER

    def __post_init__(self) -> None:
        errors: list[str] = []

        for env_name, value in (
            ("AZURE_TENANT_ID", self.tenant_id),
            ("AZURE_CLIENT_ID", self.client_id),
            ("AZURE_SUBSCRIPTION_ID", self.subscription_id),
        ):
            if not value:
                errors.append(f"{env_name} is required")
            elif not re.match(VALID_GUID_PATTERN, value.lower()):
                errors.append(f"{env_name} must be a valid GUID: {value}")

        if not self.client_secret:
            errors.append("AZURE_CLIENT_SECRET is required")

        if not self.region:
            errors.append("AZURE_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region.lower()):
            errors.append(f"AZURE_REGION must be a valid Azure region: {self.region}")

        if not self.login_url.startswith("https://"):
            errors.append(f"AZURE_LOGIN_URL must be an https URL: {self.login_url}")
        if not self.resource.startswith("https://"):
            errors.append(f"AZURE_RESOURCE must be an https URL: {self.resource}")

        if self.blob_account_name and not re.match(VALID_ACCOUNT_PATTERN, self.blob_account_name):
            errors.append(
                f"AZURE_BLOB_ACCOUNT_NAME must be 3-24 lowercase alphanumerics: "
                f"{self.blob_account_name}"
            )

        if not re.match(VALID_CONTAINER_PATTERN, self.root_orchestration_container):
            errors.append(
                "AZURE_ROOT_ORCHESTRATION_CONTAINER must be a valid container name: "
                f"{self.root_orchestration_container}"
            )

        if errors:
            error_msg = "Credential validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def has_blob_storage(self) -> bool:
        """Whether blob account credentials are present."""
        return bool(self.blob_account_name and self.blob_secret_key)

    @classmethod
    def from_env(cls) -> Credentials:
        """Load credentials from environment variables.

        Environment Variables:
            AZURE_TENANT_ID: Directory (tenant) id
            AZURE_CLIENT_ID: Application (client) id
            AZURE_CLIENT_SECRET: Client secret for the client-credentials grant
            AZURE_SUBSCRIPTION_ID: Target subscription
            AZURE_REGION: Location for new resource groups
            AZURE_LOGIN_URL: OAuth authority (default: public cloud)
            AZURE_RESOURCE: Management resource URL (default: public cloud)
            AZURE_BLOB_ACCOUNT_NAME: Storage account for template externalization
            AZURE_BLOB_SECRET_KEY: Base64 shared key for the storage account
            AZURE_ROOT_ORCHESTRATION_CONTAINER: Container holding templates
        """
        return cls(
            tenant_id=os.environ.get("AZURE_TENANT_ID", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID", ""),
            client_secret=os.environ.get("AZURE_CLIENT_SECRET", ""),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            region=os.environ.get("AZURE_REGION", ""),
            login_url=os.environ.get("AZURE_LOGIN_URL", DEFAULT_LOGIN_URL),
            resource=os.environ.get("AZURE_RESOURCE", DEFAULT_MANAGEMENT_RESOURCE),
            blob_account_name=os.environ.get("AZURE_BLOB_ACCOUNT_NAME") or None,
            blob_secret_key=os.environ.get("AZURE_BLOB_SECRET_KEY") or None,
            root_orchestration_container=os.environ.get(
                "AZURE_ROOT_ORCHESTRATION_CONTAINER", DEFAULT_ROOT_ORCHESTRATION_CONTAINER
            ),
        )


@dataclass(frozen=True)
class Config:
    """Client configuration: credentials plus behavior flags."""

    credentials: Credentials

    # Gates retryable_allowed(); retries are off unless debugging
    debug: bool = False

    template_url_timeout_seconds: int = DEFAULT_TEMPLATE_URL_TIMEOUT_SECONDS
    always_externalize_templates: bool = True
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not (
            MIN_TEMPLATE_URL_TIMEOUT_SECONDS
            <= self.template_url_timeout_seconds
            <= MAX_TEMPLATE_URL_TIMEOUT_SECONDS
        ):
            errors.append(
                f"TEMPLATE_URL_TIMEOUT must be between {MIN_TEMPLATE_URL_TIMEOUT_SECONDS} "
                f"and {MAX_TEMPLATE_URL_TIMEOUT_SECONDS} seconds"
            )

        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DEBUG: If set to a true value, failed requests are retryable
            TEMPLATE_URL_TIMEOUT: Lifetime of template SAS URLs (default: 3600)
            ALWAYS_EXTERNALIZE_TEMPLATES: Store every template in blob storage
                (default: true)
            REQUEST_TIMEOUT: Per-request transport timeout (default: 60)

        Credentials are read by Credentials.from_env().
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            credentials=Credentials.from_env(),
            debug=get_bool("DEBUG", False),
            template_url_timeout_seconds=get_int(
                "TEMPLATE_URL_TIMEOUT", DEFAULT_TEMPLATE_URL_TIMEOUT_SECONDS
            ),
            always_externalize_templates=get_bool("ALWAYS_EXTERNALIZE_TEMPLATES", True),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
        )
