"""Azure Mock Context for integration testing.

Builds the in-memory Azure state, a MockTransport bound to it, and a
DeploymentReconciler wired to that transport.
"""

from __future__ import annotations

import base64
from dataclasses import replace
from typing import Any

from armstack.config import Config, Credentials
from armstack.reconciler import DeploymentReconciler

from .credential import MockTokenEndpoint
from .resources import MockResourceState
from .storage import MockBlobState
from .transport import MockTransport

TEST_TENANT_ID = "11111111-1111-1111-1111-111111111111"
TEST_CLIENT_ID = "22222222-2222-2222-2222-222222222222"
TEST_CLIENT_SECRET = "mock-client-secret"
TEST_SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
TEST_REGION = "westeurope"
TEST_BLOB_ACCOUNT = "armstacktest"
TEST_BLOB_KEY = base64.b64encode(b"armstack-mock-shared-key-0123456").decode("ascii")


def make_credentials(*, with_blob_storage: bool = True, **overrides: Any) -> Credentials:
    """Valid test credentials; keyword arguments override single fields."""
    values: dict[str, Any] = {
        "tenant_id": TEST_TENANT_ID,
        "client_id": TEST_CLIENT_ID,
        "client_secret": TEST_CLIENT_SECRET,
        "subscription_id": TEST_SUBSCRIPTION_ID,
        "region": TEST_REGION,
    }
    if with_blob_storage:
        values["blob_account_name"] = TEST_BLOB_ACCOUNT
        values["blob_secret_key"] = TEST_BLOB_KEY
    values.update(overrides)
    return Credentials(**values)


def make_config(credentials: Credentials | None = None, **overrides: Any) -> Config:
    return Config(credentials=credentials or make_credentials(), **overrides)


class MockAzureContext:
    """Context manager for Azure API mocking in integration tests.

    Usage:
        with MockAzureContext() as ctx:
            stack = ctx.reconciler.stack_save(Stack(name="web", template=...))
            ctx.state.complete_deployment("web", "web")

            assert ctx.reconciler.stack_reload(stack).state is StackState.CREATE_COMPLETE
    """

    def __init__(
        self,
        *,
        with_blob_storage: bool = True,
        fail_auth: bool = False,
        blob_page_size: int = 5000,
        **config_overrides: Any,
    ) -> None:
        """Initialize mock context.

        Args:
            with_blob_storage: Whether credentials include a storage account.
            fail_auth: Whether the token endpoint rejects every request.
            blob_page_size: Blobs per listing page.
            **config_overrides: Fields passed through to Config.
        """
        self._with_blob_storage = with_blob_storage
        self._fail_auth = fail_auth
        self._blob_page_size = blob_page_size
        self._config_overrides = config_overrides

        # These are set when context is entered
        self._state: MockResourceState | None = None
        self._blobs: MockBlobState | None = None
        self._tokens: MockTokenEndpoint | None = None
        self._transport: MockTransport | None = None
        self._reconciler: DeploymentReconciler | None = None
        self._config: Config | None = None

    def _require(self, value: Any) -> Any:
        if value is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return value

    @property
    def state(self) -> MockResourceState:
        return self._require(self._state)

    @property
    def blobs(self) -> MockBlobState:
        return self._require(self._blobs)

    @property
    def tokens(self) -> MockTokenEndpoint:
        return self._require(self._tokens)

    @property
    def transport(self) -> MockTransport:
        return self._require(self._transport)

    @property
    def config(self) -> Config:
        return self._require(self._config)

    @property
    def reconciler(self) -> DeploymentReconciler:
        return self._require(self._reconciler)

    def with_config(self, **overrides: Any) -> DeploymentReconciler:
        """A second reconciler over the same mock state with other settings."""
        return DeploymentReconciler(replace(self.config, **overrides), self.transport)

    def __enter__(self) -> MockAzureContext:
        credentials = make_credentials(with_blob_storage=self._with_blob_storage)
        self._config = make_config(credentials, **self._config_overrides)
        self._state = MockResourceState(TEST_SUBSCRIPTION_ID, location=TEST_REGION)
        self._blobs = MockBlobState(TEST_BLOB_ACCOUNT, TEST_BLOB_KEY, page_size=self._blob_page_size)
        self._tokens = MockTokenEndpoint(TEST_CLIENT_ID, TEST_CLIENT_SECRET)
        self._tokens.set_failure(self._fail_auth)
        self._transport = MockTransport(
            tokens=self._tokens,
            resources=self._state,
            blobs=self._blobs if self._with_blob_storage else None,
        )
        self._reconciler = DeploymentReconciler(self._config, self._transport)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._transport is not None:
            self._transport.close()
        self._state = None
        self._blobs = None
        self._tokens = None
        self._transport = None
        self._reconciler = None
        self._config = None
