"""Azure API Mock for Integration Testing.

This module provides an in-memory implementation of the Azure endpoints
armstack talks to, so the full client stack can be tested without Azure
connectivity.

Key Features:
- OAuth2 client-credentials token endpoint with failure injection
- Resource groups, deployments, deployment operations, validate and
  exportTemplate on the Resource Manager API
- Blob containers and blobs with SharedKey signature verification
- Every request recorded for assertions

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        stack = ctx.reconciler.stack_save(Stack(name="web", template=template))

        assert ctx.state.deployment_count == 1
        assert ctx.tokens.grant_count == 1
"""

from .context import (
    TEST_BLOB_ACCOUNT,
    TEST_BLOB_KEY,
    TEST_CLIENT_ID,
    TEST_CLIENT_SECRET,
    TEST_REGION,
    TEST_SUBSCRIPTION_ID,
    TEST_TENANT_ID,
    MockAzureContext,
    make_config,
    make_credentials,
)
from .credential import MockTokenEndpoint
from .resources import DeploymentProvisioningState, MockOperation, MockResourceState
from .storage import MockBlobState
from .transport import LOGIN_HOST, MANAGEMENT_HOST, MockTransport, RecordedRequest, json_response

__all__ = [
    "LOGIN_HOST",
    "MANAGEMENT_HOST",
    "TEST_BLOB_ACCOUNT",
    "TEST_BLOB_KEY",
    "TEST_CLIENT_ID",
    "TEST_CLIENT_SECRET",
    "TEST_REGION",
    "TEST_SUBSCRIPTION_ID",
    "TEST_TENANT_ID",
    "DeploymentProvisioningState",
    "MockAzureContext",
    "MockBlobState",
    "MockOperation",
    "MockResourceState",
    "MockTokenEndpoint",
    "MockTransport",
    "RecordedRequest",
    "json_response",
    "make_config",
    "make_credentials",
]
