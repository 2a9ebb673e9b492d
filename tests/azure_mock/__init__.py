"""Azure mocks for testing without Azure connectivity.

Key Features:
- MockProvider: in-memory ResourceProvider with deterministic outputs,
  idempotent upserts, error injection and concurrency tracking
- MockResourceManagementClient: generic resource operations for testing the
  azure-mgmt-resource binding

Usage:
    from azure_mock import MockProvider

    provider = MockProvider()
    orchestrator = Orchestrator(manifest, config, provider)
    result = await orchestrator.run()

    assert provider.changes == len(manifest.descriptors)
"""

from .provider import MockProvider, ProviderCall, generated_attributes
from .resources import (
    MockGenericResource,
    MockIdentity,
    MockResourceManagementClient,
    MockResourceStore,
    client_factory,
    http_error,
)

__all__ = [
    "MockGenericResource",
    "MockIdentity",
    "MockProvider",
    "MockResourceManagementClient",
    "MockResourceStore",
    "ProviderCall",
    "client_factory",
    "generated_attributes",
    "http_error",
]
