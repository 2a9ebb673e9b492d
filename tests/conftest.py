"""Shared fixtures for the provisioner test suite.

Tests import the ``provisioner`` package straight from src/ and the test
doubles (``azure_mock``, ``factories``) as top-level modules from tests/.
"""

import sys
from pathlib import Path

import pytest

# provisioner package (src layout)
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
# azure_mock and factories
sys.path.insert(0, str(Path(__file__).parent))

from azure_mock import MockProvider  # noqa: E402
from factories import REGISTRY_RESOURCE_GROUP, REGISTRY_SUBSCRIPTION_ID  # noqa: E402
from provisioner.kinds import get_kind  # noqa: E402
from provisioner.scope import ScopeHandle  # noqa: E402


@pytest.fixture
def provider() -> MockProvider:
    """MockProvider with the shared registry "crshared" already present in its foreign scope."""
    provider = MockProvider()
    provider.seed_existing(
        get_kind("containerRegistry"),
        ScopeHandle(REGISTRY_SUBSCRIPTION_ID, REGISTRY_RESOURCE_GROUP, foreign=True),
        "crshared",
    )
    return provider
