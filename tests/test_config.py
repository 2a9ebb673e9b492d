"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.config import (
    BUILTIN_ROLE_DEFINITIONS,
    DEFAULT_PARALLELISM,
    Config,
    ConfigurationError,
    SecurityConfig,
)

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
REGISTRY_SUBSCRIPTION_ID = "abcdefab-1234-1234-1234-123456789012"


def base_kwargs() -> dict:
    return {
        "environment": "dev",
        "subscription_id": SUBSCRIPTION_ID,
        "location": "westeurope",
        "resource_group_name": "rg-app-dev",
    }


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration with defaults."""
        config = Config(**base_kwargs())

        assert config.parallelism == DEFAULT_PARALLELISM
        assert config.dry_run is False
        assert config.primary_scope == (SUBSCRIPTION_ID, "rg-app-dev")
        assert config.role_definitions["AcrPull"] == BUILTIN_ROLE_DEFINITIONS["AcrPull"]

    def test_missing_environment(self) -> None:
        """Test that missing environment raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "environment": ""})

        assert "ENVIRONMENT" in str(exc_info.value)

    def test_invalid_environment_label(self) -> None:
        """Test that environment labels must be lowercase and short."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "environment": "Production_Env"})

        assert "ENVIRONMENT must match" in str(exc_info.value)

    def test_invalid_subscription_id(self) -> None:
        """Test that subscription id must be a GUID."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "subscription_id": "not-a-guid"})

        assert "AZURE_SUBSCRIPTION_ID" in str(exc_info.value)

    def test_collects_all_errors(self) -> None:
        """Test that every problem is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(environment="", subscription_id="", location="", resource_group_name="")

        message = str(exc_info.value)
        assert "ENVIRONMENT" in message
        assert "AZURE_SUBSCRIPTION_ID" in message
        assert "AZURE_LOCATION" in message
        assert "RESOURCE_GROUP_NAME" in message

    def test_resource_group_too_long(self) -> None:
        """Test resource group length limit."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "resource_group_name": "r" * 91})

        assert "maximum length" in str(exc_info.value)

    @pytest.mark.parametrize("parallelism", [0, 17])
    def test_parallelism_bounds(self, parallelism: int) -> None:
        """Test that parallelism outside 1-16 raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "parallelism": parallelism})

        assert "PARALLELISM" in str(exc_info.value)

    def test_max_apply_attempts_bounds(self) -> None:
        """Test that at least one attempt is required."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "max_apply_attempts": 0})

        assert "MAX_APPLY_ATTEMPTS" in str(exc_info.value)

    def test_negative_backoff_rejected(self) -> None:
        """Test that backoff cannot be negative."""
        with pytest.raises(ConfigurationError):
            Config(**{**base_kwargs(), "retry_backoff_base_seconds": -1})

    def test_registry_scope_must_be_complete(self) -> None:
        """Test registry subscription and resource group are set together."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "registry_subscription_id": REGISTRY_SUBSCRIPTION_ID})

        assert "must be set together" in str(exc_info.value)

    def test_invalid_role_definition(self) -> None:
        """Test that role definitions must be GUIDs."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "role_definitions": {"AcrPull": "pull"}})

        assert "AcrPull" in str(exc_info.value)

    def test_max_resources_arm_limit(self) -> None:
        """Test the ARM limit on resources per run."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**base_kwargs(), "security": SecurityConfig(max_resources_per_run=801)})

        assert "800" in str(exc_info.value)


class TestBuiltinParameters:
    """Tests for parameters supplied by the engine."""

    def test_without_registry(self) -> None:
        """Test built-ins when no registry trust boundary is configured."""
        params = Config(**base_kwargs()).builtin_parameters()

        assert params == {
            "environment": "dev",
            "location": "westeurope",
            "imageTag": "latest",
            "subscriptionId": SUBSCRIPTION_ID,
            "resourceGroupName": "rg-app-dev",
        }

    def test_with_registry(self) -> None:
        """Test that the registry scope is exposed when configured."""
        config = Config(
            **base_kwargs(),
            registry_subscription_id=REGISTRY_SUBSCRIPTION_ID,
            registry_resource_group="rg-shared",
        )
        params = config.builtin_parameters()

        assert params["registrySubscriptionId"] == REGISTRY_SUBSCRIPTION_ID
        assert params["registryResourceGroup"] == "rg-shared"


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def env(self, **extra: str) -> dict[str, str]:
        values = {
            "ENVIRONMENT": "test",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "northeurope",
            "RESOURCE_GROUP_NAME": "rg-app-test",
        }
        values.update(extra)
        return values

    def test_from_env(self) -> None:
        """Test loading config from environment variables."""
        env = self.env(
            MANIFEST_PATH="/tmp/stack.yaml",
            PARALLELISM="8",
            MAX_APPLY_ATTEMPTS="5",
            RETRY_BACKOFF_BASE_SECONDS="0.5",
            APPLY_TIMEOUT="60",
            DRY_RUN="true",
            IMAGE_TAG="1.2.3",
            MAX_RESOURCES_PER_RUN="20",
        )
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.environment == "test"
        assert config.manifest_path == Path("/tmp/stack.yaml")
        assert config.parallelism == 8
        assert config.max_apply_attempts == 5
        assert config.retry_backoff_base_seconds == 0.5
        assert config.apply_timeout_seconds == 60
        assert config.dry_run is True
        assert config.image_tag == "1.2.3"
        assert config.security.max_resources_per_run == 20

    def test_from_env_invalid_integer(self) -> None:
        """Test that non-integer values raise ConfigurationError."""
        with patch.dict(os.environ, self.env(PARALLELISM="many"), clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "PARALLELISM must be an integer" in str(exc_info.value)

    def test_overrides_win(self) -> None:
        """Test that keyword overrides beat the environment and None is ignored."""
        with patch.dict(os.environ, self.env(PARALLELISM="8"), clear=True):
            config = Config.from_env(parallelism=2, location=None)

        assert config.parallelism == 2
        assert config.location == "northeurope"

    def test_registry_from_env(self) -> None:
        """Test the registry trust boundary is configurable per deployment."""
        env = self.env(
            REGISTRY_SUBSCRIPTION_ID=REGISTRY_SUBSCRIPTION_ID,
            REGISTRY_RESOURCE_GROUP="rg-shared",
        )
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.registry_subscription_id == REGISTRY_SUBSCRIPTION_ID
        assert config.registry_resource_group == "rg-shared"
