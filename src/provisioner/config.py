"""Configuration management with validation.

A single Config is constructed once per run and passed down to the scope
resolver, the grant module and the orchestrator. Nothing in the engine reads
process-wide mutable state after this point.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_PARALLELISM = 4
MIN_PARALLELISM = 1
MAX_PARALLELISM = 16

DEFAULT_APPLY_TIMEOUT_SECONDS = 1800
MAX_APPLY_ATTEMPTS = 3
MAX_ALLOWED_APPLY_ATTEMPTS = 10
RETRY_BACKOFF_BASE_SECONDS = 5

DEFAULT_MANIFEST_PATH = "/manifests/stack.yaml"
DEFAULT_IMAGE_TAG = "latest"

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
DEFAULT_MAX_RESOURCES_PER_RUN = 100

# Input validation patterns
VALID_ENVIRONMENT_PATTERN = r"^[a-z][a-z0-9-]{0,14}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_GUID_PATTERN = VALID_SUBSCRIPTION_ID_PATTERN
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"

# Well-known Azure built-in role GUIDs (identical across all tenants)
BUILTIN_ROLE_DEFINITIONS: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "AcrPull": "7f951dda-4ed3-4680-a7ca-43fe172d538d",
    "AcrPush": "8311e382-0749-4cb8-b61a-304f252e45ec",
    "Key Vault Secrets User": "4633458b-17de-408a-b874-0445c86b69e6",
    "Storage Blob Data Contributor": "ba92f5b4-2d11-453d-a403-e96b0029c9fe",
    "Storage Blob Data Reader": "2a2b9908-6ea1-4ae2-8e65-a410df84e7d1",
    "Monitoring Metrics Publisher": "3913510d-42f4-4e42-8a64-420c390055eb",
    "Log Analytics Reader": "73c42c96-874c-492b-b04d-ab87d138a893",
}


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    SECRETLESS PROVIDER ACCESS:
    Provider calls authenticate with a managed identity only. Secret
    parameters (database admin password, signing seed, storage password,
    master secret) flow through the output broker and are redacted from
    every log record and report.
    """

    # Maximum descriptors per manifest to prevent runaway runs
    max_resources_per_run: int = DEFAULT_MAX_RESOURCES_PER_RUN

    # Enable structured audit logging (JSON format to stdout)
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    environment: str
    subscription_id: str
    location: str
    resource_group_name: str

    manifest_path: Path = field(default_factory=lambda: Path(DEFAULT_MANIFEST_PATH))
    image_tag: str = DEFAULT_IMAGE_TAG

    # Shared registry trust boundary. Configurable per deployment; when unset,
    # manifests must supply registrySubscriptionId/registryResourceGroup.
    registry_subscription_id: str | None = None
    registry_resource_group: str | None = None

    # Scheduling
    parallelism: int = DEFAULT_PARALLELISM
    max_apply_attempts: int = MAX_APPLY_ATTEMPTS
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False

    role_definitions: dict[str, str] = field(
        default_factory=lambda: dict(BUILTIN_ROLE_DEFINITIONS)
    )

    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.environment:
            errors.append("ENVIRONMENT is required")
        elif not re.match(VALID_ENVIRONMENT_PATTERN, self.environment):
            errors.append(
                f"ENVIRONMENT must match pattern {VALID_ENVIRONMENT_PATTERN}: {self.environment}"
            )

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if self.registry_subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.registry_subscription_id.lower()
        ):
            errors.append(
                f"REGISTRY_SUBSCRIPTION_ID must be a valid GUID: {self.registry_subscription_id}"
            )

        if bool(self.registry_subscription_id) != bool(self.registry_resource_group):
            errors.append(
                "REGISTRY_SUBSCRIPTION_ID and REGISTRY_RESOURCE_GROUP must be set together"
            )

        if not (MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM):
            errors.append(
                f"PARALLELISM must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}"
            )

        if not (1 <= self.max_apply_attempts <= MAX_ALLOWED_APPLY_ATTEMPTS):
            errors.append(
                f"MAX_APPLY_ATTEMPTS must be between 1 and {MAX_ALLOWED_APPLY_ATTEMPTS}"
            )

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.apply_timeout_seconds < 1:
            errors.append("APPLY_TIMEOUT must be at least 1 second")

        for role_name, role_id in self.role_definitions.items():
            if not re.match(VALID_GUID_PATTERN, role_id.lower()):
                errors.append(f"Role definition '{role_name}' is not a valid GUID: {role_id}")

        if self.security.max_resources_per_run < 1:
            errors.append("max_resources_per_run must be at least 1")
        elif self.security.max_resources_per_run > 800:
            # ARM limit is 800 resources per deployment
            errors.append("max_resources_per_run cannot exceed 800 (ARM limit)")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def primary_scope(self) -> tuple[str, str]:
        """(subscription_id, resource_group_name) of the deployment's own scope."""
        return self.subscription_id, self.resource_group_name

    def builtin_parameters(self) -> dict[str, str]:
        """Parameter values the engine supplies when a manifest declares them."""
        params = {
            "environment": self.environment,
            "location": self.location,
            "imageTag": self.image_tag,
            "subscriptionId": self.subscription_id,
            "resourceGroupName": self.resource_group_name,
        }
        if self.registry_subscription_id and self.registry_resource_group:
            params["registrySubscriptionId"] = self.registry_subscription_id
            params["registryResourceGroup"] = self.registry_resource_group
        return params

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (e.g. from CLI options) win over the environment;
        None values are ignored.

        Environment Variables:
            ENVIRONMENT: Environment label used for naming (dev, test, prod)
            AZURE_SUBSCRIPTION_ID: Primary deployment subscription
            AZURE_LOCATION: Default region for managed resources
            RESOURCE_GROUP_NAME: Primary deployment resource group
            MANIFEST_PATH: Manifest file (default: /manifests/stack.yaml)
            IMAGE_TAG: Application image tag (default: latest)
            REGISTRY_SUBSCRIPTION_ID: Subscription of the shared registry
            REGISTRY_RESOURCE_GROUP: Resource group of the shared registry
            PARALLELISM: Concurrent applies (default: 4)
            MAX_APPLY_ATTEMPTS: Attempts per descriptor (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Backoff base (default: 5)
            APPLY_TIMEOUT: Per-call timeout in seconds (default: 1800)
            DRY_RUN: If "true", plan only (default: false)

        Security Variables:
            MAX_RESOURCES_PER_RUN: Max descriptors per manifest (default: 100)
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, object] = {
            "environment": os.environ.get("ENVIRONMENT", ""),
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            "location": os.environ.get("AZURE_LOCATION", ""),
            "resource_group_name": os.environ.get("RESOURCE_GROUP_NAME", ""),
            "manifest_path": Path(os.environ.get("MANIFEST_PATH", DEFAULT_MANIFEST_PATH)),
            "image_tag": os.environ.get("IMAGE_TAG", DEFAULT_IMAGE_TAG),
            "registry_subscription_id": os.environ.get("REGISTRY_SUBSCRIPTION_ID") or None,
            "registry_resource_group": os.environ.get("REGISTRY_RESOURCE_GROUP") or None,
            "parallelism": get_int("PARALLELISM", DEFAULT_PARALLELISM),
            "max_apply_attempts": get_int("MAX_APPLY_ATTEMPTS", MAX_APPLY_ATTEMPTS),
            "retry_backoff_base_seconds": get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            "apply_timeout_seconds": get_int("APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            "dry_run": get_bool("DRY_RUN", False),
            "security": SecurityConfig(
                max_resources_per_run=get_int(
                    "MAX_RESOURCES_PER_RUN", DEFAULT_MAX_RESOURCES_PER_RUN
                ),
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]
