"""Shared builders for tests: configs and in-memory manifests."""

from __future__ import annotations

from typing import Any

from provisioner.config import Config
from provisioner.manifest_loader import Manifest, parse_manifest

SUBSCRIPTION_ID = "11111111-1111-1111-1111-111111111111"
REGISTRY_SUBSCRIPTION_ID = "22222222-2222-2222-2222-222222222222"
RESOURCE_GROUP = "rg-app-dev"
REGISTRY_RESOURCE_GROUP = "rg-shared-registry"

ADMIN_PASSWORD = "Sup3r-Secret-Admin-Pw"
SIGNING_SEED = "seed-9f8e7d6c5b4a"


def make_config(**overrides: Any) -> Config:
    """A valid Config with instant retries."""
    values: dict[str, Any] = {
        "environment": "dev",
        "subscription_id": SUBSCRIPTION_ID,
        "location": "westeurope",
        "resource_group_name": RESOURCE_GROUP,
        "registry_subscription_id": REGISTRY_SUBSCRIPTION_ID,
        "registry_resource_group": REGISTRY_RESOURCE_GROUP,
        "retry_backoff_base_seconds": 0,
        "apply_timeout_seconds": 30,
    }
    values.update(overrides)
    return Config(**values)


def make_manifest(
    resources: dict[str, Any],
    parameters: dict[str, Any] | None = None,
    outputs: dict[str, Any] | None = None,
    config: Config | None = None,
    inputs: dict[str, str] | None = None,
    name: str = "test-stack",
) -> Manifest:
    """Parse an in-memory manifest with an empty PARAM_* environment."""
    raw = {
        "apiVersion": "provisioner/v1",
        "kind": "Manifest",
        "metadata": {"name": name},
        "spec": {
            "parameters": parameters or {},
            "resources": resources,
            "outputs": outputs or {},
        },
    }
    return parse_manifest(raw, config or make_config(), inputs=inputs, environ={})


def app_stack_resources() -> dict[str, Any]:
    """Identity, foreign registry, pull grant, database, cache and service."""
    return {
        "identity": {"kind": "managedIdentity"},
        "registry": {
            "kind": "containerRegistry",
            "existing": True,
            "resourceName": "crshared",
            "scope": {
                "subscriptionId": {"$param": "registrySubscriptionId"},
                "resourceGroup": {"$param": "registryResourceGroup"},
            },
        },
        "pull": {
            "kind": "roleAssignment",
            "properties": {
                "principalId": {"$output": "identity.principalId"},
                "target": {"$output": "registry.id"},
                "role": "AcrPull",
            },
        },
        "database": {
            "kind": "postgresServer",
            "properties": {
                "properties": {
                    "administratorLogin": "pgadmin",
                    "administratorLoginPassword": {"$param": "adminPassword"},
                }
            },
        },
        "cache": {"kind": "redisCache"},
        "service": {
            "kind": "containerApp",
            "dependsOn": ["pull"],
            "properties": {
                "properties": {
                    "configuration": {
                        "ingress": {"external": True, "targetPort": 8080},
                        "secrets": [
                            {
                                "name": "database-url",
                                "value": {
                                    "$template": (
                                        "postgres://pgadmin:${param:adminPassword}"
                                        "@${output:database.fullyQualifiedDomainName}:5432/app"
                                    )
                                },
                            },
                            {
                                "name": "redis-url",
                                "value": {
                                    "$template": (
                                        "rediss://:${output:cache.primaryKey}"
                                        "@${output:cache.hostName}:${output:cache.sslPort}"
                                    )
                                },
                            },
                            {"name": "signing-seed", "value": {"$param": "signingSeed"}},
                        ],
                    },
                    "template": {
                        "containers": [
                            {
                                "name": "web",
                                "image": {
                                    "$template": (
                                        "${output:registry.loginServer}/app:${param:imageTag}"
                                    )
                                },
                            }
                        ]
                    },
                }
            },
        },
    }


APP_STACK_PARAMETERS: dict[str, Any] = {
    "imageTag": None,
    "registrySubscriptionId": None,
    "registryResourceGroup": None,
    "adminPassword": {"secret": True},
    "signingSeed": {"secret": True},
}

APP_STACK_OUTPUTS: dict[str, Any] = {
    "publicUrl": {"$template": "https://${output:service.configuration.ingress.fqdn}"},
}


def app_stack_manifest(config: Config | None = None, **overrides: Any) -> Manifest:
    inputs = {"adminPassword": ADMIN_PASSWORD, "signingSeed": SIGNING_SEED}
    inputs.update(overrides.pop("inputs", {}))
    return make_manifest(
        resources=overrides.pop("resources", app_stack_resources()),
        parameters=overrides.pop("parameters", APP_STACK_PARAMETERS),
        outputs=overrides.pop("outputs", APP_STACK_OUTPUTS),
        config=config,
        inputs=inputs,
        name="app-stack",
    )
