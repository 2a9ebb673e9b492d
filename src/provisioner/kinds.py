"""Supported resource kinds and their ARM bindings.

Each kind maps a manifest ``kind:`` to an ARM resource type and api-version,
and declares which output attributes are secret-producing. Secret attributes
are fetched through a POST action after the resource is applied and only
ever leave the broker as opaque handles.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SecretAction:
    """POST action that returns secret attributes (e.g. listKeys)."""

    action: str
    # attribute name exposed to the manifest -> dotted path in the action response
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceKind:
    """ARM binding for one manifest resource kind."""

    name: str
    arm_type: str
    api_version: str
    secret_action: SecretAction | None = None
    supports_location: bool = True

    @property
    def secret_attributes(self) -> frozenset[str]:
        if self.secret_action is None:
            return frozenset()
        return frozenset(self.secret_action.attributes)


ROLE_ASSIGNMENT = "roleAssignment"

RESOURCE_KINDS: dict[str, ResourceKind] = {
    kind.name: kind
    for kind in (
        ResourceKind(
            name="managedIdentity",
            arm_type="Microsoft.ManagedIdentity/userAssignedIdentities",
            api_version="2023-01-31",
        ),
        ResourceKind(
            name="containerRegistry",
            arm_type="Microsoft.ContainerRegistry/registries",
            api_version="2023-07-01",
        ),
        ResourceKind(
            name=ROLE_ASSIGNMENT,
            arm_type="Microsoft.Authorization/roleAssignments",
            api_version="2022-04-01",
            supports_location=False,
        ),
        ResourceKind(
            name="logAnalyticsWorkspace",
            arm_type="Microsoft.OperationalInsights/workspaces",
            api_version="2022-10-01",
            secret_action=SecretAction(
                action="sharedKeys",
                attributes={"primarySharedKey": "primarySharedKey"},
            ),
        ),
        ResourceKind(
            name="redisCache",
            arm_type="Microsoft.Cache/redis",
            api_version="2023-08-01",
            secret_action=SecretAction(
                action="listKeys",
                attributes={"primaryKey": "primaryKey", "secondaryKey": "secondaryKey"},
            ),
        ),
        ResourceKind(
            name="postgresServer",
            arm_type="Microsoft.DBforPostgreSQL/flexibleServers",
            api_version="2023-06-01-preview",
        ),
        ResourceKind(
            name="postgresDatabase",
            arm_type="Microsoft.DBforPostgreSQL/flexibleServers/databases",
            api_version="2023-06-01-preview",
            supports_location=False,
        ),
        ResourceKind(
            name="storageAccount",
            arm_type="Microsoft.Storage/storageAccounts",
            api_version="2023-01-01",
            secret_action=SecretAction(
                action="listKeys",
                attributes={"primaryKey": "keys.0.value"},
            ),
        ),
        ResourceKind(
            name="containerAppEnvironment",
            arm_type="Microsoft.App/managedEnvironments",
            api_version="2023-05-01",
        ),
        ResourceKind(
            name="containerApp",
            arm_type="Microsoft.App/containerApps",
            api_version="2023-05-01",
        ),
    )
}


def get_kind(name: str) -> ResourceKind:
    """Look up a resource kind.

    Raises:
        ValueError: If the kind is not supported.
    """
    kind = RESOURCE_KINDS.get(name)
    if kind is None:
        raise ValueError(f"Unknown resource kind '{name}'. Valid kinds: {sorted(RESOURCE_KINDS)}")
    return kind
