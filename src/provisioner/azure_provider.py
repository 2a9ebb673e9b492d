"""Azure Resource Manager binding of the provider collaborator.

Resources are upserted as generic ARM resources by id, which keeps the
engine independent of per-service SDK packages. Role assignments are generic
``Microsoft.Authorization/roleAssignments`` extension resources on the target.
Secret-producing actions (listKeys, sharedKeys) are plain POSTs through an
azure-core pipeline authenticated with the same managed identity.

SECURITY: Secret values arrive as SecretValue handles and are unwrapped only
while the request body is built; they are never logged.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from azure.core import PipelineClient
from azure.core.exceptions import HttpResponseError
from azure.core.pipeline.policies import BearerTokenCredentialPolicy, RetryPolicy
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient

from .broker import reveal_secrets
from .kinds import RESOURCE_KINDS, ROLE_ASSIGNMENT, ResourceKind
from .provider import GrantResult, classify_http_error, get_path

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

    from .scope import ScopeHandle

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
ROLE_ASSIGNMENT_PRINCIPAL_TYPE = "ServicePrincipal"


def _subscription_of(resource_id: str) -> str:
    parts = resource_id.strip("/").split("/")
    if len(parts) < 2 or parts[0].lower() != "subscriptions":
        raise ValueError(f"Not a subscription-scoped resource id: {resource_id}")
    return parts[1]


def _assignment_id(resource_scope_id: str, assignment_name: str) -> str:
    return (
        f"{resource_scope_id}/providers/Microsoft.Authorization/roleAssignments/"
        f"{assignment_name}"
    )


def _attributes_from_resource(resource: Any) -> dict[str, Any]:
    """Flatten a GenericResource into the attribute mapping exposed to references."""
    attributes: dict[str, Any] = dict(resource.properties or {})
    attributes.update(
        {
            "id": resource.id,
            "name": resource.name,
            "type": resource.type,
            "location": resource.location,
        }
    )
    if resource.identity is not None:
        attributes["identity"] = resource.identity.as_dict()
    return attributes


class AzureResourceProvider:
    """ResourceProvider backed by azure-mgmt-resource."""

    def __init__(self, credential: TokenCredential) -> None:
        """Initialize the provider.

        Args:
            credential: Managed identity credential (see security.py).
        """
        self._credential = credential
        self._clients: dict[str, ResourceManagementClient] = {}
        self._clients_lock = threading.Lock()
        self._pipeline = PipelineClient(
            base_url=ARM_ENDPOINT,
            policies=[
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, ARM_SCOPE),
            ],
        )

    def _client_for(self, subscription_id: str) -> ResourceManagementClient:
        """One client per subscription; foreign scopes get their own."""
        with self._clients_lock:
            client = self._clients.get(subscription_id)
            if client is None:
                client = ResourceManagementClient(
                    credential=self._credential,
                    subscription_id=subscription_id,
                )
                self._clients[subscription_id] = client
            return client

    def apply_resource(
        self,
        kind: ResourceKind,
        scope: ScopeHandle,
        name: str,
        body: Mapping[str, Any],
    ) -> dict[str, Any]:
        resource_id = scope.resource_id(kind.arm_type, name)
        client = self._client_for(scope.subscription_id)
        parameters = reveal_secrets(body)
        if not kind.supports_location:
            parameters.pop("location", None)

        logger.info(
            "Applying resource",
            extra={"resource_id": resource_id, "api_version": kind.api_version},
        )
        try:
            poller = client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=kind.api_version,
                parameters=parameters,
            )
            resource = poller.result()
        except HttpResponseError as e:
            raise classify_http_error(e, f"apply {resource_id}") from e

        attributes = _attributes_from_resource(resource)
        attributes.update(self._fetch_secret_attributes(kind, resource_id))
        return attributes

    def read_existing(self, kind: ResourceKind, scope: ScopeHandle, name: str) -> dict[str, Any]:
        resource_id = scope.resource_id(kind.arm_type, name)
        client = self._client_for(scope.subscription_id)

        logger.info("Reading existing resource", extra={"resource_id": resource_id})
        try:
            resource = client.resources.get_by_id(
                resource_id=resource_id,
                api_version=kind.api_version,
            )
        except HttpResponseError as e:
            raise classify_http_error(e, f"read {resource_id}") from e

        attributes = _attributes_from_resource(resource)
        attributes.update(self._fetch_secret_attributes(kind, resource_id))
        return attributes

    def assign_role(
        self,
        principal_id: str,
        resource_scope_id: str,
        role_definition_id: str,
        assignment_name: str,
    ) -> GrantResult:
        """Create the role assignment named assignment_name unless it already exists.

        created is False when the named assignment is already present, and
        also when ARM reports 409 RoleAssignmentExists because the same
        principal/role/scope triple exists under another name; the result
        then carries that assignment's name.
        """
        kind = RESOURCE_KINDS[ROLE_ASSIGNMENT]
        subscription_id = _subscription_of(resource_scope_id)
        client = self._client_for(subscription_id)
        assignment_id = _assignment_id(resource_scope_id, assignment_name)
        role_definition_resource_id = (
            f"/subscriptions/{subscription_id}/providers/"
            f"Microsoft.Authorization/roleDefinitions/{role_definition_id}"
        )

        def result(name: str, created: bool) -> GrantResult:
            return GrantResult(
                key=name,
                principal_id=principal_id,
                resource_scope_id=resource_scope_id,
                role_definition_id=role_definition_id,
                created=created,
            )

        try:
            client.resources.get_by_id(resource_id=assignment_id, api_version=kind.api_version)
        except HttpResponseError as e:
            if e.status_code != 404:
                raise classify_http_error(e, f"read role assignment {assignment_id}") from e
        else:
            return result(assignment_name, created=False)

        parameters = {
            "properties": {
                "roleDefinitionId": role_definition_resource_id,
                "principalId": principal_id,
                "principalType": ROLE_ASSIGNMENT_PRINCIPAL_TYPE,
            }
        }
        try:
            client.resources.begin_create_or_update_by_id(
                resource_id=assignment_id,
                api_version=kind.api_version,
                parameters=parameters,
            ).result()
        except HttpResponseError as e:
            if e.status_code != 409:
                raise classify_http_error(e, f"assign role on {resource_scope_id}") from e
            existing = self._find_assignment(
                resource_scope_id, role_definition_id, principal_id, kind.api_version
            )
            if existing is None:
                raise classify_http_error(e, f"assign role on {resource_scope_id}") from e
            logger.info(
                "Role assignment exists under another name",
                extra={"assignment_name": assignment_name, "existing_name": existing},
            )
            return result(existing, created=False)

        return result(assignment_name, created=True)

    def _find_assignment(
        self,
        resource_scope_id: str,
        role_definition_id: str,
        principal_id: str,
        api_version: str,
    ) -> str | None:
        """Name of the assignment granting role_definition_id to principal_id at the scope."""
        request = HttpRequest(
            "GET",
            f"{ARM_ENDPOINT}{resource_scope_id}/providers/Microsoft.Authorization/roleAssignments",
            params={
                "api-version": api_version,
                "$filter": f"principalId eq '{principal_id}'",
            },
        )
        try:
            response = self._pipeline.send_request(request)
            response.raise_for_status()
        except HttpResponseError as e:
            raise classify_http_error(e, f"list role assignments on {resource_scope_id}") from e

        role_suffix = f"/roledefinitions/{role_definition_id.lower()}"
        for assignment in response.json().get("value", []):
            properties = assignment.get("properties", {})
            if (
                properties.get("roleDefinitionId", "").lower().endswith(role_suffix)
                and properties.get("scope", "").lower() == resource_scope_id.lower()
            ):
                return assignment["name"]
        return None

    def _fetch_secret_attributes(self, kind: ResourceKind, resource_id: str) -> dict[str, Any]:
        action = kind.secret_action
        if action is None:
            return {}

        request = HttpRequest(
            "POST",
            f"{ARM_ENDPOINT}{resource_id}/{action.action}",
            params={"api-version": kind.api_version},
        )
        try:
            response = self._pipeline.send_request(request)
            response.raise_for_status()
        except HttpResponseError as e:
            raise classify_http_error(e, f"{action.action} {resource_id}") from e

        payload = response.json()
        secrets: dict[str, Any] = {}
        for attribute, path in action.attributes.items():
            try:
                secrets[attribute] = get_path(payload, path)
            except KeyError:
                logger.warning(
                    "Secret attribute missing from action response",
                    extra={"resource_id": resource_id, "attribute": attribute},
                )
        return secrets
