"""Cross-scope access grants.

Issues role assignments for a principal on a target resource that may live in
a different administrative scope (e.g. AcrPull on a registry shared across
deployments). A grant is a graph node of kind ``roleAssignment``: it runs after
the principal exists and before anything that needs the access.

SECURITY CONSIDERATIONS:
- Assignment names are deterministic (uuid5 of target, role, principal), so
  re-applying the same grant upserts instead of duplicating
- Role identifiers come from the run's Config, never from module state
- Grants are never deleted by the engine; revocation is an out-of-band step
- A permission failure in the foreign scope is fatal to the whole run
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable

from .config import VALID_GUID_PATTERN, Config
from .provider import (
    AuthorizationDeniedError,
    GrantResult,
    ResourceProvider,
    call_with_retry,
)

logger = logging.getLogger(__name__)


class GrantDeniedError(Exception):
    """Raised when the caller lacks rights to assign roles in the target scope.

    Fatal: aborts the run.
    """

    def __init__(
        self, principal_id: str, target_resource_id: str, role_id: str, reason: str
    ) -> None:
        super().__init__(
            f"Role assignment of {role_id} for principal {principal_id} "
            f"on {target_resource_id} was denied: {reason}"
        )
        self.principal_id = principal_id
        self.target_resource_id = target_resource_id
        self.role_id = role_id


def grant_key(target_resource_id: str, role_id: str, principal_id: str) -> str:
    """Deterministic role assignment name for (resource, role, principal).

    Same inputs always give the same GUID, which makes the assignment an upsert.
    """
    return str(
        uuid.uuid5(
            uuid.NAMESPACE_URL,
            f"{target_resource_id.lower()}:{role_id.lower()}:{principal_id.lower()}",
        )
    )


class CrossScopeGrantModule:
    """Issues idempotent role assignments through the provider."""

    def __init__(self, provider: ResourceProvider, config: Config) -> None:
        self._provider = provider
        self._config = config
        self._granted: dict[str, GrantResult] = {}

    def resolve_role(self, role: str) -> str:
        """Map a role name or GUID to a role definition GUID.

        Raises:
            ValueError: If the role is neither a configured name nor a GUID.
        """
        if role in self._config.role_definitions:
            return self._config.role_definitions[role]

        candidate = role.rsplit("/", 1)[-1]
        if re.match(VALID_GUID_PATTERN, candidate.lower()):
            return candidate

        raise ValueError(
            f"Role '{role}' is not a configured role name and is not a valid GUID. "
            f"Configured roles: {sorted(self._config.role_definitions)}"
        )

    async def grant(
        self,
        principal_id: str,
        target_resource_id: str,
        role: str,
        on_attempt: Callable[[int], None] | None = None,
    ) -> GrantResult:
        """Grant role to principal on target_resource_id.

        Args:
            principal_id: Object id of the principal (e.g. a managed identity).
            target_resource_id: Full ARM id of the target, possibly in a foreign scope.
            role: Role name from the configured table, or a role definition GUID.
            on_attempt: Optional callback receiving each attempt number.

        Returns:
            GrantResult; created is False when the grant already existed.

        Raises:
            GrantDeniedError: If the provider refuses the assignment (403).
            TransientProviderError: If retries are exhausted.
            PermanentProviderError: On any other non-retryable failure.
        """
        role_id = self.resolve_role(role)
        key = grant_key(target_resource_id, role_id, principal_id)

        existing = self._granted.get(key)
        if existing is not None:
            logger.info(
                "Role assignment already granted in this run",
                extra={"grant_key": key, "role_id": role_id},
            )
            return GrantResult(
                key=existing.key,
                principal_id=existing.principal_id,
                resource_scope_id=existing.resource_scope_id,
                role_definition_id=existing.role_definition_id,
                created=False,
            )

        try:
            result = await call_with_retry(
                self._provider.assign_role,
                principal_id,
                target_resource_id,
                role_id,
                key,
                operation=f"assign role {role_id}",
                max_attempts=self._config.max_apply_attempts,
                backoff_base_seconds=self._config.retry_backoff_base_seconds,
                timeout_seconds=self._config.apply_timeout_seconds,
                on_attempt=on_attempt,
            )
        except AuthorizationDeniedError as e:
            logger.error(
                "Role assignment denied",
                extra={
                    "grant_key": key,
                    "role_id": role_id,
                    "target_resource_id": target_resource_id,
                    "status_code": e.status_code,
                },
            )
            raise GrantDeniedError(principal_id, target_resource_id, role_id, str(e)) from e

        self._granted[key] = result
        logger.info(
            "Role assignment created" if result.created else "Role assignment already exists",
            extra={
                "grant_key": key,
                "role_id": role_id,
                "target_resource_id": target_resource_id,
                "principal_id": principal_id,
            },
        )
        return result
