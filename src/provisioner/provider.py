"""Provider collaborator interface, error taxonomy and retry policy.

The engine talks to the cloud only through a ResourceProvider. Provider
methods are blocking (like the Azure SDK) and are run in the default executor
with a timeout. Transient failures are retried with bounded exponential
backoff; everything else propagates to the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

if TYPE_CHECKING:
    from azure.core.exceptions import HttpResponseError

    from .kinds import ResourceKind
    from .scope import ScopeHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes worth retrying: timeout, throttling and server errors
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ProviderError(Exception):
    """Base class for failures reported by the provider collaborator."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, throttling and server errors. Retried."""

    pass


class PermanentProviderError(ProviderError):
    """Non-retryable failure. Fatal to the descriptor and its dependents."""

    pass


class NotFoundError(PermanentProviderError):
    """An existing resource could not be read."""

    pass


class AuthorizationDeniedError(PermanentProviderError):
    """The caller lacks permission for the operation (HTTP 403)."""

    pass


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a role assignment."""

    key: str
    principal_id: str
    resource_scope_id: str
    role_definition_id: str
    created: bool

    @property
    def assignment_id(self) -> str:
        return (
            f"{self.resource_scope_id}/providers/Microsoft.Authorization/roleAssignments/"
            f"{self.key}"
        )

    def as_attributes(self) -> dict[str, Any]:
        return {
            "id": self.assignment_id,
            "name": self.key,
            "principalId": self.principal_id,
            "scope": self.resource_scope_id,
            "roleDefinitionId": self.role_definition_id,
            "created": self.created,
        }


class ResourceProvider(Protocol):
    """Creates/updates and reads cloud resources."""

    def apply_resource(
        self,
        kind: ResourceKind,
        scope: ScopeHandle,
        name: str,
        body: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Create or update a resource; return its live attributes.

        Must be idempotent: reapplying an already-correct resource is a no-op
        or a safe update.
        """
        ...

    def read_existing(self, kind: ResourceKind, scope: ScopeHandle, name: str) -> dict[str, Any]:
        """Read a resource the engine does not own.

        Raises:
            NotFoundError: If the resource does not exist.
        """
        ...

    def assign_role(
        self,
        principal_id: str,
        resource_scope_id: str,
        role_definition_id: str,
        assignment_name: str,
    ) -> GrantResult:
        """Ensure principal_id holds role_definition_id at resource_scope_id.

        The result key is assignment_name, or the name of an equivalent
        assignment that already existed under another name (created=False).
        """
        ...


def classify_http_error(error: HttpResponseError, operation: str) -> ProviderError:
    """Map an Azure SDK HTTP error onto the provider error taxonomy."""
    status = error.status_code
    message = f"{operation} failed ({status}): {error.message}"
    if status == 404:
        return NotFoundError(message, status_code=status)
    if status == 403:
        return AuthorizationDeniedError(message, status_code=status)
    if status is None or status in TRANSIENT_STATUS_CODES:
        return TransientProviderError(message, status_code=status)
    return PermanentProviderError(message, status_code=status)


def get_path(data: Any, path: str) -> Any:
    """Resolve a dotted path through nested mappings and lists.

    Raises:
        KeyError: If any segment is missing.
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise KeyError(path)
    return current


async def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    operation: str,
    max_attempts: int,
    backoff_base_seconds: float,
    timeout_seconds: float,
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Run a blocking provider call with timeout and exponential backoff retry.

    Args:
        func: Provider method to call.
        *args: Positional arguments for func.
        operation: Human-readable name for logging.
        max_attempts: Total attempts including the first.
        backoff_base_seconds: Backoff for the first retry; doubles each time.
        timeout_seconds: Timeout for each attempt.
        on_attempt: Optional callback receiving the attempt number.

    Returns:
        The provider call's result.

    Raises:
        TransientProviderError: If all attempts fail transiently.
        ProviderError: Any non-transient provider failure, immediately.
    """
    loop = asyncio.get_running_loop()
    last_error: TransientProviderError | None = None

    for attempt in range(1, max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: func(*args)),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            last_error = TransientProviderError(
                f"{operation} timed out after {timeout_seconds}s"
            )
        except TransientProviderError as e:
            last_error = e

        if attempt < max_attempts:
            # Exponential backoff with jitter
            backoff = backoff_base_seconds * (2 ** (attempt - 1))
            jitter = random.uniform(0, backoff * 0.2)
            wait_time = backoff + jitter

            logger.warning(
                "Provider call failed, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": wait_time,
                    "error": str(last_error),
                },
            )
            await asyncio.sleep(wait_time)

    # SAFETY: Loop runs at least once, so last_error is set before reaching here
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise last_error
