"""Secretless provider authentication and the run's security audit trail.

Provider calls authenticate with a managed identity only. Deployment secrets
(database password, signing seed, ...) are manifest parameters owned by the
output broker, never provider credentials.

Grants and cross-scope reads are the security-relevant actions of a run.
Each one becomes an AuditEvent on the run's SecurityAuditTrail: logged with
structured fields, scrubbed by the run's redaction and kept for the report.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Service principal and user credentials picked up by azure-identity
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Selects a user-assigned identity; unset means system-assigned
MANAGED_IDENTITY_CLIENT_ID_ENV = "AZURE_CLIENT_ID"


class SecretlessViolationError(Exception):
    """Raised when provider credentials are found in the environment.

    Fatal: the engine must not start. Only variable names are reported.
    """

    def __init__(self, env_vars: Sequence[str]) -> None:
        self.env_vars = tuple(env_vars)
        super().__init__(
            f"SECURITY VIOLATION: {', '.join(self.env_vars)} set. The provisioner "
            "authenticates with a managed identity only; remove these credentials "
            "from the environment and assign a managed identity to the runner."
        )


def find_credential_leaks(environ: Mapping[str, str]) -> list[str]:
    """Names of forbidden credential variables that carry a value."""
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if environ.get(name)]


def enforce_secretless_architecture(environ: Mapping[str, str] | None = None) -> None:
    """Refuse to run when provider credentials are present.

    Raises:
        SecretlessViolationError: Naming every offending variable.
    """
    leaks = find_credential_leaks(os.environ if environ is None else environ)
    if leaks:
        logger.critical(
            "Provider credentials found in environment",
            extra={"security_event": "credential_detected", "env_vars": leaks},
        )
        raise SecretlessViolationError(leaks)


def managed_identity_credential(
    environ: Mapping[str, str] | None = None,
) -> ManagedIdentityCredential:
    """Build the provider credential for this runner.

    The environment is checked first; AZURE_CLIENT_ID, when set, selects a
    user-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are detected.
    """
    environ = os.environ if environ is None else environ
    enforce_secretless_architecture(environ)

    client_id = environ.get(MANAGED_IDENTITY_CLIENT_ID_ENV) or None
    logger.info(
        "Authenticating with managed identity",
        extra={"identity_type": "user_assigned" if client_id else "system_assigned"},
    )
    if client_id:
        return ManagedIdentityCredential(client_id=client_id)
    return ManagedIdentityCredential()


# =============================================================================
# Audit trail
# =============================================================================


@dataclass(frozen=True)
class AuditEvent:
    """One grant or cross-scope read performed by a run."""

    event_type: str
    descriptor: str
    target_resource: str
    action: str
    result: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, str]:
        return {
            "event_type": self.event_type,
            "descriptor": self.descriptor,
            "target_resource": self.target_resource,
            "action": self.action,
            "result": self.result,
            "timestamp": self.timestamp.isoformat(),
        }


class SecurityAuditTrail:
    """Audit events of a single run.

    Args:
        run_id: Id of the run the events belong to.
        redact: The run's secret scrubber, applied to every free-text field.
        enabled: False turns record() into a no-op (ENABLE_AUDIT_LOGGING).
    """

    def __init__(
        self,
        run_id: str,
        redact: Callable[[str], str] = str,
        enabled: bool = True,
    ) -> None:
        self._run_id = run_id
        self._redact = redact
        self._enabled = enabled
        self._events: list[AuditEvent] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    def record(
        self,
        event_type: str,
        descriptor: str,
        target_resource: str,
        action: str,
        result: str,
    ) -> AuditEvent | None:
        """Log and keep an event; returns None when auditing is disabled."""
        if not self._enabled:
            return None

        event = AuditEvent(
            event_type=event_type,
            descriptor=descriptor,
            target_resource=self._redact(target_resource),
            action=self._redact(action),
            result=result,
        )
        self._events.append(event)
        logger.info(
            f"Security audit: {event_type}",
            extra={
                "security_audit": True,
                "run_id": self._run_id,
                "event_type": event.event_type,
                "descriptor": event.descriptor,
                "target_resource": event.target_resource,
                "action": event.action,
                "result": event.result,
            },
        )
        return event
