"""Tests for secretless provider authentication and the run audit trail.

The engine must refuse to start when service principal or password
credentials are present, must only ever build managed identity credentials,
and must keep secrets out of audit events.
"""

from __future__ import annotations

import logging
from unittest import mock

import pytest

from provisioner.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    SecurityAuditTrail,
    enforce_secretless_architecture,
    find_credential_leaks,
    managed_identity_credential,
)

REGISTRY_ID = (
    "/subscriptions/x/resourceGroups/y/providers/Microsoft.ContainerRegistry/registries/cr"
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        enforce_secretless_architecture({})

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with pytest.raises(SecretlessViolationError) as exc_info:
            enforce_secretless_architecture({env_var: "some-secret-value"})

        assert exc_info.value.env_vars == (env_var,)
        assert "SECURITY VIOLATION" in str(exc_info.value)

    def test_every_leak_reported(self) -> None:
        """Test all offending variables are named at once."""
        environ = {"AZURE_CLIENT_SECRET": "a", "AZURE_PASSWORD": "b"}

        with pytest.raises(SecretlessViolationError) as exc_info:
            enforce_secretless_architecture(environ)

        assert exc_info.value.env_vars == ("AZURE_CLIENT_SECRET", "AZURE_PASSWORD")

    def test_violation_message_never_contains_value(self) -> None:
        """Test that the leaked credential value is not echoed."""
        with pytest.raises(SecretlessViolationError) as exc_info:
            enforce_secretless_architecture({"AZURE_CLIENT_SECRET": "leaked-value-123"})

        assert "leaked-value-123" not in str(exc_info.value)

    def test_reads_process_environment_by_default(self) -> None:
        """Test os.environ is checked when no mapping is given."""
        with mock.patch.dict("os.environ", {"AZURE_USERNAME": "user"}, clear=True):
            with pytest.raises(SecretlessViolationError):
                enforce_secretless_architecture()

    def test_empty_value_and_parameters_ignored(self) -> None:
        """Test empty variables and PARAM_* deployment secrets are not credentials."""
        environ = {"AZURE_CLIENT_SECRET": "", "PARAM_ADMIN_PASSWORD": "pw"}

        assert find_credential_leaks(environ) == []


class TestManagedIdentityCredential:
    """Tests for the provider credential factory."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that the factory enforces secretless first."""
        with mock.patch("provisioner.security.ManagedIdentityCredential") as credential_class:
            with pytest.raises(SecretlessViolationError):
                managed_identity_credential({"AZURE_CLIENT_SECRET": "secret"})

        credential_class.assert_not_called()

    @mock.patch("provisioner.security.ManagedIdentityCredential")
    def test_system_assigned_by_default(self, credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used without AZURE_CLIENT_ID."""
        result = managed_identity_credential({})

        credential_class.assert_called_once_with()
        assert result is credential_class.return_value

    @mock.patch("provisioner.security.ManagedIdentityCredential")
    def test_user_assigned_from_client_id(self, credential_class: mock.Mock) -> None:
        """Test that AZURE_CLIENT_ID selects a user-assigned identity."""
        result = managed_identity_credential({"AZURE_CLIENT_ID": "client-id-12345"})

        credential_class.assert_called_once_with(client_id="client-id-12345")
        assert result is credential_class.return_value


class TestSecurityAuditTrail:
    """Tests for per-run audit events."""

    def test_record_logs_and_keeps_event(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that audit events carry structured fields and are kept."""
        trail = SecurityAuditTrail("run-1")

        with caplog.at_level(logging.INFO, logger="provisioner.security"):
            event = trail.record("grant", "pull", REGISTRY_ID, "assign AcrPull", "created")

        record = caplog.records[-1]
        assert record.getMessage() == "Security audit: grant"
        assert record.security_audit is True
        assert record.run_id == "run-1"
        assert record.descriptor == "pull"
        assert record.result == "created"
        assert trail.events == [event]
        assert event is not None
        assert event.to_dict()["target_resource"] == REGISTRY_ID

    def test_fields_redacted(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test free-text fields go through the run's redaction."""
        trail = SecurityAuditTrail("run-1", lambda text: text.replace("hunter2", "[REDACTED]"))

        with caplog.at_level(logging.INFO, logger="provisioner.security"):
            event = trail.record("grant", "pull", "/x/hunter2", "assign hunter2", "denied")

        assert event is not None
        assert event.target_resource == "/x/[REDACTED]"
        assert event.action == "assign [REDACTED]"
        assert "hunter2" not in caplog.text

    def test_disabled_trail_records_nothing(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test ENABLE_AUDIT_LOGGING=false silences the trail."""
        trail = SecurityAuditTrail("run-1", enabled=False)

        with caplog.at_level(logging.INFO, logger="provisioner.security"):
            assert trail.record("grant", "pull", REGISTRY_ID, "assign", "created") is None

        assert trail.events == []
        assert caplog.records == []
