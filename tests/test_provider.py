"""Tests for the provider error taxonomy and retry policy."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from azure_mock import http_error
from provisioner.provider import (
    AuthorizationDeniedError,
    GrantResult,
    NotFoundError,
    PermanentProviderError,
    TransientProviderError,
    call_with_retry,
    classify_http_error,
    get_path,
)


class TestClassifyHttpError:
    """Tests for mapping SDK errors onto provider errors."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (404, NotFoundError),
            (403, AuthorizationDeniedError),
            (400, PermanentProviderError),
            (409, PermanentProviderError),
            (408, TransientProviderError),
            (429, TransientProviderError),
            (500, TransientProviderError),
            (503, TransientProviderError),
        ],
    )
    def test_status_codes(self, status: int, expected: type) -> None:
        """Test each status class."""
        error = classify_http_error(http_error(status, "boom"), "apply cache")

        assert type(error) is expected
        assert error.status_code == status
        assert "apply cache failed" in str(error)

    def test_missing_status_is_transient(self) -> None:
        """Test errors without a status code (connection resets) are retried."""
        error = classify_http_error(http_error(None, "connection reset"), "read registry")

        assert isinstance(error, TransientProviderError)


class TestGetPath:
    """Tests for dotted attribute paths."""

    DATA = {"configuration": {"ingress": {"fqdn": "app.io"}}, "keys": [{"value": "k1"}]}

    def test_nested_mapping(self) -> None:
        """Test mapping segments."""
        assert get_path(self.DATA, "configuration.ingress.fqdn") == "app.io"

    def test_list_index(self) -> None:
        """Test numeric segments index lists."""
        assert get_path(self.DATA, "keys.0.value") == "k1"

    @pytest.mark.parametrize("path", ["missing", "configuration.egress", "keys.5.value"])
    def test_missing(self, path: str) -> None:
        """Test missing segments raise KeyError."""
        with pytest.raises(KeyError):
            get_path(self.DATA, path)


class TestGrantResult:
    """Tests for GrantResult."""

    def test_attributes(self) -> None:
        """Test the attributes captured for a grant descriptor."""
        result = GrantResult(
            key="k", principal_id="p", resource_scope_id="/r", role_definition_id="d", created=True
        )

        attributes = result.as_attributes()

        assert attributes["id"] == "/r/providers/Microsoft.Authorization/roleAssignments/k"
        assert attributes["created"] is True


def retry_kwargs(**overrides: object) -> dict:
    values: dict = {
        "operation": "apply cache",
        "max_attempts": 3,
        "backoff_base_seconds": 0,
        "timeout_seconds": 5,
    }
    values.update(overrides)
    return values


class TestCallWithRetry:
    """Tests for call_with_retry()."""

    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        """Test arguments are passed through."""
        func = MagicMock(return_value={"id": "/x"})

        result = await call_with_retry(func, "a", "b", **retry_kwargs())

        assert result == {"id": "/x"}
        func.assert_called_once_with("a", "b")

    @pytest.mark.asyncio
    async def test_transient_then_success(self) -> None:
        """Test transient failures are retried."""
        func = MagicMock(side_effect=[TransientProviderError("429"), {"id": "/x"}])
        attempts: list[int] = []

        result = await call_with_retry(func, **retry_kwargs(on_attempt=attempts.append))

        assert result == {"id": "/x"}
        assert attempts == [1, 2]

    @pytest.mark.asyncio
    async def test_exhausted(self) -> None:
        """Test the last transient error is raised after max attempts."""
        func = MagicMock(side_effect=TransientProviderError("503", status_code=503))

        with pytest.raises(TransientProviderError) as exc_info:
            await call_with_retry(func, **retry_kwargs())

        assert exc_info.value.status_code == 503
        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self) -> None:
        """Test permanent failures propagate immediately."""
        func = MagicMock(side_effect=PermanentProviderError("400", status_code=400))

        with pytest.raises(PermanentProviderError):
            await call_with_retry(func, **retry_kwargs())

        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        """Test a hung call times out and counts as a transient failure."""

        def slow() -> None:
            time.sleep(0.3)

        with pytest.raises(TransientProviderError) as exc_info:
            await call_with_retry(
                slow, **retry_kwargs(max_attempts=1, timeout_seconds=0.05)
            )

        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_backoff_doubles(self) -> None:
        """Test exponential backoff between attempts."""
        func = MagicMock(side_effect=TransientProviderError("503"))

        with patch(
            "provisioner.provider.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep, patch("provisioner.provider.random.uniform", return_value=0):
            with pytest.raises(TransientProviderError):
                await call_with_retry(func, **retry_kwargs(backoff_base_seconds=1.0))

        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]
