"""Secret/output broker.

Holds the outputs captured from applied descriptors for the duration of one
run and resolves references against them. Secret-producing attributes and
secret parameters only leave the broker as SecretValue handles; the plaintext
is unwrapped exclusively when a provider request body is built.

The store is write-once-read-many: each descriptor is captured exactly once,
so a single insertion guard is the only locking needed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from .descriptors import OutputRef, Parameter, ParameterRef, Reference, TemplateValue
from .provider import get_path

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


class UnresolvedReferenceError(Exception):
    """Raised when an output reference targets a descriptor not yet applied.

    This means the graph builder missed an edge. Fatal to the run.
    """

    def __init__(self, ref: OutputRef, reason: str) -> None:
        super().__init__(f"Unresolved reference {ref}: {reason}")
        self.ref = ref


class MissingParameterError(Exception):
    """Raised when a referenced parameter has no bound value."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Parameter '{name}' was never supplied")
        self.name = name


class SecretValue:
    """Opaque handle to a secret. Never renders its plaintext."""

    __slots__ = ("_value",)

    def __init__(self, value: Any) -> None:
        self._value = value

    def reveal(self) -> Any:
        return self._value

    def __repr__(self) -> str:
        return f"SecretValue({REDACTED})"

    def __str__(self) -> str:
        return REDACTED

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SecretValue) and other._value == self._value

    def __hash__(self) -> int:
        return hash(("SecretValue", self._value))


def reveal_secrets(value: Any) -> Any:
    """Unwrap every SecretValue in a tree. Only for the provider channel."""
    if isinstance(value, SecretValue):
        return value.reveal()
    if isinstance(value, Mapping):
        return {key: reveal_secrets(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [reveal_secrets(item) for item in value]
    return value


class OutputBroker:
    """Per-run store of provisioned outputs and resolver of references."""

    def __init__(self, parameters: Mapping[str, Parameter]) -> None:
        self._parameters = parameters
        self._outputs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._secrets: set[str] = set()
        for parameter in parameters.values():
            if parameter.secret and parameter.is_bound:
                self._remember_secret(parameter.effective_value)

    def capture(
        self,
        descriptor_id: str,
        attributes: Mapping[str, Any],
        secret_attributes: Iterable[str] = (),
    ) -> None:
        """Store the outputs of an applied descriptor.

        Raises:
            RuntimeError: If the descriptor was already captured in this run.
        """
        stored = dict(attributes)
        for name in secret_attributes:
            if name in stored and not isinstance(stored[name], SecretValue):
                self._remember_secret(stored[name])
                stored[name] = SecretValue(stored[name])

        with self._lock:
            if descriptor_id in self._outputs:
                raise RuntimeError(f"Outputs of '{descriptor_id}' were already captured")
            self._outputs[descriptor_id] = stored

        logger.debug(
            "Outputs captured",
            extra={"descriptor": descriptor_id, "attributes": sorted(stored)},
        )

    def attributes(self, descriptor_id: str) -> Mapping[str, Any]:
        """Read-only view of a descriptor's captured outputs."""
        return MappingProxyType(self._outputs.get(descriptor_id, {}))

    def resolve_reference(self, ref: Reference) -> Any:
        """Resolve one reference to a value or a SecretValue handle.

        Raises:
            MissingParameterError: If a parameter has no bound value.
            UnresolvedReferenceError: If the target descriptor has not been applied
                or does not expose the attribute.
        """
        if isinstance(ref, ParameterRef):
            parameter = self._parameters.get(ref.name)
            if parameter is None or not parameter.is_bound:
                raise MissingParameterError(ref.name)
            if parameter.secret:
                return SecretValue(parameter.effective_value)
            return parameter.effective_value

        outputs = self._outputs.get(ref.resource)
        if outputs is None:
            raise UnresolvedReferenceError(ref, f"'{ref.resource}' has not been applied")
        try:
            return get_path(outputs, ref.attribute)
        except KeyError:
            raise UnresolvedReferenceError(
                ref, f"'{ref.resource}' has no output attribute '{ref.attribute}'"
            ) from None

    def resolve(self, value: Any) -> Any:
        """Resolve a whole value tree.

        Templates are rendered now, at apply time, so they always see the
        latest outputs. A template embedding any secret becomes a SecretValue.
        """
        if isinstance(value, ParameterRef | OutputRef):
            return self.resolve_reference(value)
        if isinstance(value, TemplateValue):
            return self._render(value)
        if isinstance(value, Mapping):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list | tuple):
            return [self.resolve(item) for item in value]
        return value

    def _render(self, template: TemplateValue) -> str | SecretValue:
        tainted = False

        def lookup(ref: Reference) -> Any:
            nonlocal tainted
            resolved = self.resolve_reference(ref)
            if isinstance(resolved, SecretValue):
                tainted = True
                return resolved.reveal()
            return resolved

        rendered = template.render(lookup)
        if tainted:
            self._remember_secret(rendered)
            return SecretValue(rendered)
        return rendered

    def _remember_secret(self, value: Any) -> None:
        # Every length counts; only the empty string cannot be scrubbed.
        text = "" if value is None else str(value)
        if text:
            with self._lock:
                self._secrets.add(text)

    def redact(self, text: str) -> str:
        """Replace every known secret plaintext in text with [REDACTED]."""
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text


class SecretRedactionFilter(logging.Filter):
    """Scrubs broker secrets from log records (message, args and extras)."""

    _STANDARD_ATTRS = frozenset(
        logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
    ) | {"message", "asctime"}

    def __init__(self, broker: OutputBroker) -> None:
        super().__init__()
        self._broker = broker

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        if isinstance(record.msg, str):
            record.msg = self._broker.redact(record.msg)
        for key, value in list(record.__dict__.items()):
            if key in self._STANDARD_ATTRS:
                continue
            record.__dict__[key] = self._scrub(value)
        return True

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, SecretValue):
            return REDACTED
        if isinstance(value, str):
            return self._broker.redact(value)
        if isinstance(value, Mapping):
            return {key: self._scrub(item) for key, item in value.items()}
        if isinstance(value, list | tuple):
            return [self._scrub(item) for item in value]
        return value
