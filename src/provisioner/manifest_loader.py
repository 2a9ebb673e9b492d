"""Manifest loading, parameter binding and static checks.

SECURITY: File operations enforce a size limit. All static checks run before
any provider call, so a broken manifest never produces a partial apply.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, Config
from .descriptors import (
    DescriptorMode,
    OutputRef,
    Parameter,
    ParameterRef,
    ResourceDescriptor,
    ScopeSpec,
    ValueParseError,
    iter_references,
    parse_value,
)
from .kinds import ROLE_ASSIGNMENT, get_kind
from .models import ManifestDocument, ManifestSpec

logger = logging.getLogger(__name__)

PARAMETER_ENV_PREFIX = "PARAM_"
ROLE_ASSIGNMENT_PROPERTIES = ("principalId", "target", "role")


class ManifestError(Exception):
    """Raised when manifest loading or static validation fails."""

    pass


@dataclass(frozen=True)
class Manifest:
    """A loaded manifest: bound parameters, descriptors and run outputs."""

    name: str
    parameters: Mapping[str, Parameter]
    descriptors: tuple[ResourceDescriptor, ...]
    outputs: Mapping[str, Any] = field(default_factory=dict)

    def descriptor(self, name: str) -> ResourceDescriptor:
        for descriptor in self.descriptors:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)

    @property
    def secret_parameters(self) -> set[str]:
        return {name for name, p in self.parameters.items() if p.secret}


def parameter_env_var(name: str) -> str:
    """Environment variable that supplies a parameter: adminPassword -> PARAM_ADMIN_PASSWORD."""
    snake = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).replace("-", "_")
    return PARAMETER_ENV_PREFIX + snake.upper()


def bind_parameters(
    specs: ManifestSpec,
    config: Config,
    inputs: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Parameter]:
    """Bind a value to every declared parameter.

    Precedence: explicit input > PARAM_* environment variable > engine
    built-in (from Config) > inline value > declared default.

    Raises:
        ManifestError: If inputs name parameters the manifest does not declare.
    """
    inputs = dict(inputs or {})
    environ = os.environ if environ is None else environ
    builtins = config.builtin_parameters()

    undeclared = sorted(set(inputs) - set(specs.parameters))
    if undeclared:
        raise ManifestError(f"Inputs given for undeclared parameters: {undeclared}")

    parameters: dict[str, Parameter] = {}
    for name, spec in specs.parameters.items():
        value: Any = None
        source = "default"
        if name in inputs:
            value, source = inputs[name], "input"
        elif parameter_env_var(name) in environ:
            value, source = environ[parameter_env_var(name)], "environment"
        elif name in builtins:
            value, source = builtins[name], "config"
        elif spec.value is not None:
            value, source = spec.value, "manifest"

        parameters[name] = Parameter(
            name=name,
            value=value,
            default=spec.default,
            secret=spec.secret,
            description=spec.description,
        )
        logger.debug(
            "Parameter bound",
            extra={
                "parameter": name,
                "source": source if parameters[name].is_bound else "unbound",
                "secret": spec.secret,
            },
        )
    return parameters


def _build_descriptors(spec: ManifestSpec) -> tuple[ResourceDescriptor, ...]:
    descriptors: list[ResourceDescriptor] = []
    for name, resource in spec.resources.items():
        try:
            scope = ScopeSpec()
            if resource.scope is not None:
                scope = ScopeSpec(
                    subscription_id=parse_value(resource.scope.subscription_id),
                    resource_group=parse_value(resource.scope.resource_group),
                )
            descriptors.append(
                ResourceDescriptor(
                    name=name,
                    kind=resource.kind,
                    mode=DescriptorMode.EXISTING if resource.existing else DescriptorMode.MANAGED,
                    scope=scope,
                    resource_name=parse_value(
                        resource.resource_name if resource.resource_name is not None else name
                    ),
                    location=parse_value(resource.location),
                    properties=parse_value(resource.properties),
                    depends_on=tuple(resource.depends_on),
                )
            )
        except ValueParseError as e:
            raise ManifestError(f"Resource '{name}': {e}") from e
    return tuple(descriptors)


def check_manifest(manifest: Manifest, config: Config) -> None:
    """Run the static checks that must pass before any provider call.

    Raises:
        ManifestError: Listing every problem found.
    """
    errors: list[str] = []
    by_name = {d.name: d for d in manifest.descriptors}

    if len(manifest.descriptors) > config.security.max_resources_per_run:
        errors.append(
            f"manifest declares {len(manifest.descriptors)} resources, "
            f"maximum is {config.security.max_resources_per_run}"
        )

    for descriptor in manifest.descriptors:
        for ref in descriptor.references():
            if isinstance(ref, ParameterRef) and ref.name not in manifest.parameters:
                errors.append(f"'{descriptor.name}' references undeclared parameter '{ref.name}'")
            elif isinstance(ref, OutputRef):
                if ref.resource not in by_name:
                    errors.append(
                        f"'{descriptor.name}' references undeclared resource '{ref.resource}'"
                    )
                elif descriptor.is_existing:
                    errors.append(
                        f"existing resource '{descriptor.name}' may only reference parameters"
                    )

        for dep in descriptor.depends_on:
            if dep not in by_name:
                errors.append(f"'{descriptor.name}' dependsOn undeclared resource '{dep}'")

        if descriptor.kind == ROLE_ASSIGNMENT:
            if descriptor.is_existing:
                errors.append(f"role assignment '{descriptor.name}' cannot be 'existing'")
            missing = [p for p in ROLE_ASSIGNMENT_PROPERTIES if p not in descriptor.properties]
            if missing:
                errors.append(f"role assignment '{descriptor.name}' is missing {missing}")

    for output_name, value in manifest.outputs.items():
        for ref in iter_references(value):
            if isinstance(ref, ParameterRef):
                parameter = manifest.parameters.get(ref.name)
                if parameter is None:
                    errors.append(f"output '{output_name}' references undeclared parameter")
                elif parameter.secret:
                    errors.append(
                        f"output '{output_name}' would expose secret parameter '{ref.name}'"
                    )
            else:
                target = by_name.get(ref.resource)
                if target is None:
                    errors.append(
                        f"output '{output_name}' references undeclared resource '{ref.resource}'"
                    )
                elif ref.attribute.split(".", 1)[0] in get_kind(target.kind).secret_attributes:
                    errors.append(
                        f"output '{output_name}' would expose secret attribute "
                        f"'{ref.resource}.{ref.attribute}'"
                    )

    if errors:
        raise ManifestError(
            f"Manifest '{manifest.name}' failed validation:\n  - " + "\n  - ".join(errors)
        )


def parse_manifest(
    raw_data: Any,
    config: Config,
    inputs: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
    source: str = "<memory>",
) -> Manifest:
    """Validate raw manifest data and build descriptors.

    Raises:
        ManifestError: If the data is invalid.
    """
    if not isinstance(raw_data, dict):
        raise ManifestError(f"Manifest must contain a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" not in raw_data and "spec" not in raw_data:
        raw_data = {"apiVersion": "provisioner/v1", "spec": raw_data}

    try:
        document = ManifestDocument.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ManifestError(f"Validation failed for {source}:\n{error_list}") from e

    manifest = Manifest(
        name=document.metadata.name,
        parameters=bind_parameters(document.spec, config, inputs, environ),
        descriptors=_build_descriptors(document.spec),
        outputs={
            name: _parse_output(name, value) for name, value in document.spec.outputs.items()
        },
    )
    check_manifest(manifest, config)
    return manifest


def _parse_output(name: str, value: Any) -> Any:
    try:
        return parse_value(value)
    except ValueParseError as e:
        raise ManifestError(f"Output '{name}': {e}") from e


def load_manifest(
    path: Path,
    config: Config,
    inputs: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Manifest:
    """Load, validate and bind a manifest file.

    Args:
        path: Manifest YAML file.
        config: Run configuration (built-in parameters, limits).
        inputs: Explicit parameter values, e.g. from the CLI.
        environ: Environment used for PARAM_* lookups (default: os.environ).

    Returns:
        Loaded manifest with immutable descriptors.

    Raises:
        ManifestError: If the manifest cannot be loaded or fails validation.
    """
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e

    manifest = parse_manifest(raw_data, config, inputs, environ, source=str(path))
    logger.info(
        "Loaded manifest '%s' from %s (%d resources)",
        manifest.name,
        path,
        len(manifest.descriptors),
    )
    return manifest
