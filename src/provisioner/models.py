"""Pydantic models for manifest documents with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation into immutable resource descriptors
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .kinds import RESOURCE_KINDS

# Logical names appear inside ${output:<name>.<attr>} references, so they must
# not contain dots.
VALID_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,63}$"

MANIFEST_API_VERSION = "provisioner/v1"


def _validate_names(names: list[str], what: str) -> None:
    invalid = [name for name in names if not re.match(VALID_NAME_PATTERN, name)]
    if invalid:
        raise ValueError(f"{what} names must match {VALID_NAME_PATTERN}: {invalid}")


# =============================================================================
# Parameters
# =============================================================================


class ParameterSpec(BaseModel):
    """Declared manifest input."""

    model_config = {"extra": "forbid"}

    description: str | None = None
    secret: bool = False
    default: Any = None
    value: Any = None

    @model_validator(mode="after")
    def validate_secret_not_inlined(self) -> ParameterSpec:
        # Secrets must be supplied at run time, never committed in a manifest
        if self.secret and (self.value is not None or self.default is not None):
            raise ValueError("secret parameters cannot carry an inline value or default")
        return self


# =============================================================================
# Resources
# =============================================================================


class ScopeSpecModel(BaseModel):
    """Administrative boundary of a resource. Omitted fields mean the primary scope."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    subscription_id: Any = Field(None, alias="subscriptionId")
    resource_group: Any = Field(None, alias="resourceGroup")


class ResourceSpec(BaseModel):
    """One resource declaration."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: str
    existing: bool = False
    resource_name: Any = Field(None, alias="resourceName")
    location: Any = None
    scope: ScopeSpecModel | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in RESOURCE_KINDS:
            raise ValueError(f"kind must be one of {sorted(RESOURCE_KINDS)}")
        return v

    @field_validator("properties", mode="before")
    @classmethod
    def default_properties(cls, v: Any) -> Any:
        return {} if v is None else v


# =============================================================================
# Manifest
# =============================================================================


class ManifestMetadata(BaseModel):
    """Manifest metadata."""

    model_config = {"extra": "ignore"}

    name: str = "manifest"
    labels: dict[str, str] = Field(default_factory=dict)


class ManifestSpec(BaseModel):
    """Parameters, resources and run outputs of a manifest."""

    model_config = {"extra": "forbid"}

    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    resources: dict[str, ResourceSpec]
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def default_parameter_specs(cls, v: Any) -> Any:
        # `environment:` with no body declares a plain required parameter
        if isinstance(v, dict):
            return {name: ({} if spec is None else spec) for name, spec in v.items()}
        return {} if v is None else v

    @field_validator("parameters")
    @classmethod
    def validate_parameter_names(cls, v: dict[str, ParameterSpec]) -> dict[str, ParameterSpec]:
        _validate_names(list(v), "Parameter")
        return v

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: dict[str, ResourceSpec]) -> dict[str, ResourceSpec]:
        if not v:
            raise ValueError("manifest must declare at least one resource")
        _validate_names(list(v), "Resource")
        return v

    @field_validator("outputs")
    @classmethod
    def validate_output_names(cls, v: dict[str, Any]) -> dict[str, Any]:
        _validate_names(list(v), "Output")
        return v


class ManifestDocument(BaseModel):
    """Kubernetes-style wrapper: apiVersion, kind, metadata, spec."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field(alias="apiVersion")
    kind: Literal["Manifest"] = "Manifest"
    metadata: ManifestMetadata = Field(default_factory=ManifestMetadata)
    spec: ManifestSpec

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v != MANIFEST_API_VERSION:
            raise ValueError(f"apiVersion must be '{MANIFEST_API_VERSION}'")
        return v
