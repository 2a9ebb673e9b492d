"""Resource descriptors and the value expressions they carry.

A descriptor is the immutable declaration of one resource. Its property
values form a tagged union:

- literal: any scalar, list or mapping without a reference tag
- ParameterRef: ``{$param: adminPassword}``
- OutputRef: ``{$output: database.fullyQualifiedDomainName}``
- TemplateValue: ``{$template: "host=${output:cache.hostName};key=${output:cache.primaryKey}"}``

Because references are explicit values rather than strings evaluated at
runtime, every dependency edge can be enumerated before a provider call.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

PARAM_TAG = "$param"
OUTPUT_TAG = "$output"
TEMPLATE_TAG = "$template"

# ${param:name} or ${output:resource.attr.path}
PLACEHOLDER_PATTERN = re.compile(r"\$\{(param|output):([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\}")


class ValueParseError(ValueError):
    """Raised when a tagged value expression is malformed."""

    pass


class DescriptorMode(str, Enum):
    """Whether the engine owns a resource or only reads it."""

    MANAGED = "managed"
    EXISTING = "existing"


@dataclass(frozen=True)
class ParameterRef:
    """Reference to a manifest parameter."""

    name: str

    def __str__(self) -> str:
        return f"${{param:{self.name}}}"


@dataclass(frozen=True)
class OutputRef:
    """Reference to an output attribute of another descriptor."""

    resource: str
    attribute: str

    @classmethod
    def parse(cls, expression: str) -> OutputRef:
        resource, sep, attribute = expression.partition(".")
        if not sep or not resource or not attribute:
            raise ValueParseError(
                f"Output reference must look like '<resource>.<attribute>': {expression!r}"
            )
        return cls(resource=resource, attribute=attribute)

    def __str__(self) -> str:
        return f"${{output:{self.resource}.{self.attribute}}}"


Reference = Union[ParameterRef, OutputRef]


@dataclass(frozen=True)
class TemplateValue:
    """Composite string rendered lazily from parameters and outputs."""

    template: str
    refs: tuple[Reference, ...] = ()

    @classmethod
    def parse(cls, template: str) -> TemplateValue:
        refs: list[Reference] = []
        for kind, target in PLACEHOLDER_PATTERN.findall(template):
            if kind == "param":
                refs.append(ParameterRef(target))
            else:
                refs.append(OutputRef.parse(target))
        return cls(template=template, refs=tuple(refs))

    def render(self, lookup: Any) -> str:
        """Render the template, calling lookup(ref) -> str for each placeholder."""

        def replace(match: re.Match[str]) -> str:
            kind, target = match.group(1), match.group(2)
            ref: Reference = ParameterRef(target) if kind == "param" else OutputRef.parse(target)
            return str(lookup(ref))

        return PLACEHOLDER_PATTERN.sub(replace, self.template)


def parse_value(raw: Any) -> Any:
    """Convert a raw manifest value into the tagged union.

    Args:
        raw: Value as loaded from YAML.

    Returns:
        Literal, ParameterRef, OutputRef, TemplateValue, or a list/dict of those.

    Raises:
        ValueParseError: If a tagged mapping is malformed.
    """
    if isinstance(raw, Mapping):
        tags = [key for key in raw if key in (PARAM_TAG, OUTPUT_TAG, TEMPLATE_TAG)]
        if tags:
            if len(raw) != 1:
                raise ValueParseError(
                    f"Reference mappings must contain exactly one key, got {sorted(raw)}"
                )
            tag = tags[0]
            target = raw[tag]
            if not isinstance(target, str) or not target:
                raise ValueParseError(f"{tag} expects a non-empty string, got {target!r}")
            if tag == PARAM_TAG:
                return ParameterRef(target)
            if tag == OUTPUT_TAG:
                return OutputRef.parse(target)
            return TemplateValue.parse(target)
        return {key: parse_value(value) for key, value in raw.items()}
    if isinstance(raw, list | tuple):
        return [parse_value(item) for item in raw]
    return raw


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference contained in a value tree."""
    if isinstance(value, ParameterRef | OutputRef):
        yield value
    elif isinstance(value, TemplateValue):
        yield from value.refs
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from iter_references(item)


@dataclass(frozen=True)
class ScopeSpec:
    """Scope expression of a descriptor. None fields mean the primary scope."""

    subscription_id: Any = None
    resource_group: Any = None

    @property
    def is_default(self) -> bool:
        return self.subscription_id is None and self.resource_group is None


@dataclass(frozen=True)
class Parameter:
    """A manifest input. Secret values never appear in logs or outputs."""

    name: str
    value: Any = None
    default: Any = None
    secret: bool = False
    description: str | None = None

    @property
    def is_bound(self) -> bool:
        return self.value is not None or self.default is not None

    @property
    def effective_value(self) -> Any:
        return self.value if self.value is not None else self.default

    def __repr__(self) -> str:
        shown = "[REDACTED]" if self.secret else repr(self.effective_value)
        return f"Parameter(name={self.name!r}, value={shown}, secret={self.secret})"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Immutable declaration of one resource."""

    name: str
    kind: str
    mode: DescriptorMode = DescriptorMode.MANAGED
    scope: ScopeSpec = field(default_factory=ScopeSpec)
    resource_name: Any = None
    location: Any = None
    properties: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.name

    @property
    def is_existing(self) -> bool:
        return self.mode == DescriptorMode.EXISTING

    def references(self) -> Iterator[Reference]:
        """Enumerate every reference across name, location, scope and properties."""
        yield from iter_references(self.resource_name)
        yield from iter_references(self.location)
        yield from iter_references(self.scope.subscription_id)
        yield from iter_references(self.scope.resource_group)
        yield from iter_references(self.properties)

    def output_dependencies(self) -> set[str]:
        """Names of descriptors this one reads outputs from or explicitly depends on."""
        deps = {ref.resource for ref in self.references() if isinstance(ref, OutputRef)}
        deps.update(self.depends_on)
        return deps
