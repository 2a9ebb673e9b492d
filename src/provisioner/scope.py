"""Scope resolution for resource descriptors.

A scope is the administrative boundary a resource lives in: a subscription
plus a resource group. Managed descriptors default to the deployment's
primary scope; existing descriptors may point into a foreign scope (for
example a registry shared across deployments). The resolver never creates
boundaries, it only evaluates and validates the expressions.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .config import (
    MAX_RESOURCE_GROUP_NAME_LENGTH,
    VALID_RESOURCE_GROUP_PATTERN,
    VALID_SUBSCRIPTION_ID_PATTERN,
    Config,
)
from .descriptors import (
    OutputRef,
    Parameter,
    ParameterRef,
    ResourceDescriptor,
    TemplateValue,
)

logger = logging.getLogger(__name__)


class ScopeUnresolvedError(Exception):
    """Raised when a descriptor's scope expression cannot be evaluated.

    Fatal for the descriptor and all of its dependents.
    """

    def __init__(self, descriptor: str, reason: str) -> None:
        super().__init__(f"Cannot resolve scope of '{descriptor}': {reason}")
        self.descriptor = descriptor
        self.reason = reason


@dataclass(frozen=True)
class ScopeHandle:
    """Resolved administrative boundary."""

    subscription_id: str
    resource_group: str
    foreign: bool = False

    @property
    def resource_group_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

    def resource_id(self, arm_type: str, name: str) -> str:
        """Build the ARM id of a resource in this scope.

        Child types interleave type segments with name segments:
        ``Microsoft.DBforPostgreSQL/flexibleServers/databases`` + ``srv/app``
        gives ``.../flexibleServers/srv/databases/app``.
        """
        namespace, *types = arm_type.split("/")
        names = name.split("/")
        if len(types) != len(names):
            raise ValueError(
                f"Resource name '{name}' does not match type '{arm_type}' "
                f"({len(names)} name segments for {len(types)} type segments)"
            )
        path = "/".join(f"{t}/{n}" for t, n in zip(types, names, strict=True))
        return f"{self.resource_group_id}/providers/{namespace}/{path}"


class ScopeResolver:
    """Maps descriptors to scope handles.

    Only literals and parameters may appear in scope expressions; a scope
    that depends on another resource's output cannot be known before the
    graph is ordered and is rejected.
    """

    def __init__(self, config: Config, parameters: Mapping[str, Parameter]) -> None:
        self._primary_subscription, self._primary_resource_group = config.primary_scope
        self._parameters = parameters

    def resolve(self, descriptor: ResourceDescriptor) -> ScopeHandle:
        """Resolve a descriptor's scope.

        Raises:
            ScopeUnresolvedError: If an expression cannot be evaluated or is malformed.
        """
        subscription_id = self._evaluate(descriptor, descriptor.scope.subscription_id)
        resource_group = self._evaluate(descriptor, descriptor.scope.resource_group)

        subscription_id = subscription_id or self._primary_subscription
        resource_group = resource_group or self._primary_resource_group

        if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, subscription_id.lower()):
            raise ScopeUnresolvedError(
                descriptor.name, f"subscription id is not a valid GUID: {subscription_id}"
            )
        if len(resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH or not re.match(
            VALID_RESOURCE_GROUP_PATTERN, resource_group
        ):
            raise ScopeUnresolvedError(
                descriptor.name, f"resource group name is malformed: {resource_group}"
            )

        foreign = (subscription_id.lower(), resource_group.lower()) != (
            self._primary_subscription.lower(),
            self._primary_resource_group.lower(),
        )
        if foreign:
            logger.info(
                "Cross-scope reference resolved",
                extra={
                    "descriptor": descriptor.name,
                    "subscription_id": subscription_id,
                    "resource_group": resource_group,
                },
            )
        return ScopeHandle(
            subscription_id=subscription_id,
            resource_group=resource_group,
            foreign=foreign,
        )

    def _evaluate(self, descriptor: ResourceDescriptor, expression: Any) -> str | None:
        if expression is None:
            return None
        if isinstance(expression, str):
            return expression
        if isinstance(expression, ParameterRef):
            return self._parameter_value(descriptor, expression.name)
        if isinstance(expression, TemplateValue):
            if any(isinstance(ref, OutputRef) for ref in expression.refs):
                raise ScopeUnresolvedError(
                    descriptor.name, "scope templates may only reference parameters"
                )
            return expression.render(lambda ref: self._parameter_value(descriptor, ref.name))
        if isinstance(expression, OutputRef):
            raise ScopeUnresolvedError(
                descriptor.name, f"scope cannot depend on resource output {expression}"
            )
        raise ScopeUnresolvedError(
            descriptor.name, f"unsupported scope expression: {type(expression).__name__}"
        )

    def _parameter_value(self, descriptor: ResourceDescriptor, name: str) -> str:
        parameter = self._parameters.get(name)
        if parameter is None or not parameter.is_bound:
            raise ScopeUnresolvedError(descriptor.name, f"parameter '{name}' was never supplied")
        if parameter.secret:
            raise ScopeUnresolvedError(
                descriptor.name, f"secret parameter '{name}' cannot be used in a scope"
            )
        return str(parameter.effective_value)
