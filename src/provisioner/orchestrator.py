"""Deployment orchestrator.

Applies a manifest in dependency order:
1. Build the dependency graph (cycles fail before any provider call)
2. Start every eligible descriptor, bounded by the parallelism limit
3. Resolve scope and references, then issue one create-or-update per descriptor
4. Capture outputs and unlock dependents
5. On failure, fail the descriptor's subtree and keep independent branches going

Per descriptor: pending -> resolving -> applying -> applied | failed.
Per run: not_started -> running -> succeeded | partially_failed | failed.

Run-fatal errors (a denied grant, a reference the graph failed to order) stop
new applies from starting; applies already in flight are allowed to finish.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from .broker import (
    MissingParameterError,
    OutputBroker,
    SecretRedactionFilter,
    SecretValue,
    UnresolvedReferenceError,
)
from .config import Config
from .descriptors import ResourceDescriptor
from .grants import CrossScopeGrantModule, GrantDeniedError
from .graph import DependencyGraph, build_graph
from .kinds import ROLE_ASSIGNMENT, get_kind
from .manifest_loader import Manifest
from .provider import ResourceProvider, call_with_retry
from .report import NodeResult, NodeState, RunResult, RunStatus, log_run_report
from .scope import ScopeResolver
from .security import SecurityAuditTrail

logger = logging.getLogger(__name__)

RUN_FATAL_ERRORS: tuple[type[Exception], ...] = (GrantDeniedError, UnresolvedReferenceError)


class DependencyFailedError(Exception):
    """A descriptor was not attempted because a dependency failed."""

    def __init__(self, dependency: str, cause: BaseException) -> None:
        super().__init__(f"dependency '{dependency}' failed: {cause}")
        self.dependency = dependency
        self.cause = cause


class RunAbortedError(Exception):
    """A descriptor was not attempted because the run hit a fatal error."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"run aborted: {cause}")
        self.cause = cause


class ShutdownRequestedError(Exception):
    """The run was asked to stop before every descriptor was started."""

    pass


@contextmanager
def redaction_scope(broker: OutputBroker) -> Iterator[None]:
    """Attach a SecretRedactionFilter to every root handler for the run."""
    redaction_filter = SecretRedactionFilter(broker)
    handlers = list(logging.getLogger().handlers)
    for handler in handlers:
        handler.addFilter(redaction_filter)
    try:
        yield
    finally:
        for handler in handlers:
            handler.removeFilter(redaction_filter)


class Orchestrator:
    """Runs a manifest against a resource provider.

    Each call to run() re-derives the graph, broker and grant state from the
    manifest, so runs are independent and safely re-entrant; the provider
    remains the source of truth between runs.
    """

    def __init__(
        self,
        manifest: Manifest,
        config: Config,
        provider: ResourceProvider,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            manifest: Loaded manifest.
            config: Run configuration.
            provider: Provider collaborator.
        """
        self._manifest = manifest
        self._config = config
        self._provider = provider
        self._resolver = ScopeResolver(config, manifest.parameters)
        self._broker = OutputBroker(manifest.parameters)
        self._grants = CrossScopeGrantModule(provider, config)
        self._audit = SecurityAuditTrail("", enabled=config.security.enable_audit_logging)
        self._status = RunStatus.NOT_STARTED
        self._shutdown_event = asyncio.Event()

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def broker(self) -> OutputBroker:
        """Broker of the current (or last) run."""
        return self._broker

    def shutdown(self) -> None:
        """Stop starting new descriptors; in-flight applies run to completion."""
        logger.info("Shutdown requested", extra={"manifest": self._manifest.name})
        self._shutdown_event.set()

    def plan(self) -> list[list[str]]:
        """Parallel waves in apply order. No provider calls.

        Raises:
            CycleError: If the manifest has a cycle.
        """
        return build_graph(self._manifest.descriptors).levels()

    async def run(self) -> RunResult:
        """Apply the manifest.

        Returns:
            RunResult with per-descriptor states and run outputs.

        Raises:
            CycleError: If the manifest has a cycle (before any provider call).
        """
        graph = build_graph(self._manifest.descriptors)

        self._broker = OutputBroker(self._manifest.parameters)
        self._grants = CrossScopeGrantModule(self._provider, self._config)
        result = RunResult(
            run_id=uuid.uuid4().hex[:12],
            manifest_name=self._manifest.name,
            nodes={
                d.name: NodeResult(name=d.name, kind=d.kind, mode=d.mode.value)
                for d in self._manifest.descriptors
            },
        )
        self._audit = SecurityAuditTrail(
            result.run_id,
            self._broker.redact,
            enabled=self._config.security.enable_audit_logging,
        )
        self._status = result.status = RunStatus.RUNNING

        logger.info(
            "Run started",
            extra={
                "run_id": result.run_id,
                "manifest": self._manifest.name,
                "descriptors": len(self._manifest.descriptors),
                "parallelism": self._config.parallelism,
            },
        )

        with redaction_scope(self._broker):
            await self._execute(graph, result)
            if self._final_status(result) == RunStatus.SUCCEEDED:
                self._resolve_outputs(result)
            result.status = self._final_status(result)
            result.audit_events = [event.to_dict() for event in self._audit.events]
            result.end_time = datetime.now(UTC)
            self._status = result.status
            log_run_report(result, self._broker.redact)

        return result

    async def _execute(self, graph: DependencyGraph, result: RunResult) -> None:
        semaphore = asyncio.Semaphore(self._config.parallelism)
        applied: set[str] = set()
        finished: set[str] = set()
        in_flight: dict[asyncio.Task[None], str] = {}

        while True:
            if self._shutdown_event.is_set() and result.abort_error is None:
                result.abort_error = ShutdownRequestedError("shutdown requested")
            if result.abort_error is None:
                started = finished | set(in_flight.values())
                for name in graph.get_ready(applied, started):
                    task = asyncio.create_task(self._process(name, semaphore, result.nodes[name]))
                    in_flight[task] = name

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = in_flight.pop(task)
                finished.add(name)
                error = task.exception()
                if error is None:
                    applied.add(name)
                    result.apply_order.append(name)
                    continue

                self._fail_subtree(graph, name, error, result, finished)
                if isinstance(error, RUN_FATAL_ERRORS) and result.abort_error is None:
                    result.abort_error = error
                    logger.error(
                        "Run aborted, waiting for in-flight applies",
                        extra={
                            "run_id": result.run_id,
                            "descriptor": name,
                            "error_type": type(error).__name__,
                            "in_flight": sorted(in_flight.values()),
                        },
                    )

        if result.abort_error is not None:
            for node in result.nodes.values():
                if node.state == NodeState.PENDING:
                    node.state = NodeState.FAILED
                    node.error = RunAbortedError(result.abort_error)

    def _fail_subtree(
        self,
        graph: DependencyGraph,
        name: str,
        error: BaseException,
        result: RunResult,
        finished: set[str],
    ) -> None:
        """Mark every transitive dependent failed without a provider call."""
        for dependent in sorted(graph.dependents_of(name)):
            node = result.nodes[dependent]
            if node.state != NodeState.PENDING:
                continue
            node.state = NodeState.FAILED
            node.error = DependencyFailedError(name, error)
            finished.add(dependent)
            logger.warning(
                "Skipping descriptor, dependency failed",
                extra={"run_id": result.run_id, "descriptor": dependent, "dependency": name},
            )

    async def _process(
        self,
        name: str,
        semaphore: asyncio.Semaphore,
        node: NodeResult,
    ) -> None:
        descriptor = self._manifest.descriptor(name)
        kind = get_kind(descriptor.kind)

        async with semaphore:
            node.started_at = datetime.now(UTC)
            try:
                node.state = NodeState.RESOLVING
                scope = self._resolver.resolve(descriptor)
                resource_name = self._resolve_name(descriptor)
                properties = self._broker.resolve(descriptor.properties)

                node.state = NodeState.APPLYING
                if descriptor.is_existing:
                    attributes = await self._provider_call(
                        self._provider.read_existing,
                        kind,
                        scope,
                        resource_name,
                        node=node,
                        operation=f"read {name}",
                    )
                    if scope.foreign:
                        self._audit.record(
                            "cross_scope_read",
                            descriptor=name,
                            target_resource=scope.resource_id(kind.arm_type, resource_name),
                            action="read",
                            result="success",
                        )
                elif kind.name == ROLE_ASSIGNMENT:
                    attributes = await self._grant(name, properties, node)
                else:
                    body = self._build_body(descriptor, kind.supports_location, properties)
                    attributes = await self._provider_call(
                        self._provider.apply_resource,
                        kind,
                        scope,
                        resource_name,
                        body,
                        node=node,
                        operation=f"apply {name}",
                    )

                self._broker.capture(name, attributes, kind.secret_attributes)
                node.state = NodeState.APPLIED
                logger.info(
                    "Descriptor applied",
                    extra={"descriptor": name, "kind": kind.name, "attempts": node.attempts},
                )
            except Exception as e:
                node.state = NodeState.FAILED
                node.error = e
                logger.error(
                    "Descriptor failed",
                    extra={
                        "descriptor": name,
                        "kind": kind.name,
                        "error": self._broker.redact(str(e)),
                        "error_type": type(e).__name__,
                    },
                )
                raise
            finally:
                node.finished_at = datetime.now(UTC)

    async def _grant(
        self, name: str, properties: dict[str, Any], node: NodeResult
    ) -> dict[str, Any]:
        target = str(properties["target"])
        role = str(properties["role"])
        try:
            grant = await self._grants.grant(
                str(properties["principalId"]),
                target,
                role,
                on_attempt=lambda attempt: setattr(node, "attempts", attempt),
            )
        except GrantDeniedError:
            self._audit.record(
                "grant",
                descriptor=name,
                target_resource=target,
                action=f"assign {role}",
                result="denied",
            )
            raise

        self._audit.record(
            "grant",
            descriptor=name,
            target_resource=grant.resource_scope_id,
            action=f"assign {grant.role_definition_id}",
            result="created" if grant.created else "exists",
        )
        return grant.as_attributes()

    async def _provider_call(
        self, func: Any, *args: Any, node: NodeResult, operation: str
    ) -> dict[str, Any]:
        def on_attempt(attempt: int) -> None:
            node.attempts = attempt

        return await call_with_retry(
            func,
            *args,
            operation=operation,
            max_attempts=self._config.max_apply_attempts,
            backoff_base_seconds=self._config.retry_backoff_base_seconds,
            timeout_seconds=self._config.apply_timeout_seconds,
            on_attempt=on_attempt,
        )

    def _resolve_name(self, descriptor: ResourceDescriptor) -> str:
        resource_name = self._broker.resolve(descriptor.resource_name)
        if isinstance(resource_name, SecretValue) or not isinstance(resource_name, str):
            raise ValueError(
                f"resourceName of '{descriptor.name}' must resolve to a plain string"
            )
        return resource_name

    def _build_body(
        self, descriptor: ResourceDescriptor, supports_location: bool, properties: Any
    ) -> dict[str, Any]:
        body: dict[str, Any] = dict(properties)
        if supports_location:
            location = self._broker.resolve(descriptor.location)
            body["location"] = location or self._config.location
        return body

    def _final_status(self, result: RunResult) -> RunStatus:
        if result.abort_error is not None:
            return RunStatus.FAILED
        if not result.failed():
            return RunStatus.SUCCEEDED
        if result.applied():
            return RunStatus.PARTIALLY_FAILED
        return RunStatus.FAILED

    def _resolve_outputs(self, result: RunResult) -> None:
        """Resolve run outputs; a failure here fails the run but keeps the result."""
        try:
            result.outputs = {
                name: self._broker.resolve(value)
                for name, value in self._manifest.outputs.items()
            }
        except (UnresolvedReferenceError, MissingParameterError) as e:
            result.abort_error = e
            logger.error(
                "Run outputs could not be resolved",
                extra={
                    "run_id": result.run_id,
                    "error": self._broker.redact(str(e)),
                    "error_type": type(e).__name__,
                },
            )
