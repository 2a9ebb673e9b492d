"""Run results and provenance reporting.

Every run produces a RunResult that answers:
- "What state did each descriptor end in, and why?"
- "Which error started a cascade of failures?"
- "What version of the engine and manifest produced this state?"

Error messages pass through the broker's redaction before they reach a
report or a log record.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


class NodeState(str, Enum):
    """Lifecycle of one descriptor within a run."""

    PENDING = "pending"
    RESOLVING = "resolving"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Lifecycle and outcome of a run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


def innermost_error(error: BaseException | None) -> BaseException | None:
    """Follow `cause` links (dependency cascades) down to the originating error."""
    current = error
    while current is not None and isinstance(getattr(current, "cause", None), BaseException):
        current = current.cause  # type: ignore[attr-defined]
    return current


@dataclass
class NodeResult:
    """Final state of one descriptor."""

    name: str
    kind: str
    mode: str
    state: NodeState = NodeState.PENDING
    attempts: int = 0
    error: BaseException | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def provider_called(self) -> bool:
        return self.attempts > 0

    def to_dict(self, redact: Callable[[str], str]) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "mode": self.mode,
            "state": self.state.value,
            "attempts": self.attempts,
        }
        if self.error is not None:
            origin = innermost_error(self.error)
            data["error"] = redact(str(self.error))
            data["error_type"] = type(self.error).__name__
            if origin is not self.error and origin is not None:
                data["origin_error"] = redact(str(origin))
                data["origin_error_type"] = type(origin).__name__
        return data


@dataclass
class RunResult:
    """Result of one orchestrator run."""

    run_id: str
    manifest_name: str
    status: RunStatus = RunStatus.NOT_STARTED
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    nodes: dict[str, NodeResult] = field(default_factory=dict)
    apply_order: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    abort_error: BaseException | None = None
    audit_events: list[dict[str, str]] = field(default_factory=list)

    # Provenance
    engine_version: str = ENGINE_VERSION
    git_commit_sha: str = field(default_factory=lambda: os.environ.get("GIT_COMMIT_SHA", ""))
    git_branch: str = field(default_factory=lambda: os.environ.get("GIT_BRANCH", ""))

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def state_of(self, name: str) -> NodeState:
        return self.nodes[name].state

    def failed(self) -> list[str]:
        return sorted(n for n, node in self.nodes.items() if node.state == NodeState.FAILED)

    def applied(self) -> list[str]:
        return sorted(n for n, node in self.nodes.items() if node.state == NodeState.APPLIED)

    def to_dict(self, redact: Callable[[str], str] = str) -> dict[str, Any]:
        """Convert to a JSON-serializable dict. Errors are passed through redact."""
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "manifest": self.manifest_name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "engine_version": self.engine_version,
            "git_commit": self.git_commit_sha,
            "git_branch": self.git_branch,
            "apply_order": list(self.apply_order),
            "nodes": {name: node.to_dict(redact) for name, node in sorted(self.nodes.items())},
            "outputs": {key: redact(str(value)) for key, value in self.outputs.items()},
        }
        if self.abort_error is not None:
            data["abort_error"] = redact(str(self.abort_error))
        if self.audit_events:
            data["audit_events"] = [dict(event) for event in self.audit_events]
        return data


def log_run_report(result: RunResult, redact: Callable[[str], str] = str) -> None:
    """Log the run summary plus one record per failed descriptor.

    The structured data enables queries like:
    - "Which runs of manifest X partially failed this week?"
    - "Which commit introduced the failing descriptor?"
    """
    log_level = logging.INFO
    if result.status == RunStatus.FAILED:
        log_level = logging.ERROR
    elif result.status == RunStatus.PARTIALLY_FAILED:
        log_level = logging.WARNING

    logger.log(
        log_level,
        "Run completed",
        extra={
            "run_id": result.run_id,
            "manifest": result.manifest_name,
            "status": result.status.value,
            "applied": len(result.applied()),
            "failed": len(result.failed()),
            "duration_seconds": result.duration_seconds,
            "git_commit": result.git_commit_sha,
            "engine_version": result.engine_version,
        },
    )

    for name in result.failed():
        node = result.nodes[name]
        origin = innermost_error(node.error)
        logger.error(
            "Descriptor failed",
            extra={
                "run_id": result.run_id,
                "descriptor": name,
                "kind": node.kind,
                "error": redact(str(origin)) if origin else None,
                "error_type": type(origin).__name__ if origin else None,
            },
        )
