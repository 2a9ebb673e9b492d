"""Container entry point for the provisioning engine.

SECRETLESS ARCHITECTURE:
- Provider calls authenticate with a managed identity only
- Deployment secrets arrive as PARAM_* environment variables and are
  redacted from every log record
- Exit codes: 0 success, 1 failure or partial failure, 2 security violation
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .azure_provider import AzureResourceProvider
from .config import Config, ConfigurationError
from .graph import CycleError
from .manifest_loader import ManifestError, load_manifest
from .orchestrator import Orchestrator
from .security import SecretlessViolationError, managed_identity_credential

# LogRecord attributes that are not structured extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Load the configured manifest and apply it once.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting provisioning engine",
        extra={
            "environment": config.environment,
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "manifest_path": str(config.manifest_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        manifest = load_manifest(config.manifest_path, config)
        credential = managed_identity_credential()
        orchestrator = Orchestrator(manifest, config, AzureResourceProvider(credential))

        if config.dry_run:
            for wave, names in enumerate(orchestrator.plan(), start=1):
                logger.info("Planned wave", extra={"wave": wave, "descriptors": names})
            return 0
    except (ManifestError, CycleError) as e:
        # Manifest is broken - user configuration error, nothing was applied
        logger.error("Manifest rejected", extra={"error": str(e)})
        return 1
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        orchestrator.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await orchestrator.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    if result.success:
        report = result.to_dict(orchestrator.broker.redact)
        logger.info("Run outputs", extra={"outputs": report["outputs"]})
        return 0
    return 1


def run() -> None:
    """Entry point for the container."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
