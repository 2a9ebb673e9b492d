"""Provisioning engine CLI (provision).

Usage:
    provision validate app-stack.yaml      # Load, bind and statically check a manifest
    provision plan app-stack.yaml          # Show the parallel apply waves
    provision graph app-stack.yaml         # Show dependency edges
    provision apply app-stack.yaml         # Apply against Azure

Engine settings come from the environment (see Config.from_env); the common
options below override them.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .graph import CycleError, build_graph
from .manifest_loader import Manifest, ManifestError, load_manifest
from .orchestrator import Orchestrator
from .provider import ResourceProvider
from .report import RunStatus
from .security import SecretlessViolationError

# Exit codes for apply
EXIT_PARTIAL_FAILURE = 1
EXIT_FAILURE = 2
EXIT_SECURITY_VIOLATION = 3


def parse_params(
    _ctx: click.Context, _param: click.Parameter, values: tuple[str, ...]
) -> dict[str, str]:
    """Parse repeated --param key=value options."""
    params: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{item}'")
        params[key] = value
    return params


def build_provider(config: Config) -> ResourceProvider:
    """Azure provider authenticated with the runner's managed identity."""
    from .azure_provider import AzureResourceProvider
    from .security import managed_identity_credential

    credential = managed_identity_credential()
    return AzureResourceProvider(credential)


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that loads a manifest."""
    options = [
        click.argument(
            "manifest_path",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
        ),
        click.option(
            "--param",
            "-p",
            "params",
            multiple=True,
            callback=parse_params,
            help="Parameter value as key=value (repeatable)",
        ),
        click.option("--environment", help="Environment label (ENVIRONMENT)"),
        click.option("--subscription-id", help="Primary subscription (AZURE_SUBSCRIPTION_ID)"),
        click.option("--location", help="Default region (AZURE_LOCATION)"),
        click.option("--resource-group", help="Primary resource group (RESOURCE_GROUP_NAME)"),
        click.option("--image-tag", help="Application image tag (IMAGE_TAG)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def load(
    manifest_path: Path,
    params: dict[str, str],
    environment: str | None,
    subscription_id: str | None,
    location: str | None,
    resource_group: str | None,
    image_tag: str | None,
    **overrides: Any,
) -> tuple[Config, Manifest]:
    """Build Config from environment plus options, then load the manifest.

    Raises:
        click.ClickException: If configuration or manifest is invalid.
    """
    try:
        config = Config.from_env(
            environment=environment,
            subscription_id=subscription_id,
            location=location,
            resource_group_name=resource_group,
            image_tag=image_tag,
            manifest_path=manifest_path,
            **overrides,
        )
        manifest = load_manifest(manifest_path, config, inputs=params)
    except (ConfigurationError, ManifestError) as e:
        raise click.ClickException(str(e)) from e
    return config, manifest


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="provision")
def cli() -> None:
    """Declarative provisioning engine (provision).

    \b
    Quick Start:
        provision validate manifests/app-stack.yaml
        provision plan manifests/app-stack.yaml
        provision apply manifests/app-stack.yaml -p adminPassword=...
    """
    pass


# =============================================================================
# Offline Commands
# =============================================================================


@cli.command()
@common_options
def validate(manifest_path: Path, **options: Any) -> None:
    """Check a manifest without calling the provider."""
    _, manifest = load(manifest_path, **options)
    try:
        build_graph(manifest.descriptors)
    except CycleError as e:
        raise click.ClickException(str(e)) from e
    click.secho(
        f"✓ {manifest.name}: {len(manifest.descriptors)} resources, "
        f"{len(manifest.outputs)} outputs",
        fg="green",
    )


@cli.command()
@common_options
@click.option("--json", "as_json", is_flag=True, help="Print waves as JSON")
def plan(manifest_path: Path, as_json: bool, **options: Any) -> None:
    """Show the waves in which resources would be applied."""
    _, manifest = load(manifest_path, **options)
    try:
        dependency_graph = build_graph(manifest.descriptors)
        waves = dependency_graph.levels()
    except CycleError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        document = {
            "manifest": manifest.name,
            "waves": waves,
            "order": dependency_graph.topological_sort(),
        }
        click.echo(json.dumps(document, indent=2))
        return
    for number, names in enumerate(waves, start=1):
        click.echo(f"wave {number}: {', '.join(names)}")


@cli.command()
@common_options
def graph(manifest_path: Path, **options: Any) -> None:
    """Show dependency edges as 'dependent -> dependency'."""
    _, manifest = load(manifest_path, **options)
    try:
        dependency_graph = build_graph(manifest.descriptors)
    except CycleError as e:
        raise click.ClickException(str(e)) from e
    for dependent, dependency in dependency_graph.edges():
        click.echo(f"{dependent} -> {dependency}")


# =============================================================================
# Apply
# =============================================================================


@cli.command()
@common_options
@click.option("--parallelism", type=click.IntRange(1), help="Concurrent applies (PARALLELISM)")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
def apply(manifest_path: Path, parallelism: int | None, as_json: bool, **options: Any) -> None:
    """Apply a manifest and print the run report."""
    config, manifest = load(manifest_path, parallelism=parallelism, **options)

    try:
        provider = build_provider(config)
    except SecretlessViolationError as e:
        click.secho(str(e), fg="red", err=True)
        raise SystemExit(EXIT_SECURITY_VIOLATION) from e

    orchestrator = Orchestrator(manifest, config, provider)
    try:
        result = asyncio.run(orchestrator.run())
    except CycleError as e:
        raise click.ClickException(str(e)) from e

    report = result.to_dict(orchestrator.broker.redact)
    if as_json:
        click.echo(json.dumps(report, indent=2))
    else:
        for name in result.apply_order:
            click.echo(f"  applied  {name}")
        for name in result.failed():
            node = report["nodes"][name]
            reason = node.get("origin_error", node.get("error"))
            click.echo(f"  failed   {name}: {reason}")
        for key, value in report["outputs"].items():
            click.echo(f"  output   {key} = {value}")

    if result.status == RunStatus.SUCCEEDED:
        click.secho(f"✓ {manifest.name}: {result.status.value}", fg="green")
        return
    click.secho(f"✗ {manifest.name}: {result.status.value}", fg="red", err=True)
    if result.status == RunStatus.PARTIALLY_FAILED:
        raise SystemExit(EXIT_PARTIAL_FAILURE)
    raise SystemExit(EXIT_FAILURE)
