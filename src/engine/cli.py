"""Reconciliation engine CLI (ckit).

Usage:
    ckit plan                  # Show what apply would change
    ckit apply                 # Plan, confirm, apply
    ckit apply --dry-run       # Plan only
    ckit destroy               # Delete every managed resource
    ckit validate              # Check declarations without touching state
    ckit graph                 # Show the dependency graph
    ckit kinds                 # List registered resource kinds
    ckit state list            # List stored state records
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import ConfigurationError, EngineConfig
from .config_loader import ConfigLoadError, load_snapshot
from .diff import ActionType
from .executor import ActionOutcome, ActionStatus
from .graph import DependencyError, build_graph
from .main import (
    EXIT_APPLY_FAILED,
    EXIT_CANCELED,
    EXIT_ERROR,
    build_registry,
    exit_code_for,
    run_once,
    setup_logging,
)
from .models import AddressError, normalize_address
from .plan import ChangePlan, Planner
from .reconciler import ReconcileResult
from .registry import RegistryError
from .state import FileStateBackend, StateError

VERSION = "0.1.0"

_STATUS_STYLE = {
    ActionStatus.SUCCEEDED: ("✓", "green"),
    ActionStatus.FAILED: ("✗", "red"),
    ActionStatus.SKIPPED: ("-", "yellow"),
    ActionStatus.CANCELED: ("!", "yellow"),
}


def _config(ctx: click.Context) -> EngineConfig:
    config: EngineConfig = ctx.obj
    return config


def _to_jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _print_progress(outcome: ActionOutcome) -> None:
    style = _STATUS_STYLE.get(outcome.status)
    if style is None or outcome.action_type == ActionType.NOOP:
        return
    symbol, color = style
    line = f"{symbol} {outcome.address} ({outcome.action_type.value}): {outcome.status.value}"
    if outcome.retries:
        line += f" after {outcome.retries} retries"
    if outcome.error:
        line += f" - {outcome.error}"
    click.secho(line, fg=color)


def _confirm(plan: ChangePlan) -> bool:
    click.echo(plan.render())
    return click.confirm("Apply these changes?", default=False)


def _run(ctx: click.Context, **kwargs: Any) -> ReconcileResult:
    """Run one reconcile pass, mapping engine errors to CLI errors."""
    try:
        return asyncio.run(run_once(_config(ctx), **kwargs))
    except (ConfigLoadError, RegistryError, StateError) as e:
        raise click.ClickException(str(e)) from e


def _report(ctx: click.Context, result: ReconcileResult, show_unchanged: bool = False) -> None:
    """Print a reconcile result and exit with the matching code."""
    if result.error is not None:
        click.secho(f"Error: {result.error}", fg="red", err=True)
        ctx.exit(EXIT_ERROR)

    if result.refresh is not None and result.refresh.errors:
        for address, error in sorted(result.refresh.errors.items()):
            click.secho(f"Refresh failed for {address}: {error}", fg="yellow", err=True)

    if result.apply is None:
        if result.plan is not None:
            if not result.approved:
                click.echo("Apply canceled.")
            elif result.dry_run:
                click.echo(result.plan.render(show_unchanged=show_unchanged))
        return

    apply = result.apply
    click.echo(
        f"Apply complete: {len(apply.changed)} changed, {len(apply.failed)} failed, "
        f"{len(apply.skipped)} skipped, {len(apply.canceled)} canceled."
    )

    if apply.named_outputs:
        click.echo("\nOutputs:")
        for name, value in sorted(apply.named_outputs.items()):
            click.echo(f"  {name} = {json.dumps(_to_jsonable(value))}")
    for name, error in sorted(apply.unresolved_outputs.items()):
        click.secho(f"  {name}: {error}", fg="yellow")

    code = exit_code_for(result)
    if code == EXIT_CANCELED:
        click.secho("Apply was canceled.", fg="yellow", err=True)
        ctx.exit(code)
    if code == EXIT_APPLY_FAILED:
        for address in apply.failed:
            click.secho(f"✗ {address}: {apply.outcomes[address].error}", fg="red", err=True)
        ctx.exit(code)


# =============================================================================
# CLI Root
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="ckit")
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory of YAML declarations (env: CKIT_CONFIG_DIR)",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="State directory (env: CKIT_STATE_DIR)",
)
@click.option("--parallelism", "-p", type=int, help="Max concurrent provider operations")
@click.option("--no-refresh", is_flag=True, help="Do not read actual state before planning")
@click.option(
    "--provider-module",
    "provider_modules",
    multiple=True,
    help="Provider plugin module to load (repeatable)",
)
@click.option(
    "--log-level",
    envvar="CKIT_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.option(
    "--log-format",
    envvar="CKIT_LOG_FORMAT",
    default="text",
    show_default=True,
    type=click.Choice(["json", "text"]),
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_dir: Path | None,
    state_dir: Path | None,
    parallelism: int | None,
    no_refresh: bool,
    provider_modules: tuple[str, ...],
    log_level: str,
    log_format: str,
) -> None:
    """Desired-state reconciliation engine (ckit).

    Converges declared resources to their target state: plans the difference
    between configuration and stored state, then applies it in dependency
    order.

    \b
    Quick Start:
        ckit -c infra plan     # Preview changes
        ckit -c infra apply    # Apply them
    """
    try:
        ctx.obj = EngineConfig.from_env(
            config_dir=config_dir,
            state_dir=state_dir,
            parallelism=parallelism,
            refresh=False if no_refresh else None,
            provider_modules=provider_modules or None,
            log_level=log_level.upper(),
            log_format=log_format,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    handler = setup_logging(log_level, log_format, stream=sys.stderr)
    ctx.call_on_close(lambda: logging.getLogger().removeHandler(handler))


# =============================================================================
# Plan / Apply Commands
# =============================================================================


@cli.command()
@click.option("--show-unchanged", is_flag=True, help="Also list resources without changes")
@click.pass_context
def plan(ctx: click.Context, show_unchanged: bool) -> None:
    """Show the changes apply would make."""
    result = _run(ctx, dry_run=True)
    _report(ctx, result, show_unchanged=show_unchanged)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Plan without applying")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def apply(ctx: click.Context, dry_run: bool, auto_approve: bool) -> None:
    """Plan and apply changes.

    \b
    Examples:
        ckit apply --dry-run
        ckit apply --yes
    """
    result = _run(
        ctx,
        dry_run=dry_run,
        progress=_print_progress,
        approve=None if auto_approve else _confirm,
    )
    _report(ctx, result)


@cli.command()
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def destroy(ctx: click.Context, auto_approve: bool) -> None:
    """Delete every resource recorded in state."""
    result = _run(
        ctx,
        destroy=True,
        progress=_print_progress,
        approve=None if auto_approve else _confirm,
    )
    _report(ctx, result)


# =============================================================================
# Inspection Commands
# =============================================================================


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate declarations against registered kinds and references."""
    config = _config(ctx)
    try:
        registry = build_registry(config)
        snapshot = load_snapshot(config.config_dir)
        # Planning against empty state checks kinds, attributes and references
        Planner(registry).plan(snapshot, {})
    except (ConfigLoadError, RegistryError, DependencyError) as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ {len(snapshot.nodes)} resources valid", fg="green")


@cli.command()
@click.option(
    "--format", "output_format", type=click.Choice(["text", "dot"]), default="text"
)
@click.pass_context
def graph(ctx: click.Context, output_format: str) -> None:
    """Show resources in apply order with their dependencies."""
    config = _config(ctx)
    try:
        snapshot = load_snapshot(config.config_dir)
        dependency_graph = build_graph(snapshot.nodes)
        order = dependency_graph.topological_sort()
    except (ConfigLoadError, DependencyError) as e:
        raise click.ClickException(str(e)) from e

    if output_format == "dot":
        click.echo("digraph resources {")
        for address in order:
            click.echo(f'  "{address}";')
            for dep in sorted(dependency_graph.dependencies_of(address)):
                click.echo(f'  "{address}" -> "{dep}";')
        click.echo("}")
        return

    for address in order:
        deps = sorted(dependency_graph.dependencies_of(address))
        suffix = f" <- {', '.join(deps)}" if deps else ""
        click.echo(f"{address}{suffix}")


@cli.command()
@click.pass_context
def kinds(ctx: click.Context) -> None:
    """List registered resource kinds and their attributes."""
    try:
        registry = build_registry(_config(ctx))
    except RegistryError as e:
        raise click.ClickException(str(e)) from e

    for kind in registry.kinds():
        descriptor = registry.get(kind)
        click.secho(kind, bold=True)
        for name, schema in sorted(descriptor.attributes.items()):
            flags = [schema.type.value, schema.mode.value]
            if schema.required:
                flags.append("required")
            if schema.immutable:
                flags.append("forces replacement")
            click.echo(f"  {name} ({', '.join(flags)})")


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect and edit stored state."""
    pass


def _backend(ctx: click.Context) -> FileStateBackend:
    config: EngineConfig = ctx.find_root().obj
    return FileStateBackend(config.state_dir)


@state.command("list")
@click.pass_context
def state_list(ctx: click.Context) -> None:
    """List addresses in state."""
    try:
        records = _backend(ctx).list()
    except StateError as e:
        raise click.ClickException(str(e)) from e
    for record in records:
        click.echo(f"{record.address}\t{record.external_id}")


@state.command("show")
@click.argument("address")
@click.pass_context
def state_show(ctx: click.Context, address: str) -> None:
    """Show one state record as JSON."""
    try:
        record = _backend(ctx).get(normalize_address(address))
    except (AddressError, StateError) as e:
        raise click.ClickException(str(e)) from e
    if record is None:
        raise click.ClickException(f"No state record for {address}")
    click.echo(json.dumps(record.model_dump(mode="json"), indent=2, sort_keys=True))


@state.command("rm")
@click.argument("address")
@click.pass_context
def state_rm(ctx: click.Context, address: str) -> None:
    """Forget a resource without deleting it."""
    backend = _backend(ctx)
    try:
        canonical = normalize_address(address)
        with backend.locked():
            if backend.get(canonical) is None:
                raise click.ClickException(f"No state record for {address}")
            backend.delete(canonical)
    except (AddressError, StateError) as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ Removed {canonical} from state", fg="green")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
