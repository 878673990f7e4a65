"""
CLI interface for batchflow.

Provides commands to inspect, validate, re-encode, and run flow documents.

A flow document is a flat `key = value` file (see batchflow.codec) holding
one or more flows. Configuration lives in $BATCHFLOW_HOME/config.yaml and
is created with `batchflow init`.
"""

import json
from pathlib import Path
from typing import Optional

import click
from rich.table import Table
from rich.text import Text

from batchflow import __version__
from batchflow.errors import BatchflowError


DOCUMENT = click.Path(exists=True, dir_okay=False, path_type=Path)

_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
}


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    raise SystemExit(1)


def _load(document: Path):
    """Decode every flow of a document, exiting on definition errors."""
    from batchflow.codec import load_flows

    try:
        return load_flows(document)
    except (BatchflowError, OSError) as e:
        _fail(f"{document}: {e}")


def _parse_arguments(ctx, param, values: tuple[str, ...]) -> dict[str, str]:
    arguments = {}
    for value in values:
        name, sep, argument = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected key=value, got: {value}")
        arguments[name.strip()] = argument.strip()
    return arguments


@click.group()
@click.version_option(version=__version__, prog_name="batchflow")
@click.pass_context
def main(ctx):
    """
    batchflow - Two-tier batch workflow runner.

    Validate and run flow documents: flows ordered by their blocker flows,
    phases in fixed order, units ordered by their blockers.
    """
    from batchflow.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except (FileNotFoundError, BatchflowError) as e:
        # init (and the read-only commands) work without a config
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize batchflow configuration."""
    from batchflow.config import CONFIG_FILE_NAME, default_config, get_batchflow_home
    import yaml

    home = get_batchflow_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / CONFIG_FILE_NAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config(home), sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# JAVA_HOME=...\n# HADOOP_CONF_DIR=...\n")

    click.echo(f"Initialized batchflow config at {cfg_path}")


# =============================================================================
# Flows Commands - Inspect flow documents
# =============================================================================

@main.group("flows")
def flows_group():
    """Inspect the flows of a document."""
    pass


@flows_group.command("list")
@click.argument("document", type=DOCUMENT)
def list_flows(document: Path):
    """List the flows defined in DOCUMENT."""
    from batchflow.utils import console

    flows = _load(document)
    if not flows:
        click.echo("No flows defined.")
        return

    table = Table(title=str(document))
    table.add_column("Flow")
    table.add_column("Blockers")
    table.add_column("Kinds")
    table.add_column("Units", justify="right")
    for flow_id, flow in flows.items():
        table.add_row(
            Text(flow_id),
            Text(", ".join(sorted(flow.blocker_ids)) or "-"),
            Text(", ".join(sorted(k.symbol for k in flow.enabled_kinds)) or "-"),
            Text(str(sum(1 for _ in flow.iter_units()))),
        )
    console.print(table)


@flows_group.command("show")
@click.argument("document", type=DOCUMENT)
@click.argument("flow_id")
def show_flow(document: Path, flow_id: str):
    """Show one flow of DOCUMENT as JSON."""
    flows = _load(document)
    if flow_id not in flows:
        click.echo(f"✗ Unknown flow: {flow_id}", err=True)
        click.echo("\nAvailable flows:", err=True)
        for fid in flows:
            click.echo(f"  {fid}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(flows[flow_id].to_dict(), indent=2))


# =============================================================================
# Check / Export - Validate and re-encode documents
# =============================================================================

@main.command("check")
@click.argument("document", type=DOCUMENT)
@click.option("--flow", "targets", multiple=True, help="Only check these flows (and their blockers)")
def check(document: Path, targets: tuple[str, ...]):
    """
    Validate DOCUMENT and print its execution order.

    Decodes every flow, resolves flow blockers, and checks for cycles.
    """
    from batchflow.planner import plan_execution
    from batchflow.utils import console

    flows = _load(document)
    try:
        plan = plan_execution(flows, targets=targets or None)
    except BatchflowError as e:
        _fail(str(e))

    table = Table(title="Execution order")
    table.add_column("#", justify="right")
    table.add_column("Unit")
    table.add_column("Kind")
    table.add_column("Blockers")
    for position, ref in enumerate(plan.order, start=1):
        unit = plan.unit(ref)
        table.add_row(
            Text(str(position)),
            Text(str(ref)),
            Text(unit.kind.symbol),
            Text(", ".join(sorted(unit.blockers)) or "-"),
        )
    console.print(table)
    click.echo(f"✓ {len(plan.flows)} flows, {len(plan.order)} units: {' -> '.join(plan.flow_order)}")


@main.command("export")
@click.argument("document", type=DOCUMENT)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to a file instead of stdout")
def export(document: Path, output: Optional[Path]):
    """
    Re-encode DOCUMENT in canonical form.

    Keys are sorted and units renumbered by id, so equal flows always
    produce identical documents.
    """
    from batchflow import properties
    from batchflow.codec import encode_flows

    flows = _load(document)
    encoded = encode_flows(flows.values())
    if output is None:
        click.echo(properties.dumps(encoded), nl=False)
    else:
        properties.write(output, encoded)
        click.echo(f"✓ Wrote {len(flows)} flows to {output}")


# =============================================================================
# Run Command
# =============================================================================

@main.command("run")
@click.argument("document", type=DOCUMENT)
@click.option("--flow", "targets", multiple=True, help="Only run these flows (and their blockers)")
@click.option("--workers", type=click.IntRange(min=1), help="Maximum concurrent units")
@click.option("--max-attempts", type=click.IntRange(min=1), help="Attempts per unit")
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=0, min_open=True), help="Per-attempt timeout in seconds")
@click.option("--fail-fast", is_flag=True, help="Stop dispatching after the first failure")
@click.option("--dry-run", is_flag=True, help="Walk the graph without executing units")
@click.option("--batch-id", help="Batch id (defaults to the document name)")
@click.option("-A", "--argument", "arguments", multiple=True, callback=_parse_arguments, help="Batch argument key=value")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def run(
    ctx,
    document: Path,
    targets: tuple[str, ...],
    workers: Optional[int],
    max_attempts: Optional[int],
    timeout_seconds: Optional[float],
    fail_fast: bool,
    dry_run: bool,
    batch_id: Optional[str],
    arguments: dict[str, str],
    as_json: bool,
):
    """
    Run the flows of DOCUMENT.

    Examples:

        batchflow run batch.properties

        batchflow run batch.properties --flow nightly --workers 8

        batchflow run batch.properties --dry-run -A date=2024-01-01
    """
    from batchflow.executor import Engine
    from batchflow.handlers import HandlerRegistry
    from batchflow.planner import plan_execution
    from batchflow.utils import setup_logging

    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'batchflow init' to create a configuration file.", err=True)
        raise SystemExit(1)

    config = ctx.obj["config"]
    logger = setup_logging(config.log_level, config.log_format, config.get_log_file_path())

    flows = _load(document)
    try:
        plan = plan_execution(flows, targets=targets or None, logger=logger)
    except BatchflowError as e:
        _fail(str(e))

    if dry_run:
        click.echo("=" * 50)
        click.echo("=== DRY RUN MODE === (no units executed)")
        click.echo("=" * 50)
        registry = HandlerRegistry.create_noop()
    else:
        registry = HandlerRegistry.create_default(config)

    engine = Engine.from_config(
        config,
        registry=registry,
        max_workers=workers,
        max_attempts=max_attempts,
        timeout_seconds=timeout_seconds,
        fail_fast=True if fail_fast else None,
        batch_id=batch_id or document.stem,
        arguments=arguments,
        logger=logger,
    )
    result = engine.run(plan)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)

    if not result.success:
        raise SystemExit(1)


def _print_result(result) -> None:
    from batchflow.utils import console

    table = Table(title=f"Batch {result.batch_id}")
    table.add_column("Unit")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for unit_result in result.results.values():
        status = unit_result.status.value
        if unit_result.error:
            detail = unit_result.error.get("message", "")
        elif unit_result.caused_by is not None:
            detail = f"caused by {unit_result.caused_by}"
        else:
            detail = ""
        table.add_row(
            Text(str(unit_result.ref)),
            Text(status, style=_STATUS_STYLES.get(status, "")),
            Text(str(unit_result.attempts)),
            Text(detail),
        )
    console.print(table)

    if result.success:
        click.echo(f"✓ {result.batch_id} completed")
    elif result.cancelled:
        click.echo(f"✗ {result.batch_id} cancelled: {len(result.skipped)} skipped", err=True)
    else:
        click.echo(
            f"✗ {result.batch_id}: {len(result.failed)} failed, {len(result.skipped)} skipped",
            err=True,
        )
