"""dockform command-line interface.

Commands:
    apply SCRIPT    reconcile the stack declared by SCRIPT
    plan SCRIPT     show what apply would do, without changing anything
    destroy NAME    delete every resource recorded for app NAME
    state NAME      print the stored state records of app NAME

A stack script is a Python file defining ``stack(app)``, which declares
resources on the App it receives.  ``APP_NAME`` in the script overrides the
default app name (the file stem); ``--app`` overrides both.

Exit codes: 0 success, 1 a resource failed or was skipped, 2 invalid
declarations or a locked/corrupt state store.
"""

from __future__ import annotations

import asyncio
import importlib.util
import json
import sys
from pathlib import Path
from types import ModuleType
from typing import Any

import click

from dockform import __version__
from dockform.app import App
from dockform.config import load_config
from dockform.errors import ConfigurationError, StoreError
from dockform.models.config import DockformConfig
from dockform.models.report import Phase, ReconciliationReport
from dockform.observability.logging import get_logger, setup_logging
from dockform.state.store import FileStateStore

EXIT_FAILED = 1
EXIT_USAGE = 2

_logger = get_logger("cli")


def _load_script(path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"dockform_stack_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise click.ClickException(f"Cannot load stack script {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    if not callable(getattr(module, "stack", None)):
        raise click.ClickException(f"{path} does not define a stack(app) function")
    return module


def _print_report(report: ReconciliationReport, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
        return

    title = "Plan" if report.dry_run else "Result"
    click.echo(f"{title} for app '{report.app}' ({report.phase.value}):")
    for outcome in report.outcomes():
        marker = outcome.state.value if outcome.state.value in ("failed", "skipped") else outcome.action.value
        line = f"  {marker:<10} {outcome.kind.value:<10} {outcome.logical_id}"
        if outcome.physical_id:
            line += f"  [{outcome.physical_id[:19]}]"
        if outcome.drifted:
            line += "  (drifted)"
        if outcome.error:
            line += f"  error: {outcome.error}"
        elif outcome.reason and outcome.action.value != "unchanged":
            line += f"  ({outcome.reason})"
        click.echo(line)
    click.echo(
        f"{len(report.created)} created, {len(report.updated)} updated, "
        f"{len(report.recreated)} recreated, {len(report.deleted)} deleted, "
        f"{len(report.unchanged)} unchanged, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped"
    )


async def _reconcile(
    name: str, config: DockformConfig, phase: Phase, module: ModuleType | None
) -> ReconciliationReport:
    async with App(name, config=config, phase=phase) as app:
        if module is not None:
            module.stack(app)
        return await app.finalize()


def _run(name: str, config: DockformConfig, phase: Phase, module: ModuleType | None, as_json: bool) -> None:
    try:
        report = asyncio.run(_reconcile(name, config, phase, module))
    except (ConfigurationError, StoreError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_USAGE)
    _print_report(report, as_json)
    if not report.ok:
        sys.exit(EXIT_FAILED)


def _app_name(module: ModuleType, script: Path, override: str | None) -> str:
    return override or getattr(module, "APP_NAME", None) or script.stem


@click.group()
@click.version_option(version=__version__, prog_name="dockform")
@click.option("--log-level", default=None, help="Override DOCKFORM_LOG_LEVEL.")
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="Override DOCKFORM_STATE_DIR.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, state_dir: str | None) -> None:
    """dockform - declarative Docker resources with tracked state."""
    try:
        config = load_config()
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    if log_level:
        config.log.level = log_level.lower()
    if state_dir:
        config.state.directory = state_dir
    setup_logging(config.log.level, config.log.format)
    ctx.obj = config


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--app", "app_name", default=None, help="App name (default: APP_NAME or the script name).")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_obj
def apply(config: DockformConfig, script: Path, app_name: str | None, as_json: bool) -> None:
    """Create or update the resources declared by SCRIPT."""
    module = _load_script(script)
    name = _app_name(module, script, app_name)
    _logger.info("apply requested", app=name, script=str(script))
    _run(name, config, Phase.UP, module, as_json)


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--app", "app_name", default=None, help="App name (default: APP_NAME or the script name).")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_obj
def plan(config: DockformConfig, script: Path, app_name: str | None, as_json: bool) -> None:
    """Show what apply would change, without changing anything."""
    module = _load_script(script)
    _run(_app_name(module, script, app_name), config, Phase.PLAN, module, as_json)


@cli.command()
@click.argument("name")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_obj
def destroy(config: DockformConfig, name: str, yes: bool, as_json: bool) -> None:
    """Delete every resource recorded for app NAME."""
    if not yes:
        click.confirm(f"Delete every resource of app '{name}'?", abort=True)
    _logger.info("destroy requested", app=name)
    _run(name, config, Phase.DESTROY, None, as_json)


@cli.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Print the records as JSON.")
@click.pass_obj
def state(config: DockformConfig, name: str, as_json: bool) -> None:
    """Print the state records stored for app NAME."""
    try:
        records = FileStateStore(config.state.directory, name).load()
    except StoreError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_USAGE)

    if as_json:
        payload: dict[str, Any] = {lid: records[lid].to_dict() for lid in sorted(records)}
        click.echo(json.dumps(payload, indent=2))
        return
    if not records:
        click.echo(f"No state recorded for app '{name}'.")
        return
    for lid in sorted(records):
        record = records[lid]
        click.echo(
            f"  {record.kind.value:<10} {lid:<24} {record.physical_id[:19]:<20} "
            f"{record.last_applied_at.isoformat(timespec='seconds')}"
        )
