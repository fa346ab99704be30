"""Command line interface for running GASSAPI flows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError

from gassapi.config import GassapiConfig, load_config
from gassapi.exceptions import ConfigError, FlowValidationError
from gassapi.flows.executor import FlowExecutor
from gassapi.flows.models import (
    FlowDefinition,
    FlowReport,
    StepResult,
    merge_flow_config,
    parse_flow_inputs,
)
from gassapi.flows.runner import DryRunStepRunner, HttpxStepRunner
from gassapi.flows.state import FlowStateManager
from gassapi.interpolation import StatefulInterpolator
from gassapi.session import SessionStore

app = typer.Typer(help="CLI for GASSAPI flows")

flow_app = typer.Typer(help="Commands for validating and running flows")
config_app = typer.Typer(help="Commands for inspecting configuration")

app.add_typer(flow_app, name="flow")
app.add_typer(config_app, name="config")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """GASSAPI CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_path: Optional[Path]) -> GassapiConfig:
    try:
        config = load_config(str(config_path) if config_path else None)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if config.debug:
        logging.getLogger("gassapi").setLevel(logging.DEBUG)
    return config


def load_flow_file(path: Path) -> FlowDefinition:
    """Read a YAML or JSON flow definition.

    Files exported from the backend (with a ``flow_data`` section) are
    accepted as well as plain definitions.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a flow definition")
    if "flow_data" in data:
        definition = FlowDefinition.from_backend(data)
    else:
        definition = FlowDefinition.model_validate(data)
    if not definition.id:
        definition = definition.model_copy(update={"id": definition.name or path.stem})
    return definition


def _read_flow(path: Path) -> FlowDefinition:
    if not path.exists():
        typer.secho(f"Flow file not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return load_flow_file(path)
    except (yaml.YAMLError, ValidationError, ValueError) as exc:
        typer.secho(f"Could not read flow {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_result(result: StepResult) -> None:
    status = result.response.status if result.response else "-"
    if result.success:
        typer.secho(
            f"  [ok]   {result.step_id} ({status}) {result.execution_time:.3f}s",
            fg=typer.colors.GREEN,
        )
    else:
        typer.secho(
            f"  [fail] {result.step_id} ({status}) {result.error}", fg=typer.colors.RED
        )


def _echo_report(report: FlowReport) -> None:
    typer.echo(
        f"Flow {report.flow_id}: {report.status.value} "
        f"({report.executed_steps}/{report.total_steps} steps, "
        f"{report.failed_steps} failed, {report.execution_time:.3f}s)"
    )
    for warning in report.warnings:
        typer.secho(f"  warning: {warning}", fg=typer.colors.YELLOW)
    for error in report.errors:
        typer.secho(f"  error: {error}", fg=typer.colors.RED)


@flow_app.command("run")
def flow_run(
    flow_file: Path,
    inputs: Optional[List[str]] = typer.Option(
        None, "--input", "-i", help="Flow input as key=value (repeatable)"
    ),
    environment: Optional[str] = typer.Option(
        None, "--env", "-e", help="Environment from the config file"
    ),
    parallel: Optional[bool] = typer.Option(
        None, "--parallel/--sequential", help="Override the flow's execution mode"
    ),
    max_concurrency: Optional[int] = typer.Option(None, help="Maximum concurrent steps"),
    timeout: Optional[float] = typer.Option(None, help="Whole-flow timeout in seconds"),
    continue_on_error: bool = typer.Option(
        False, "--continue-on-error", help="Keep running steps after a failure"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Do not send any request"),
    export: Optional[Path] = typer.Option(None, help="Write the final flow state as JSON"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """
    Run a flow file and print a per-step report.

    Example:
        gassapi flow run ./flows/login.yaml -i username=ada -i password=secret
        gassapi flow run ./flows/smoke.yaml --parallel --max-concurrency 3
    """
    config = _load_config(config_path)
    definition = _read_flow(flow_file)

    flow_config = merge_flow_config(
        config.flows.model_dump(),
        definition.config,
        parallel=parallel,
        max_concurrency=max_concurrency,
        timeout=timeout,
        stop_on_error=False if continue_on_error else None,
    )

    flow_inputs = dict(definition.inputs)
    for pair in inputs or []:
        flow_inputs.update(parse_flow_inputs(pair))

    try:
        session = SessionStore.from_config(config, environment)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    manager = FlowStateManager(
        history_limit=config.flows.history_limit,
        history_max_age=config.flows.history_max_age,
    )

    async def _run() -> FlowReport:
        runner = (
            DryRunStepRunner()
            if dry_run
            else HttpxStepRunner(default_timeout=config.server.timeout)
        )
        executor = FlowExecutor(
            runner, manager, session, endpoints=definition.endpoints, debug=config.debug
        )
        try:
            return await executor.run(
                definition.id,
                definition.steps,
                flow_config,
                flow_inputs,
                on_step_result=_echo_result,
            )
        finally:
            if isinstance(runner, HttpxStepRunner):
                await runner.aclose()

    typer.echo(f"Running flow: {definition.name or definition.id}")
    try:
        report = asyncio.run(_run())
    except FlowValidationError as exc:
        typer.secho("Flow is invalid:", fg=typer.colors.RED)
        for error in exc.errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)

    _echo_report(report)

    if export is not None:
        state = manager.export_flow_state(definition.id)
        export.write_text(json.dumps(state, indent=2))
        typer.echo(f"Flow state written to {export}")

    if not report.success:
        raise typer.Exit(code=1)


@flow_app.command("validate")
def flow_validate(flow_file: Path) -> None:
    """Check a flow file without running it."""
    definition = _read_flow(flow_file)
    result = FlowStateManager().validate_flow(definition.steps, definition.config)
    for warning in result.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    if not result.valid:
        for error in result.errors:
            typer.secho(f"error: {error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Flow {definition.id} is valid ({len(definition.steps)} steps)")


@flow_app.command("refs")
def flow_refs(flow_file: Path) -> None:
    """List the variable references used by each step of a flow."""
    definition = _read_flow(flow_file)
    for step in definition.steps:
        references = StatefulInterpolator.extract_object_references(
            [step.url, step.headers, step.body]
        )
        if not references:
            typer.echo(f"{step.id}: (none)")
            continue
        typer.echo(f"{step.id}: {', '.join(references)}")


@config_app.command("show")
def config_show(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """Print the effective configuration with the token masked."""
    config = _load_config(config_path)
    data = config.model_dump(mode="json", exclude={"mcp_client"})
    if config.get_token():
        data["token"] = "***"
    typer.echo(yaml.safe_dump(data, sort_keys=False))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
