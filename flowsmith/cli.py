"""CLI entry point for flowsmith.

Commands:
- flowsmith validate: Validate an operation batch against a workflow
- flowsmith simulate: Dry-run a workflow, optionally after a batch
- flowsmith apply: Apply a batch to a workflow file
- flowsmith lint: Lint a workflow file
- flowsmith policies: Show the policy set of an environment
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from flowsmith import __version__
from flowsmith.core.config import ConfigError, EngineConfig, load_engine_config
from flowsmith.core.findings import ValidationIssue
from flowsmith.core.graph_manager import GraphManager
from flowsmith.core.graph_schema import WorkflowGraph
from flowsmith.core.policies import PolicyConfigError, PolicyLoader

console = Console()

CLI_WORKFLOW_ID = "cli"


def _load_document(path: str) -> Any:
    """Read a JSON or YAML file; exits with a message on parse errors."""
    try:
        with open(path, encoding="utf-8") as f:
            if Path(path).suffix.lower() == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        console.print(f"[red]Error parsing '{escape(path)}':[/red] {escape(str(e))}")
        sys.exit(1)


def _load_workflow(path: str | None) -> WorkflowGraph:
    if path is None:
        return WorkflowGraph()
    data = _load_document(path)
    if not isinstance(data, dict):
        console.print(
            f"[red]Error: Invalid content in '{escape(path)}'. "
            f"Expected a mapping, got {type(data).__name__}.[/red]"
        )
        sys.exit(1)
    try:
        return WorkflowGraph.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {escape(err['msg'])}")
        sys.exit(1)


def _build_manager(ctx: click.Context, workflow: WorkflowGraph, env: str | None = None) -> GraphManager:
    config: EngineConfig = ctx.obj["config"]
    if env:
        config = config.model_copy(update={"policy_environment": env})
    try:
        manager = GraphManager(config=config)
        manager.create_workflow(CLI_WORKFLOW_ID, workflow.name, workflow)
    except (PolicyConfigError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    return manager


def _print_issues(issues: list[ValidationIssue], title: str) -> None:
    if not issues:
        return
    table = Table(title=title)
    table.add_column("Severity")
    table.add_column("Code", style="cyan")
    table.add_column("Node", style="magenta")
    table.add_column("Message", style="white")
    for issue in issues:
        color = "red" if issue.is_error else "yellow"
        table.add_row(
            f"[{color}]{issue.severity.value}[/{color}]",
            issue.code,
            escape(issue.node_id or "-"),
            escape(issue.message),
        )
    console.print(table)


def _write_graph(graph: WorkflowGraph, output: str | None) -> None:
    data = graph.model_dump(mode="json", by_alias=True)
    if output is None:
        console.print_json(json.dumps(data))
        return
    with open(output, "w", encoding="utf-8") as f:
        if Path(output).suffix.lower() == ".json":
            json.dump(data, f, indent=2)
        else:
            yaml.safe_dump(data, f, sort_keys=False)
    console.print(f"[green]Wrote workflow to {escape(output)}[/green]")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Engine config file",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """flowsmith - validate, simulate and apply workflow graph edits."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    try:
        config = load_engine_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.argument("batch_file", type=click.Path(exists=True))
@click.option("--workflow", "-w", "workflow_file", type=click.Path(exists=True), help="Base workflow")
@click.option("--env", "-e", help="Policy environment (development, production, strict)")
@click.pass_context
def validate(ctx: click.Context, batch_file: str, workflow_file: str | None, env: str | None) -> None:
    """Validate an operation batch without applying it."""
    manager = _build_manager(ctx, _load_workflow(workflow_file), env)
    result = asyncio.run(manager.validate(CLI_WORKFLOW_ID, _load_document(batch_file)))

    _print_issues(result.errors, "Errors")
    _print_issues(result.warnings, "Warnings")
    stats = result.stats
    console.print(
        f"Checks: {stats.total_checks}  passed: {stats.passed}  failed: {stats.failed}  "
        f"warnings: {stats.warnings}  ({stats.duration_ms:.1f} ms)"
    )
    if not result.valid:
        console.print("[red]Batch is invalid[/red]")
        sys.exit(1)
    console.print("[green]Batch is valid[/green]")


@main.command()
@click.argument("batch_file", type=click.Path(exists=True), required=False)
@click.option("--workflow", "-w", "workflow_file", type=click.Path(exists=True), help="Base workflow")
@click.pass_context
def simulate(ctx: click.Context, batch_file: str | None, workflow_file: str | None) -> None:
    """Simulate execution order and resource usage."""
    manager = _build_manager(ctx, _load_workflow(workflow_file))
    batch = _load_document(batch_file) if batch_file else None
    result = asyncio.run(manager.simulate(CLI_WORKFLOW_ID, batch))

    table = Table(title="Execution Plan")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("After", style="magenta")
    table.add_column("ms", justify="right", style="green")
    table.add_column("MB", justify="right")
    for entry in result.execution_plan:
        table.add_row(
            str(entry.step),
            escape(entry.node_id),
            escape(entry.node_type),
            escape(", ".join(entry.dependencies) or "-"),
            f"{entry.estimated_duration_ms:g}",
            f"{entry.estimated_memory_mb:g}",
        )
    console.print(table)

    est = result.estimates
    console.print(
        f"Duration: {est.total_duration_ms:g} ms (p95 {est.p95_duration_ms:g} ms)  "
        f"peak memory: {est.peak_memory_mb:g} MB  API calls: {est.api_calls}  "
        f"CPU: {est.cpu_percent:g}%  cost: {est.estimated_cost:g}"
    )
    _print_issues(result.errors, "Errors")
    _print_issues(result.warnings, "Warnings")
    if result.cycle_detected:
        console.print("[red]Cycle detected[/red]")
    if not result.success:
        sys.exit(1)


@main.command()
@click.argument("batch_file", type=click.Path(exists=True))
@click.option(
    "--workflow", "-w", "workflow_file", type=click.Path(exists=True), required=True, help="Workflow to edit"
)
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the result here")
@click.option("--env", "-e", help="Policy environment (development, production, strict)")
@click.pass_context
def apply(
    ctx: click.Context, batch_file: str, workflow_file: str, output: str | None, env: str | None
) -> None:
    """Validate and apply an operation batch to a workflow file."""
    manager = _build_manager(ctx, _load_workflow(workflow_file), env)
    result = asyncio.run(manager.apply_batch(CLI_WORKFLOW_ID, _load_document(batch_file)))

    _print_issues(result.issues, "Findings")
    if not result.success:
        console.print(f"[red]Apply failed:[/red] {escape(result.error or '')}")
        sys.exit(1)

    console.print(f"[green]Applied {result.applied_operations} operation(s)[/green]")
    _write_graph(manager.get_workflow(CLI_WORKFLOW_ID), output)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.pass_context
def lint(ctx: click.Context, workflow_file: str) -> None:
    """Lint a workflow graph."""
    manager = _build_manager(ctx, _load_workflow(workflow_file))
    report = asyncio.run(manager.lint(CLI_WORKFLOW_ID))

    if not report.lints:
        console.print("[green]No lint findings[/green]")
        return

    table = Table(title="Lints")
    table.add_column("Level")
    table.add_column("Code", style="cyan")
    table.add_column("Node", style="magenta")
    table.add_column("Message", style="white")
    for item in report.lints:
        color = "red" if item.level.value == "error" else "yellow"
        table.add_row(
            f"[{color}]{item.level.value}[/{color}]",
            item.code,
            escape(item.node or "-"),
            escape(item.message),
        )
    console.print(table)
    if not report.valid:
        sys.exit(1)


@main.command()
@click.option("--env", "-e", help="Policy environment (defaults to the configured one)")
@click.pass_context
def policies(ctx: click.Context, env: str | None) -> None:
    """Show the policies active in an environment."""
    config: EngineConfig = ctx.obj["config"]
    environment = env or config.policy_environment
    try:
        configs = PolicyLoader(config.policy_file).load_environment(environment)
    except PolicyConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title=f"Policies ({environment})")
    table.add_column("Policy", style="cyan")
    table.add_column("Enabled")
    table.add_column("Settings", style="white")
    for policy in configs:
        settings = policy.model_dump(exclude={"type", "enabled"}, exclude_none=True)
        table.add_row(
            policy.type,
            "[green]yes[/green]" if policy.enabled else "[dim]no[/dim]",
            escape(json.dumps(settings, default=str)),
        )
    console.print(table)


if __name__ == "__main__":
    main()
