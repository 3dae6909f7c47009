import asyncio
import json
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from plangraph.config import EngineConfig, load_config_from_yaml, load_plan
from plangraph.errors import ConfigurationError, NodeExecutionError, PlanGraphError, PlanValidationError
from plangraph.executor import DynamicGraphExecutor, PlanExecutor
from plangraph.summary import render_trace_summary
from plangraph.tools import ToolRegistry, load_tools
from plangraph.validator import PlanValidator

PATH_TYPE = click.Path(exists=True, dir_okay=False, path_type=Path)


def load_engine_config(config_path: Optional[Path]) -> EngineConfig:
    return load_config_from_yaml(config_path) if config_path else EngineConfig()


def build_registry(config: EngineConfig) -> ToolRegistry:
    try:
        return ToolRegistry(load_tools(config.tool_modules, config.tools))
    except (ImportError, FileNotFoundError) as e:
        raise ConfigurationError(str(e)) from e


def read_context(context_path: Optional[Path]) -> dict:
    if context_path is None:
        return {}
    context = json.loads(context_path.read_text(encoding="utf-8"))
    if not isinstance(context, dict):
        raise click.BadParameter("The initial context must be a JSON object", param_hint="--context")
    return context


@click.group()
def cli():
    """Plan-execute DAG engine."""
    load_dotenv()


@cli.command()
@click.argument("plan_path", type=PATH_TYPE)
@click.option("--config", "config_path", type=PATH_TYPE, help="Engine config; enables the tool existence check.")
def validate(plan_path: Path, config_path: Optional[Path]):
    """Validate the structure, dependencies and (with --config) tools of a plan."""
    try:
        registry = build_registry(load_engine_config(config_path)) if config_path else None
        plan = load_plan(plan_path)
    except PlanValidationError as e:
        click.echo(str(e).splitlines()[0], err=True)
        for issue in e.errors:
            click.echo(f"  {issue}", err=True)
        raise SystemExit(1)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    # without a registry only structure and dependencies are checked
    result = PlanValidator(registry).validate(plan)

    if not result.success:
        for issue in result.errors:
            click.echo(f"  {issue}", err=True)
        raise SystemExit(1)

    click.echo(f"Plan {plan_path.name} is valid ({len(plan.steps)} steps)")


@cli.command()
@click.argument("plan_path", type=PATH_TYPE)
@click.option("--config", "config_path", type=PATH_TYPE, help="Engine config the tools are loaded from.")
@click.option("--context", "context_path", type=PATH_TYPE, help="JSON file with the initial context.")
def layers(plan_path: Path, config_path: Optional[Path], context_path: Optional[Path]):
    """Print the wavefronts the scheduler would run, without running anything."""
    try:
        registry = build_registry(load_engine_config(config_path))
        groups = PlanExecutor(registry).preview_layers(load_plan(plan_path), read_context(context_path))
    except PlanGraphError as e:
        raise click.ClickException(str(e))

    for idx, group in enumerate(groups, start=1):
        click.echo(f"{idx}: {', '.join(group)}")


@cli.command()
@click.argument("plan_path", type=PATH_TYPE)
@click.option("--config", "config_path", type=PATH_TYPE, required=True, help="Engine config with the tool modules.")
@click.option("--context", "context_path", type=PATH_TYPE, help="JSON file with the initial context.")
@click.option("--concurrency", type=click.IntRange(1, 10), help="Maximum number of nodes running at once.")
@click.option("--max-retries", type=click.IntRange(0, 5), help="Retries per node after the first attempt.")
@click.option("--timeout-ms", type=click.IntRange(min=0), help="Default per-node timeout in milliseconds.")
@click.option("--json", "as_json", is_flag=True, help="Print the trace document instead of the summary.")
def run(
    plan_path: Path,
    config_path: Path,
    context_path: Optional[Path],
    concurrency: Optional[int],
    max_retries: Optional[int],
    timeout_ms: Optional[int],
    as_json: bool,
):
    """Execute a plan and print its trace."""
    overrides = {
        key: value
        for key, value in {
            "concurrency": concurrency,
            "max_retries": max_retries,
            "default_timeout_ms": timeout_ms,
        }.items()
        if value is not None
    }

    try:
        config = load_engine_config(config_path)
        executor = DynamicGraphExecutor(build_registry(config))
        plan = load_plan(plan_path)
        _, trace = asyncio.run(executor.run(plan, read_context(context_path), config.options, **overrides))
        failed = False
    except NodeExecutionError as e:
        trace = e.trace
        failed = True
    except PlanGraphError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(trace.to_json_dict(), indent=2, default=str))
    else:
        click.echo(render_trace_summary(trace), nl=False)

    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
