"""CLI for the Agent Task Engine."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import ConfigLoader, EngineConfig, create_default_config, load_config
from .exceptions import EngineError
from .logging_config import configure_from_config
from .models import TaskGraph, TaskState

console = Console()

STATE_STYLES = {
    TaskState.SUCCESS: "green",
    TaskState.FAIL: "red",
    TaskState.RUNNING: "yellow",
    TaskState.WAIT: "dim",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-engine",
        description="Plan and execute natural-language requests as task graphs",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Plan and execute a request")
    run_parser.add_argument("--message", "-m", required=True, help="Request to execute")
    run_parser.add_argument("--config", "-c", help="Path to YAML configuration file")
    run_parser.add_argument("--parallel", action="store_true", help="Run independent tasks in parallel")
    run_parser.add_argument("--workers", type=int, help="Maximum concurrent tasks per wave")
    run_parser.add_argument("--report", help="Write an execution report to this path")
    run_parser.add_argument(
        "--report-format",
        choices=["markdown", "json", "text"],
        help="Report format (default from configuration)",
    )

    plan_parser = subparsers.add_parser("plan", help="Show the plan for a request without executing it")
    plan_parser.add_argument("--message", "-m", required=True, help="Request to plan")
    plan_parser.add_argument("--config", "-c", help="Path to YAML configuration file")

    init_parser = subparsers.add_parser("init-config", help="Write a default configuration file")
    init_parser.add_argument("path", help="Output YAML path")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    subparsers.add_parser("version", help="Show version information")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        from . import __version__

        console.print(f"[bold blue]Agent Task Engine[/bold blue] v{__version__}")
        return 0

    if args.command == "init-config":
        return init_config(args.path, args.force)

    if args.command in ("run", "plan"):
        try:
            config = _load(args.config)
        except (EngineError, FileNotFoundError) as e:
            console.print(f"[red]Error:[/red] {e}")
            return 1

        if args.command == "plan":
            return asyncio.run(plan_request(args.message, config))

        if args.parallel:
            config.execution.parallel = True
        if args.workers:
            config.execution.max_workers = args.workers
        return asyncio.run(run_request(args.message, config, args.report, args.report_format))

    parser.print_help()
    return 0


def _load(config_path: Optional[str]) -> EngineConfig:
    config = load_config(config_path) if config_path else create_default_config()
    configure_from_config(config.logging)
    return config


def init_config(path: str, force: bool = False) -> int:
    """Write the default configuration as YAML."""
    target = Path(path)
    if target.exists() and not force:
        console.print(f"[red]Error:[/red] {path} already exists (use --force to overwrite)")
        return 1

    try:
        ConfigLoader().export_to_yaml(target, create_default_config())
    except OSError as e:
        console.print(f"[red]Error:[/red] Failed to write {path}: {e}")
        return 1

    console.print(
        Panel(
            f"[green]Configuration written to {target}[/green]\n\n"
            "Next steps:\n"
            "  1. Set ANTHROPIC_API_KEY (or add it to .env)\n"
            f"  2. agent-engine run -c {target} -m 'Your request'",
            title="Success",
        )
    )
    return 0


async def plan_request(message: str, config: EngineConfig) -> int:
    """Plan ``message`` and print the resulting task table."""
    from .engine import TaskEngine

    try:
        async with await TaskEngine.create(config=config) as engine:
            graph = await engine.planner.plan(message, engine.new_context())
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    console.print(render_plan(graph))
    if graph.summary:
        console.print(f"[blue]Summary:[/blue] {graph.summary}")
    return 0


async def run_request(
    message: str,
    config: EngineConfig,
    report_path: Optional[str] = None,
    report_format: Optional[str] = None,
) -> int:
    """Execute ``message`` and print the task table and final answer."""
    from .engine import TaskEngine
    from .reporting import ResultProcessor

    try:
        async with await TaskEngine.create(config=config) as engine:
            console.print(f"[blue]Executing:[/blue] {message[:100]}")
            result = await engine.run(message)
        if report_path:
            saved = await result.save_report(
                report_path,
                report_format or config.reporting.format,
                processor=ResultProcessor.from_config(config.reporting),
            )
            console.print(f"[blue]Report:[/blue] {saved}")
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    console.print(render_plan(result.graph))
    if result.report.failed:
        for task_id, error in result.report.failed.items():
            console.print(f"[red]Failed[/red] {task_id}: {error}")
    if result.report.unresolved:
        console.print(f"[yellow]Not scheduled (cyclic dependencies):[/yellow] {', '.join(result.report.unresolved)}")

    console.print(Panel(result.answer or "[dim]No answer produced[/dim]", title="Answer"))
    console.print(f"[dim]{result.summary()}[/dim]")
    return 0 if result.success else 1


def render_plan(graph: TaskGraph) -> Table:
    table = Table(title="Task Plan", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type", style="magenta")
    table.add_column("After", style="dim")
    table.add_column("State")

    for index, task in enumerate(graph.tasks, start=1):
        style = STATE_STYLES.get(task.state, "white")
        state = task.state.value if task.state else ""
        table.add_row(
            str(index),
            task.id,
            task.name or task.description[:40],
            task.type.value if task.type else "",
            task.predecessor or "-",
            f"[{style}]{state}[/{style}]",
        )
    return table


if __name__ == "__main__":
    sys.exit(main())
