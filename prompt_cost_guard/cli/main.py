"""
CLI interface for Prompt Cost Guard.

Provides command-line access to templates, rendering, quotas and reports.
"""

import logging
import sqlite3
import sys
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from prompt_cost_guard.config.loader import EngineConfig, load_engine_config
from prompt_cost_guard.core.quota import QuotaTracker
from prompt_cost_guard.core.renderer import render_prompt
from prompt_cost_guard.core.reporting import StatsSnapshot, build_optimization_report
from prompt_cost_guard.core.resolver import ResolutionStep, UserContext, resolve_variables
from prompt_cost_guard.core.template_source import TemplateSource
from prompt_cost_guard.core.templates import PromptCategory, TemplateRegistry
from prompt_cost_guard.storage.db import DEFAULT_DB_PATH
from prompt_cost_guard.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _settings(ctx: typer.Context) -> dict:
    return ctx.obj or {"config": EngineConfig(), "db": DEFAULT_DB_PATH}


def _print_no_ledger():
    console.print("\n[bold yellow]No usage ledger found[/]")
    console.print("\nRun `prompt-cost-guard init` to initialize the database.\n")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to engine config YAML"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the usage ledger database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Prompt Cost Guard CLI."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)

    engine_config = EngineConfig()
    if config:
        try:
            engine_config = load_engine_config(config)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config:[/] {escape(str(e))}")
            sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": engine_config, "db": db}

    if ctx.invoked_subcommand is None:
        console.print("Prompt Cost Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage ledger database."""
    try:
        initialize_schema(_settings(ctx)["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def templates(
    ctx: typer.Context,
    category: Optional[str] = typer.Option(None, "--category", help="Only list templates of this category"),
    templates_dir: Optional[str] = typer.Option(None, "--templates-dir", help="Extra template directory"),
):
    """List registered prompt templates."""
    config = _settings(ctx)["config"]
    registry = TemplateRegistry(TemplateSource(templates_dir or config.templates_dir))

    if category:
        try:
            selected = registry.get_templates_by_category(PromptCategory(category))
        except ValueError:
            console.print(f"[red]Unknown category:[/] {category}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        selected = registry.all_templates()

    table = Table(title="Prompt Templates")
    table.add_column("ID", no_wrap=True)
    table.add_column("Category")
    table.add_column("Lang")
    table.add_column("Optimized")
    table.add_column("Vars", justify="right")
    for template in sorted(selected, key=lambda t: t.id):
        table.add_row(
            template.id,
            template.category.value,
            template.language,
            "yes" if template.cost_optimized else "no",
            str(len(template.variables)),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _parse_vars(pairs: List[str]) -> dict:
    values = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected name=value, got '{pair}'")
        name, value = pair.split("=", 1)
        values[name.strip()] = value
    return values


@app.command()
def render(
    ctx: typer.Context,
    template_id: str = typer.Argument(..., help="Template to render"),
    var: Optional[List[str]] = typer.Option(None, "--var", help="Variable value as name=value"),
):
    """Render a template with the given variables and an empty user context."""
    config = _settings(ctx)["config"]
    registry = TemplateRegistry(TemplateSource(config.templates_dir))
    template = registry.get_template(template_id)
    if template is None:
        console.print(f"[red]Template not found:[/] {template_id}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        user_input = _parse_vars(var or [])
    except ValueError as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)

    resolved = resolve_variables(template, UserContext(user_id="cli"), user_input)
    console.print(render_prompt(template, resolved), markup=False, highlight=False, soft_wrap=True)

    fallbacks = [r.name for r in resolved.values() if r.step == ResolutionStep.FALLBACK]
    if fallbacks:
        console.print(f"\n[yellow]Fallback values used for:[/] {', '.join(fallbacks)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quota(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to inspect"),
):
    """Show a user's quota status from the usage ledger."""
    settings = _settings(ctx)
    quota_config = settings["config"].quota
    tracker = QuotaTracker(
        daily_quota=quota_config.daily,
        monthly_quota=quota_config.monthly,
        near_limit_ratio=quota_config.near_limit_ratio,
        history_limit=quota_config.history_limit,
    )

    try:
        events = UsageRepository(settings["db"]).get_recent_events(
            user_id=user_id, days=31, limit=quota_config.history_limit
        )
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_ledger()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    tracker.load_history(events)
    status = tracker.check_quota(user_id)
    metrics = tracker.get_cost_metrics(user_id)

    console.print(f"\n[bold]Quota status for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Daily: {status.daily_used}/{status.daily_quota} ({status.daily_remaining} remaining)")
    console.print(f"Monthly: {status.monthly_used}/{status.monthly_quota} ({status.monthly_remaining} remaining)")
    console.print(f"Resets at: {status.reset_time.isoformat()}")
    console.print(f"Cost today: {_format_currency(metrics.daily_cost)}")
    console.print(f"Projected monthly cost: {_format_currency(metrics.projected_monthly_cost)}")

    if status.is_over_limit:
        console.print("\n[bold red]Over limit[/]")
    elif status.is_near_limit:
        console.print("\n[bold yellow]Near limit[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Days of ledger history to include"),
):
    """Show the optimization report and usage totals from the ledger."""
    settings = _settings(ctx)
    repository = UsageRepository(settings["db"])

    try:
        stats = repository.get_usage_stats(days=days)
        counts = repository.get_optimization_counts(days=days)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_ledger()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    # cache hits are never written to the ledger
    snapshot = StatsSnapshot(
        requests=counts["total_requests"],
        deduplicated=counts["deduplicated"],
        batched_original=counts["batched_original"],
        batched_combined=counts["batched_combined"],
    )
    optimization = build_optimization_report(snapshot, settings["config"].reporting)

    console.print("\n[bold]Optimization Report[/bold]")
    console.print("-" * 40)
    console.print(f"Current rate: {optimization.current_optimization_rate:.1f}%")
    console.print(f"Target rate: {optimization.target_optimization_rate:.1f}%")
    console.print(f"Deduplication rate: {optimization.deduplication_rate:.1f}%")
    console.print(f"Batching efficiency: {optimization.batching_efficiency:.1f}%")
    console.print("Cache hit rate: not recorded in the ledger")
    for recommendation in optimization.recommendations:
        console.print(f"  - {recommendation}")

    console.print(f"\n[bold]Usage over the last {days} days[/bold]")
    console.print(f"Requests: {stats['total_requests']}")
    console.print(f"Tokens: {stats['total_tokens']}")
    console.print(f"Total cost: {_format_currency(stats['total_cost'])}")
    console.print(f"Average cost/request: {_format_currency(stats['avg_cost'])}")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


if __name__ == "__main__":
    app()
