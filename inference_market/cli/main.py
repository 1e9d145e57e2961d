"""
CLI interface for Inference Market.

Provides command-line access to scoring, stream history and a demo session.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from inference_market.config.loader import (
    DEFAULT_CONFIG,
    MarketplaceConfig,
    load_marketplace_config,
    load_provider_specs,
)
from inference_market.config.log import configure_logging
from inference_market.core.marketplace import Marketplace
from inference_market.core.registry import Hardware
from inference_market.demo.seed_demo_data import run_demo
from inference_market.storage.db import DEFAULT_DB_PATH
from inference_market.storage.repository import StreamHistoryRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_ERROR = 1


def _load_config(config_path: Optional[str]) -> MarketplaceConfig:
    if config_path is None:
        return DEFAULT_CONFIG
    return load_marketplace_config(config_path)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Inference Market CLI."""
    configure_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("Inference Market - Use --help to see available commands")


@app.command()
def init(
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="History database path")
):
    """Initialize the stream history database."""
    try:
        initialize_schema(db_path)
        console.print("[green]✓[/] Stream history initialized")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


@app.command()
def quality(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Marketplace config file")
):
    """List quality tiers and their scoring multipliers."""
    try:
        config = _load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    table = Table(title="Quality tiers")
    table.add_column("Tier")
    table.add_column("Multiplier", justify="right")
    table.add_column("Description")
    for level in config.quality.levels.values():
        table.add_row(level.name, f"{level.multiplier:.2f}", level.description)
    console.print(table)


@app.command()
def match(
    providers_file: str = typer.Argument(..., help="YAML file with a 'providers' list"),
    model: str = typer.Option(..., "--model", "-m", help="Model to match"),
    quality_tier: str = typer.Option("standard", "--quality", "-q", help="Quality tier"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Marketplace config file"),
):
    """
    Score the providers in a file for a model, best first.

    This is a dry run: nothing is admitted and no stream is created.
    """
    try:
        config = _load_config(config_path)
        marketplace = Marketplace(
            quality_multiplier=config.quality.multiplier,
            price_unit_tokens=config.matching.price_unit_tokens,
        )
        names = {}
        for spec in load_provider_specs(providers_file):
            provider_id = marketplace.register_provider(
                Hardware(spec.name, spec.vram_gb, spec.core_count),
                spec.models,
                spec.price_per_token,
                spec.endpoint,
            )
            names[provider_id] = spec.name
        ranked = marketplace.matcher.score_candidates(model, quality_tier)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    if not ranked:
        console.print(f"[bold yellow]No provider serves {model}[/]")
        sys.exit(EXIT_CODE_ERROR)

    table = Table(title=f"Provider scores for {model} ({quality_tier})")
    table.add_column("Rank", justify="right")
    table.add_column("Provider")
    table.add_column("Price/token", justify="right")
    table.add_column("Hardware", justify="right")
    table.add_column("Price term", justify="right")
    table.add_column("Score", justify="right")
    for rank, entry in enumerate(ranked, start=1):
        table.add_row(
            str(rank),
            names[entry.provider.id],
            f"${entry.provider.price_per_token}",
            f"{entry.hardware_term:,.1f}",
            f"{entry.price_term:,.2f}",
            f"{entry.score:,.2f}",
        )
    console.print(table)


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of streams to show"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Filter by model"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="History database path"),
):
    """Show recently closed streams."""
    try:
        records = StreamHistoryRepository(db_path).get_recent_records(provider, model, limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        console.print("Run `inference-market init` to create the history database.")
        sys.exit(EXIT_CODE_ERROR)

    if not records:
        console.print("\n[bold yellow]No closed streams recorded yet[/]\n")
        return

    table = Table(title="Stream history")
    table.add_column("Stream")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")
    table.add_column("Earnings", justify="right")
    table.add_column("Latency (ms)", justify="right")
    for record in records:
        table.add_row(
            record.stream_id,
            record.provider_id,
            record.model,
            record.status,
            f"{record.tokens_processed:,}",
            f"${record.earnings}",
            f"{record.observed_latency_ms:,.1f}",
        )
    console.print(table)


@app.command()
def stats(
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only include the last N days"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="History database path"),
):
    """Summarise the stream history."""
    try:
        summary = StreamHistoryRepository(db_path).get_history_stats(days)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    console.print("\n[bold]Stream history[/bold]")
    console.print("-" * 40)
    console.print(f"Streams: {summary['total_streams']} "
                  f"({summary['completed_streams']} completed, {summary['failed_streams']} failed)")
    console.print(f"Tokens served: {summary['total_tokens']:,}")
    console.print(f"Provider earnings: ${summary['total_earnings']}")
    console.print(f"Average latency: {summary['avg_latency_ms']:,.1f} ms")


@app.command()
def demo(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Marketplace config file"),
):
    """Run a scripted marketplace session and print the resulting status."""
    try:
        marketplace = Marketplace.from_config(_load_config(config_path))
        summaries = run_demo(marketplace)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    table = Table(title="Demo streams")
    table.add_column("Stream")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")
    table.add_column("Earnings", justify="right")
    for summary in summaries:
        table.add_row(
            summary.stream_id,
            summary.provider_id,
            summary.status.value,
            f"{summary.tokens_processed:,}",
            f"${summary.earnings}",
        )
    console.print(table)

    status = marketplace.get_system_status()
    console.print("\n[bold]System status[/bold]")
    console.print("-" * 40)
    console.print(f"Providers: {status.total_providers} "
                  f"({status.idle_providers} idle, {status.streaming_providers} streaming)")
    console.print(f"Active streams: {status.active_streams}")
    console.print(f"Total revenue: ${status.total_revenue}")


if __name__ == "__main__":
    app()
