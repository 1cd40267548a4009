"""
CLI interface for Token Cost Guard.

Provides command-line access to token counting, estimation and limit checks.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from token_cost_guard.config.loader import TokenConfig, load_token_config
from token_cost_guard.core.encoders import MODEL_ENCODINGS
from token_cost_guard.core.guardrails import check_request_limits
from token_cost_guard.core.models import ENGINE_TO_MODEL
from token_cost_guard.core.pricing import PricingTable
from token_cost_guard.core.resolution import BatchItem, TokenResolutionService
from token_cost_guard.core.text_stats import text_stats as compute_text_stats
from token_cost_guard.core.token_counter import TokenResult
from token_cost_guard.utils.logger import setup_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to YAML token configuration")


def _load_config(config_path: Optional[Path]) -> TokenConfig:
    if config_path is None:
        return TokenConfig()
    return load_token_config(str(config_path))


def _build_service(config_path: Optional[Path]) -> TokenResolutionService:
    """Create the resolution service for one command invocation."""
    return TokenResolutionService.from_config(_load_config(config_path))


async def _with_service(config_path: Optional[Path], operation):
    async with _build_service(config_path) as service:
        return await operation(service)


def _run(config_path: Optional[Path], operation):
    return asyncio.run(_with_service(config_path, operation))


def _format_cost(amount: float) -> str:
    return f"${amount:,.6f}"


def _display_token_result(title: str, result: TokenResult) -> None:
    table = Table(title=title)
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Model", result.model)
    table.add_row("Method", f"{result.method.value} ({result.method.description})")
    table.add_row("Input tokens", str(result.input_tokens))
    table.add_row("Output tokens", str(result.output_tokens))
    table.add_row("Total tokens", str(result.total_tokens))
    table.add_row("Estimated cost", _format_cost(result.estimated_cost))
    table.add_row("Processing time", f"{result.processing_time_ms:.2f}ms")
    console.print(table)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Token Cost Guard CLI."""
    setup_logging(level=logging.DEBUG if verbose else logging.WARNING)
    if ctx.invoked_subcommand is None:
        console.print("Token Cost Guard - Use --help to see available commands")


@app.command()
def count(
    text: str = typer.Argument(..., help="Text to tokenize"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Engine or model name"),
    remote: bool = typer.Option(False, "--remote", "-r", help="Prefer the remote tokenizer"),
    config: Optional[Path] = CONFIG_OPTION,
):
    """Count the tokens in TEXT and show the input cost."""
    try:
        result = _run(config, lambda service: service.resolve(text, model, prefer_remote=remote))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _display_token_result("Token Count", result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    prompt: str = typer.Argument(..., help="Prompt text"),
    engine: Optional[str] = typer.Option(None, "--engine", "-e", help="Engine or model name"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens", "-t", help="Expected output tokens"),
    config: Optional[Path] = CONFIG_OPTION,
):
    """Estimate tokens and cost for a generation request before dispatching it."""
    try:
        result = _run(config, lambda service: service.estimate_request(prompt, engine, max_tokens))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _display_token_result("Request Estimate", result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def validate(
    prompt: str = typer.Argument(..., help="Prompt text"),
    engine: Optional[str] = typer.Option(None, "--engine", "-e", help="Engine or model name"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens", "-t", help="Expected output tokens"),
    ceiling: Optional[int] = typer.Option(None, "--ceiling", help="Maximum total tokens"),
    max_cost: Optional[float] = typer.Option(None, "--max-cost", help="Maximum request cost in USD"),
    config: Optional[Path] = CONFIG_OPTION,
):
    """
    Check a request estimate against token and cost ceilings.

    Exits with 1 when a ceiling is exceeded, so it can gate scripts and CI.
    """
    try:
        token_config = _load_config(config)
        result = _run(config, lambda service: service.estimate_request(prompt, engine, max_tokens))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    validation = check_request_limits(
        result,
        max_tokens=ceiling if ceiling is not None else token_config.limits.max_tokens_per_request,
        max_cost=max_cost if max_cost is not None else token_config.limits.max_cost_per_request,
    )
    _display_token_result("Request Estimate", result)
    if validation.valid:
        console.print(f"[green]✓[/] {validation.message}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] {validation.message}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def batch(
    file: Path = typer.Argument(..., help="File with one text per line"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Engine or model name"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-n", help="Max texts in flight"),
    remote: bool = typer.Option(False, "--remote", "-r", help="Prefer the remote tokenizer"),
    config: Optional[Path] = CONFIG_OPTION,
):
    """Count tokens for every non-empty line of FILE."""
    if not file.exists():
        console.print(f"[red]Error:[/] File not found: {file}")
        sys.exit(EXIT_CODE_FAIL)
    texts = [line for line in file.read_text(encoding="utf-8").splitlines() if line.strip()]

    async def collect(service: TokenResolutionService) -> List[BatchItem]:
        return [
            item async for item in service.resolve_batch(texts, model, remote, concurrency)
        ]

    try:
        items = sorted(_run(config, collect), key=lambda item: item.index)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Batch Token Count")
    table.add_column("#", justify="right")
    table.add_column("Text")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    total_tokens = 0
    total_cost = 0.0
    failures = 0
    for item in items:
        if item.ok:
            total_tokens += item.result.total_tokens
            total_cost += item.result.estimated_cost
            table.add_row(str(item.index + 1), item.text, str(item.result.total_tokens),
                          _format_cost(item.result.estimated_cost))
        else:
            failures += 1
            table.add_row(str(item.index + 1), item.text, "[red]error[/]", str(item.error))
    console.print(table)
    console.print(f"Total: {total_tokens} tokens, {_format_cost(total_cost)} across {len(items)} texts")

    if failures:
        console.print(f"[red]{failures} text(s) failed[/]")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command("text-stats")
def text_stats(text: str = typer.Argument(..., help="Text to analyze")):
    """Show character, word and line counts without loading a tokenizer."""
    stats = compute_text_stats(text)
    table = Table(title="Text Statistics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Characters", str(stats.character_count))
    table.add_row("Words", str(stats.word_count))
    table.add_row("Lines", str(stats.line_count))
    table.add_row("Estimated tokens", str(stats.estimated_tokens_simple))
    table.add_row("Reading time (min)", str(stats.estimated_reading_time_minutes))
    console.print(table)


@app.command()
def health(config: Optional[Path] = CONFIG_OPTION):
    """Check local and remote tokenizer health."""
    try:
        status = _run(config, lambda service: service.health_status())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    def _mark(ok: bool) -> str:
        return "[green]✓[/]" if ok else "[red]✗[/]"

    console.print(f"{_mark(status.local_healthy)} Local tokenizer")
    if status.remote_enabled:
        console.print(f"{_mark(status.remote_healthy)} Remote tokenizer")
    else:
        console.print("[dim]- Remote tokenizer disabled[/]")
    sys.exit(EXIT_CODE_PASS if status.overall_healthy else EXIT_CODE_FAIL)


@app.command()
def models(config: Optional[Path] = CONFIG_OPTION):
    """List priced models, their encodings, and engine aliases."""
    try:
        pricing = PricingTable.from_config(_load_config(config).pricing)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Models")
    table.add_column("Model")
    table.add_column("Encoding")
    table.add_column("Input / 1K", justify="right")
    table.add_column("Output / 1K", justify="right")
    for name in sorted(pricing.prices):
        price = pricing.prices[name]
        table.add_row(
            name,
            MODEL_ENCODINGS.get(name, "(default)"),
            f"${price.input_cost_per_1k}",
            f"${price.output_cost_per_1k}",
        )
    table.add_row(
        "(default)", "", f"${pricing.default.input_cost_per_1k}", f"${pricing.default.output_cost_per_1k}"
    )
    console.print(table)

    aliases = ", ".join(f"{engine} → {model}" for engine, model in sorted(ENGINE_TO_MODEL.items()))
    console.print(f"Engine aliases: {aliases}")


if __name__ == "__main__":
    app()
