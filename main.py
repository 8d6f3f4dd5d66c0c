#!/usr/bin/env python3
"""
LLM Router
Main entry point with CLI interface
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from llm_router import __version__
from llm_router.config import ProviderId, load_config
from llm_router.display import (
    show_benchmarks,
    show_catalog,
    show_error,
    show_hardware,
    show_providers,
    show_recommendations,
)
from llm_router.errors import LLMRouterError
from llm_router.session import EXPORT_FORMATS, RoutingSession
from llm_router.usecases import USE_CASE_ALIASES, Priority, UseCase

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)]
)
logger = logging.getLogger(__name__)

USE_CASE_CHOICES = [u.value for u in UseCase] + sorted(USE_CASE_ALIASES)
PRIORITY_CHOICES = [p.value for p in Priority]
PROVIDER_CHOICES = [p.value for p in ProviderId]


@asynccontextmanager
async def open_session(ctx):
    config = load_config(ctx.obj['config'])
    session = RoutingSession(config=config)
    try:
        yield session
    finally:
        await session.aclose()


def run_command(ctx, coro) -> None:
    """Run one async command body with the CLI's error handling"""
    console = ctx.obj['console']
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        sys.exit(0)
    except LLMRouterError as e:
        show_error(console, e)
        if ctx.obj['verbose']:
            logger.exception("Detailed error information")
        sys.exit(1)


def write_export(console: Console, data: str, kind: str, export_format: str, output: Optional[str]) -> None:
    if output:
        filepath = Path(output)
    else:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filepath = Path(f"{kind}_{timestamp}.{export_format}")
    with open(filepath, 'w') as f:
        f.write(data)
    console.print(f"Saved to [bold green]{filepath}[/bold green]")


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--config', 'config_file', type=click.Path(exists=True, dir_okay=False),
              help='Path to a YAML config file')
@click.pass_context
def cli(ctx, verbose: bool, config_file: Optional[str]):
    """LLM Router - find, rank, benchmark and route across local and cloud LLMs"""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Store common options in context
    ctx.ensure_object(dict)
    ctx.obj['config'] = Path(config_file) if config_file else None
    ctx.obj['verbose'] = verbose
    ctx.obj['console'] = Console()


@cli.command()
@click.pass_context
def hardware(ctx):
    """Display detected hardware"""
    console = ctx.obj['console']

    async def detect_and_display():
        async with open_session(ctx) as session:
            profile = await session.detect_hardware()
            show_hardware(console, profile)

    run_command(ctx, detect_and_display())


@cli.command()
@click.pass_context
def providers(ctx):
    """Probe every provider and show which are online"""
    console = ctx.obj['console']

    async def discover():
        async with open_session(ctx) as session:
            snapshot = await session.discover_providers()
            show_providers(console, snapshot, session.active)

    run_command(ctx, discover())


@cli.command()
@click.option('--installed', is_flag=True, help='Only models a reachable provider currently serves')
@click.option('--favorites', is_flag=True, help='Only favorite models')
@click.option('--provider', type=click.Choice(PROVIDER_CHOICES), help='Filter by provider')
@click.pass_context
def models(ctx, installed: bool, favorites: bool, provider: Optional[str]):
    """List catalog models with live installed state"""
    console = ctx.obj['console']

    async def list_models():
        async with open_session(ctx) as session:
            await session.discover_providers()
            entries = session.catalog.filter(
                installed=True if installed else None,
                favorites_only=favorites,
                provider=ProviderId(provider) if provider else None,
            )
            show_catalog(console, entries, session.catalog)

    run_command(ctx, list_models())


@cli.command()
@click.argument('model_id')
@click.pass_context
def favorite(ctx, model_id: str):
    """Toggle a model's favorite flag"""
    console = ctx.obj['console']

    async def toggle():
        async with open_session(ctx) as session:
            if session.toggle_favorite(model_id):
                console.print(f"[green]{model_id} added to favorites[/green]")
            else:
                console.print(f"[yellow]{model_id} removed from favorites[/yellow]")

    run_command(ctx, toggle())


@cli.command()
@click.option('--use-case', type=click.Choice(USE_CASE_CHOICES), help='What the model is for')
@click.option('--priority', type=click.Choice(PRIORITY_CHOICES), help='Optimize for speed, quality or balance')
@click.option('--top-n', type=click.IntRange(1, None), default=6, show_default=True,
              help='Number of recommendations to show')
@click.option('--export', 'export_format', type=click.Choice(EXPORT_FORMATS), help='Also save results')
@click.option('--output', type=click.Path(dir_okay=False), help='Export file path')
@click.pass_context
def recommend(ctx, use_case: Optional[str], priority: Optional[str], top_n: int,
              export_format: Optional[str], output: Optional[str]):
    """Rank models for a use case against detected hardware and live providers"""
    console = ctx.obj['console']

    async def get_recommendations():
        async with open_session(ctx) as session:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task("Detecting hardware and providers...", total=None)
                await asyncio.gather(session.detect_hardware(), session.discover_providers())

            if use_case:
                session.set_use_case(use_case)
            if priority:
                session.set_priority(priority)
            recommendations = session.refresh_recommendations(top_n=top_n)
            show_recommendations(console, recommendations)

            if export_format:
                data = session.export_recommendations(export_format)
                write_export(console, data, "recommendations", export_format, output)

    run_command(ctx, get_recommendations())


@cli.command()
@click.argument('model_ids', nargs=-1, required=True)
@click.option('--runs', default=1, show_default=True, type=click.IntRange(1, 20), help='Requests per model')
@click.option('--prompt', help='Custom benchmark prompt')
@click.option('--batch-size', type=click.IntRange(1, 4), help='Models benchmarked concurrently')
@click.option('--export', 'export_format', type=click.Choice(EXPORT_FORMATS), help='Also save results')
@click.option('--output', type=click.Path(dir_okay=False), help='Export file path')
@click.pass_context
def benchmark(ctx, model_ids: Tuple[str, ...], runs: int, prompt: Optional[str],
              batch_size: Optional[int], export_format: Optional[str], output: Optional[str]):
    """Measure latency, throughput and response quality for MODEL_IDS"""
    console = ctx.obj['console']

    async def run_benchmarks():
        async with open_session(ctx) as session:
            await session.discover_providers()
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                console=console,
                transient=True
            ) as progress:
                task = progress.add_task("Benchmarking...", total=1.0)

                def on_progress(model_id: str, fraction: float) -> None:
                    progress.update(task, completed=fraction, description=f"Benchmarking {model_id}")

                results = await session.run_benchmarks(
                    list(model_ids), prompt=prompt, runs=runs, batch_size=batch_size, on_progress=on_progress
                )
            show_benchmarks(console, results)

            if export_format:
                data = session.export_benchmarks(export_format)
                write_export(console, data, "benchmarks", export_format, output)

    run_command(ctx, run_benchmarks())


@cli.command()
@click.argument('prompt')
@click.option('--model', help='Model id to use instead of the active model')
@click.option('--temperature', type=float, help='Sampling temperature')
@click.option('--max-tokens', type=int, help='Maximum tokens to generate')
@click.option('--system', 'system_prompt', help='System prompt')
@click.option('--stream', is_flag=True, help='Print the reply as it is generated')
@click.pass_context
def generate(ctx, prompt: str, model: Optional[str], temperature: Optional[float],
             max_tokens: Optional[int], system_prompt: Optional[str], stream: bool):
    """Send PROMPT through the router, falling back across providers"""
    console = ctx.obj['console']

    async def run_generation():
        async with open_session(ctx) as session:
            await session.discover_providers()
            if stream:
                source = None
                chunks = session.generate_stream(
                    prompt, model=model, temperature=temperature, max_tokens=max_tokens,
                    system_prompt=system_prompt,
                )
                async for chunk in chunks:
                    if chunk.restarted:
                        console.print(f"\n[yellow]Provider failed mid-reply; restarting on {chunk.provider.value}[/yellow]")
                    console.print(chunk.text, end="", markup=False, highlight=False)
                    source = f"{chunk.provider.value}:{chunk.model}"
                console.print()
                console.print(f"[dim]{source}[/dim]")
                return
            generation = await session.generate(
                prompt, model=model, temperature=temperature, max_tokens=max_tokens,
                system_prompt=system_prompt,
            )
            console.print(generation.text)
            console.print(f"[dim]{generation.provider.value}:{generation.model}[/dim]")

    run_command(ctx, run_generation())


@cli.command()
@click.argument('model_id')
@click.option('--provider', type=click.Choice(['ollama', 'lmstudio']), help='Local runtime to pull into')
@click.pass_context
def pull(ctx, model_id: str, provider: Optional[str]):
    """Download MODEL_ID into a local runtime"""
    console = ctx.obj['console']

    async def run_pull():
        async with open_session(ctx) as session:
            await session.discover_providers()
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                console=console,
                transient=True
            ) as progress:
                task = progress.add_task(f"Pulling {model_id}...", total=None)

                def on_progress(status: str, completed: Optional[int], total: Optional[int]) -> None:
                    progress.update(task, description=f"{model_id}: {status}", completed=completed, total=total)

                result = await session.pull_model(
                    model_id, ProviderId(provider) if provider else None, on_progress=on_progress
                )
            result.raise_for_error()
            if result.cancelled:
                console.print(f"[yellow]Pull of {model_id} cancelled[/yellow]")
            else:
                console.print(f"[green]Pulled {model_id} via {result.provider.value}[/green]")

    run_command(ctx, run_pull())


@cli.command()
@click.pass_context
def version(ctx):
    """Show version information"""
    console = ctx.obj['console']
    console.print(f"[cyan]LLM Router v{__version__}[/cyan]")
    console.print(f"[dim]Python {sys.version.split()[0]}[/dim]")


if __name__ == '__main__':
    cli()
