"""
Rich console rendering for the CLI
"""

from typing import Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .benchmark import BenchmarkResult, BenchmarkStatus
from .catalog import ModelCatalog, ModelCatalogEntry
from .errors import AllProvidersExhausted, LLMRouterError
from .hardware import HardwareProfile
from .recommend import RecommendationSet
from .registry import ProviderSnapshot
from .router import ActiveModel

STATUS_STYLES = {
    BenchmarkStatus.SUCCESS: "green",
    BenchmarkStatus.PARTIAL: "yellow",
    BenchmarkStatus.ERROR: "red",
    BenchmarkStatus.CANCELLED: "dim",
}


def _gb(value: Optional[float]) -> str:
    return f"{value:g} GB" if value is not None else "unknown"


def show_hardware(console: Console, profile: HardwareProfile) -> None:
    """Display hardware information in formatted panels"""
    system_table = Table(title="System Information", show_header=False)
    system_table.add_column("Property", style="cyan")
    system_table.add_column("Value", style="white")

    system_table.add_row("Operating System", f"{profile.os} ({profile.arch})")
    system_table.add_row("CPU", profile.cpu.name)
    system_table.add_row("CPU Cores", str(profile.cpu.cores or "unknown"))
    system_table.add_row("CPU Threads", str(profile.cpu.threads or "unknown"))
    system_table.add_row("Total RAM", _gb(profile.total_ram_gb))
    if profile.available_ram_gb is not None:
        system_table.add_row("Available RAM", _gb(profile.available_ram_gb))
    system_table.add_row("Source", profile.source)
    if profile.notes:
        system_table.add_row("Notes", profile.notes)

    console.print(Panel(system_table, title="Hardware Detection Results", border_style="blue"))

    if not profile.gpu_detected:
        console.print(Panel("[yellow]GPU detection failed; VRAM requirements are not checked[/yellow]", border_style="yellow"))
        return
    if not profile.gpus:
        console.print(Panel("[yellow]No GPU detected; models will run on CPU[/yellow]", border_style="yellow"))
        return

    gpu_table = Table(title="GPU Information", show_header=True)
    gpu_table.add_column("Name", style="cyan")
    gpu_table.add_column("VRAM", style="yellow")
    gpu_table.add_column("Vendor", style="green")
    gpu_table.add_column("Type", style="white")
    gpu_table.add_column("Notes", style="dim")
    for gpu in profile.gpus:
        gpu_table.add_row(
            gpu.name,
            f"{gpu.vram} GB",
            gpu.vendor,
            "Discrete" if gpu.discrete else "Integrated",
            gpu.note or "",
        )
    console.print(Panel(gpu_table, title="GPU Details", border_style="green"))


def show_providers(console: Console, snapshot: ProviderSnapshot, active: Optional[ActiveModel] = None) -> None:
    table = Table(title=f"Providers (discovery #{snapshot.generation})")
    table.add_column("Provider", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Latency", style="yellow", justify="right")
    table.add_column("Models", style="green", justify="right")
    table.add_column("Detail", style="dim", max_width=50)

    for provider in snapshot.providers:
        if provider.reachable:
            status = "[green]online[/green]"
        elif not provider.configured:
            status = "[yellow]not configured[/yellow]"
        else:
            status = "[red]offline[/red]"
        latency = f"{provider.latency_ms:.0f} ms" if provider.latency_ms is not None else "-"
        table.add_row(
            provider.id.value,
            "local" if provider.is_local else "cloud",
            status,
            latency,
            str(len(provider.models)),
            provider.error or "",
        )

    console.print(table)
    if active is not None:
        console.print(f"Active model: [bold green]{active}[/bold green]")
    else:
        console.print("[yellow]No active model selected[/yellow]")


def show_catalog(console: Console, entries: Sequence[ModelCatalogEntry], catalog: ModelCatalog) -> None:
    table = Table(title=f"Model Catalog ({len(entries)} models)")
    table.add_column("", width=2)
    table.add_column("Model ID", style="cyan")
    table.add_column("Provider", style="white")
    table.add_column("Size", style="yellow", justify="right")
    table.add_column("Quant", style="green")
    table.add_column("Context", style="blue", justify="right")
    table.add_column("Min RAM/VRAM", style="magenta", justify="right")
    table.add_column("Installed", justify="center")

    for entry in entries:
        installed_on = catalog.installed_on(entry.id)
        table.add_row(
            "*" if catalog.is_favorite(entry.id) else "",
            entry.id,
            entry.provider.value,
            f"{entry.size_gb:g} GB" if entry.size_gb else "-",
            entry.quantization or "-",
            f"{entry.context_window:,}" if entry.context_window else "-",
            f"{entry.min_ram_gb:g}/{entry.min_vram_gb:g} GB" if entry.min_ram_gb else "-",
            ", ".join(p.value for p in installed_on) if installed_on else "[dim]no[/dim]",
        )
    console.print(table)


def show_recommendations(console: Console, recommendations: RecommendationSet) -> None:
    """Display recommendations in a formatted table"""
    if not recommendations.items:
        console.print(Panel(
            "[red]No models fit the detected hardware for this use case.[/red]\n"
            "Consider:\n"
            "- Configuring a cloud provider key\n"
            "- Choosing a different priority\n"
            "- Overriding the detected hardware if detection was wrong",
            title="No Suitable Models",
            border_style="red",
        ))
        return

    use_case = recommendations.use_case.value if recommendations.use_case else "?"
    priority = recommendations.priority.value if recommendations.priority else "?"
    table = Table(title=f"Model Recommendations - {use_case} / {priority}")
    table.add_column("Rank", style="bold cyan", width=4)
    table.add_column("Model", style="bold white", min_width=20)
    table.add_column("Provider", style="white")
    table.add_column("Memory", style="yellow", justify="right")
    table.add_column("Score", style="magenta", justify="right")
    table.add_column("Availability", style="green")
    table.add_column("Why", style="dim", max_width=50)

    for i, rec in enumerate(recommendations.items, 1):
        entry = rec.entry
        if entry.is_cloud:
            memory = "hosted"
        elif entry.min_vram_gb:
            memory = f"{entry.min_vram_gb:g} GB VRAM"
        else:
            memory = f"{entry.min_ram_gb:g} GB RAM"
        if not rec.hardware_fit:
            memory += " (exceeds)"

        availability = rec.availability.reason
        if not rec.availability.is_online:
            availability = f"[red]{availability}[/red]"

        table.add_row(
            f"#{i}",
            entry.display_name,
            entry.provider.value,
            memory,
            f"{rec.score:.1f}",
            availability,
            "\n".join(rec.rationale),
            style="bold green" if i == 1 else None,
        )

    console.print(Panel(table, title="Recommended Models", border_style="green"))

    top = recommendations.items[0].entry
    if top.strengths:
        strengths = Text()
        strengths.append("Top pick strengths: ", style="bold cyan")
        strengths.append(", ".join(top.strengths), style="green")
        console.print(Panel(strengths, border_style="cyan"))
    if top.pull_command and not recommendations.items[0].availability.installed:
        console.print(f"Install with: [bold]{top.pull_command}[/bold]")


def show_benchmarks(console: Console, results: Sequence[BenchmarkResult]) -> None:
    table = Table(title="Benchmark Results")
    table.add_column("Model", style="cyan")
    table.add_column("Provider", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Latency", style="yellow", justify="right")
    table.add_column("Tokens/s", style="green", justify="right")
    table.add_column("Quality", style="magenta", justify="right")
    table.add_column("Error", style="dim", max_width=40)

    for result in results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.model_name,
            result.provider.value if result.provider else "-",
            f"[{style}]{result.status.value}[/{style}]",
            f"{result.average_latency_ms:.0f} ms" if result.average_latency_ms is not None else "-",
            f"{result.tokens_per_second:.1f}" if result.tokens_per_second is not None else "-",
            f"{result.quality:.0%}" if result.quality is not None else "-",
            result.error.message if result.error else "",
        )
    console.print(table)


def show_error(console: Console, error: LLMRouterError) -> None:
    console.print(f"[red]Error ({error.kind}): {error.message}[/red]")
    if isinstance(error, AllProvidersExhausted):
        for provider, model_id, attempt_error in error.attempts:
            console.print(f"  [dim]{provider}:{model_id}[/dim] {attempt_error.message}")
