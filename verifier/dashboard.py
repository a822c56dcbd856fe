"""Rich rendering of verification service statistics."""

from typing import Any, Dict, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from verifier.models import VerificationResult


def build_stats_table(stats: Dict[str, Any]) -> Table:
    """Build a two-column table from ``VerificationOrchestrator.stats()``.

    Sections missing from *stats* are skipped, so a queue-only snapshot
    (``{"queue": {...}}``) renders too.
    """
    table = Table(title="Verification Service", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    queue = stats.get("queue")
    if queue:
        table.add_row("Queue pending", str(queue.get("pending", 0)))
        table.add_row("Queue processing", str(queue.get("processing", 0)))
        table.add_row("Queue completed", str(queue.get("completed", 0)))
        table.add_row("Queue failed", f"[red]{queue.get('failed', 0)}[/red]")

    identities = stats.get("identities")
    if identities:
        table.add_row(
            "Identities available",
            f"{identities['available']}/{identities['total']}",
        )
        table.add_row(
            "Avg cooldown remaining", f"{identities['avg_cooldown_remaining']}s",
        )

    breaker = stats.get("breaker")
    if breaker:
        state = "[red]OPEN[/red]" if breaker["open"] else "[green]closed[/green]"
        table.add_row("Circuit breaker", state)
        table.add_row("Breaker failures", str(breaker["failure_count"]))

    metrics = stats.get("metrics")
    if metrics:
        table.add_row("Requests", str(metrics["total"]))
        table.add_row("Success rate", f"{metrics['success_rate']:.2f}%")
        table.add_row("Avg latency", f"{metrics['avg_latency_ms']}ms")

    cache = stats.get("cache")
    if cache:
        table.add_row("Cached results", str(cache["size"]))
        table.add_row("In-flight requests", str(cache["pending"]))

    return table


def render_result(
    subject: str, result: VerificationResult, console: Optional[Console] = None,
) -> None:
    console = console or Console()
    color = "green" if result.verified else ("yellow" if result.is_rejection else "red")
    lines = [
        f"[bold]{subject}[/bold]",
        f"verified: [{color}]{result.verified}[/{color}]",
        f"code: {result.code.value}",
        f"reason: {result.reason}",
    ]
    console.print(Panel("\n".join(lines), title="Verification", border_style=color))


def render_stats(stats: Dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()
    console.print(build_stats_table(stats))
