"""Show which execution path the registry picks for a codec/format pair."""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..history import StrategyHistoryStore
from ..models import ContainerFormat, ConversionFormat
from ..registry import StrategyRegistry
from ..system_tools import probe_capabilities
from .utils import get_app_config, handle_generic_error


@click.command("strategy")
@click.argument("codec")
@click.argument("fmt", metavar="FORMAT", type=click.Choice([f.value for f in ConversionFormat]))
@click.option(
    "--container",
    type=click.Choice([c.value for c in ContainerFormat]),
    default=ContainerFormat.UNKNOWN.value,
    show_default=True,
    help="Input container family",
)
@click.option("--duration", type=float, default=None, help="Clip duration in seconds")
@click.option(
    "--history",
    "history_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Strategy history snapshot to take into account",
)
@click.option("--reasoning", is_flag=True, help="Show factors and rejected alternatives")
@click.option("--json", "output_json", is_flag=True, help="Output decision as JSON")
@click.pass_context
def strategy(
    ctx: click.Context,
    codec: str,
    fmt: str,
    container: str,
    duration: float | None,
    history_file: Path | None,
    reasoning: bool,
    output_json: bool,
) -> None:
    """Pick the execution path for CODEC converted to FORMAT on this machine."""
    try:
        config = get_app_config(ctx)
        history = StrategyHistoryStore(config.strategy, snapshot_path=history_file)
        registry = StrategyRegistry(history, config.strategy)
        capabilities = probe_capabilities(config.engine)

        conversion_format = ConversionFormat(fmt)
        container_format = ContainerFormat(container)
        decision = registry.get_strategy(
            codec, conversion_format, container_format, capabilities, duration
        )
        explanation = (
            registry.get_strategy_reasoning(
                codec, conversion_format, container_format, capabilities, duration
            )
            if reasoning
            else None
        )

        if output_json:
            result = {
                "codec": decision.codec,
                "format": decision.format.value,
                "path": decision.preferred_path.value,
                "fallback": decision.fallback_path.value,
                "confidence": decision.confidence.value,
                "reason": decision.reason,
            }
            if explanation is not None:
                result["factors"] = explanation.factors
                result["alternatives"] = [
                    {"path": alt.path.value, "reason": alt.rejection_reason}
                    for alt in explanation.alternatives_considered
                ]
            click.echo(json.dumps(result, indent=2, default=str))
            return

        console = Console()
        table = Table(title=f"🧭 Strategy for {codec} → {fmt}", show_header=True, header_style="bold magenta")
        table.add_column("Field", style="cyan", no_wrap=True)
        table.add_column("Value")
        table.add_row("Path", f"[green]{decision.preferred_path.value}[/green]")
        table.add_row("Fallback", decision.fallback_path.value)
        table.add_row("Confidence", decision.confidence.value)
        table.add_row("Reason", decision.reason)
        console.print(table)

        if explanation is not None:
            factors = Table(title="Factors", show_header=True, header_style="bold magenta")
            factors.add_column("Factor", style="cyan")
            factors.add_column("Value", style="dim")
            for name, value in explanation.factors.items():
                factors.add_row(name, str(value))
            console.print(factors)
            for alt in explanation.alternatives_considered:
                console.print(f"   • [yellow]{alt.path.value}[/yellow] rejected: {alt.rejection_reason}")

    except Exception as e:
        handle_generic_error("Strategy", e)
