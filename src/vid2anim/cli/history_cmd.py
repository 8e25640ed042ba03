"""Inspect or clear a persisted strategy history snapshot."""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..history import StrategyHistoryStore
from .utils import get_app_config, handle_generic_error

_FILE_OPTION = click.option(
    "--file",
    "history_file",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
    help="Strategy history snapshot (JSON)",
)


@click.group("history")
def history() -> None:
    """Inspect recorded conversion outcomes."""
    pass


@history.command("show")
@_FILE_OPTION
@click.option("--json", "output_json", is_flag=True, help="Output summaries as JSON")
@click.pass_context
def history_show(ctx: click.Context, history_file: Path, output_json: bool) -> None:
    """Summarize recorded outcomes per codec and format."""
    try:
        store = StrategyHistoryStore(get_app_config(ctx).strategy, snapshot_path=history_file)
        summaries = store.get_all_history()

        if output_json:
            click.echo(
                json.dumps(
                    [
                        {
                            "codec": h.codec,
                            "format": h.format.value,
                            "total_conversions": h.total_conversions,
                            "success_rate": h.success_rate,
                            "avg_duration_ms": h.avg_duration_ms,
                            "preferred_path": h.preferred_path.value,
                        }
                        for h in summaries
                    ],
                    indent=2,
                )
            )
            return

        if not summaries:
            click.echo(f"📭 No conversion history in {history_file}")
            return

        table = Table(title=f"📊 Conversion history ({len(store)} records)", header_style="bold magenta")
        table.add_column("Codec", style="cyan", no_wrap=True)
        table.add_column("Format")
        table.add_column("Conversions", justify="right")
        table.add_column("Success", justify="right")
        table.add_column("Avg time", justify="right")
        table.add_column("Preferred path", style="green")
        for h in summaries:
            table.add_row(
                h.codec,
                h.format.value,
                str(h.total_conversions),
                f"{h.success_rate:.0%}",
                f"{h.avg_duration_ms / 1000:.1f}s",
                h.preferred_path.value,
            )
        Console().print(table)

    except Exception as e:
        handle_generic_error("History", e)


@history.command("clear")
@_FILE_OPTION
@click.pass_context
def history_clear(ctx: click.Context, history_file: Path) -> None:
    """Remove every recorded outcome from the snapshot."""
    try:
        store = StrategyHistoryStore(get_app_config(ctx).strategy, snapshot_path=history_file)
        count = len(store)
        store.clear_history()
        click.echo(f"🧹 Cleared {count} history records from {history_file}")
    except Exception as e:
        handle_generic_error("History", e)
