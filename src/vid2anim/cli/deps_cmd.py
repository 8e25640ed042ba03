"""External tool and capability diagnostics.

Shows whether FFmpeg/FFprobe can be found (configured path, repository
``bin/`` or PATH), which decoders and encoders the local build offers, and
whether the engine environment supports multithreaded conversion.

Usage:
    vid2anim deps
    vid2anim deps --json | jq '.tools.ffmpeg.available'
"""

import json
from dataclasses import asdict

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..system_tools import get_available_tools, probe_capabilities, probe_environment
from .utils import get_app_config, handle_generic_error


def _status(available: bool | None) -> str:
    if available is None:
        return "[dim]? Unknown[/dim]"
    return "[green]✅ Available[/green]" if available else "[red]❌ Missing[/red]"


@click.command("deps")
@click.option("--json", "output_json", is_flag=True, help="Output results in JSON format")
@click.pass_context
def deps(ctx: click.Context, output_json: bool) -> None:
    """Check external tools and decode/encode capabilities."""
    try:
        engine_config = get_app_config(ctx).engine
        tools = get_available_tools(engine_config)
        capabilities = probe_capabilities(engine_config)
        environment = probe_environment(engine_config)

        if output_json:
            click.echo(
                json.dumps(
                    {
                        "tools": {
                            key: {
                                "available": info.available,
                                "path": info.name,
                                "version": info.version,
                            }
                            for key, info in tools.items()
                        },
                        "capabilities": asdict(capabilities),
                        "environment": {
                            **asdict(environment),
                            "multithreading": environment.can_use_multithreading,
                        },
                    },
                    indent=2,
                )
            )
            return

        console = Console()
        console.print("\n🔍 [bold blue]vid2anim Dependency Check[/bold blue]\n")

        tool_table = Table(title="🛠️  External Tools", show_header=True, header_style="bold magenta")
        tool_table.add_column("Tool", style="cyan", no_wrap=True)
        tool_table.add_column("Status", justify="center")
        tool_table.add_column("Details", style="dim")
        for key, info in tools.items():
            details = f"{info.name} ({info.version})" if info.available else "Install required"
            tool_table.add_row(key, _status(info.available), details)
        console.print(tool_table)
        console.print()

        cap_table = Table(title="🎛️  Capabilities", show_header=True, header_style="bold magenta")
        cap_table.add_column("Capability", style="cyan", no_wrap=True)
        cap_table.add_column("Status", justify="center")
        for codec in ("h264", "hevc", "av1", "vp8", "vp9"):
            cap_table.add_row(f"{codec} decode", _status(getattr(capabilities, codec)))
            cap_table.add_row(
                f"{codec} hardware decode", _status(getattr(capabilities, f"{codec}_hardware_decode"))
            )
        cap_table.add_row("GIF encode", _status(capabilities.gif_encode))
        cap_table.add_row("WebP encode", _status(capabilities.webp_encode))
        cap_table.add_row("MP4 encode", _status(capabilities.mp4_encode))
        cap_table.add_row("Hardware acceleration", _status(capabilities.hardware_accelerated))
        console.print(cap_table)
        console.print()

        if tools["ffmpeg"].available:
            console.print(
                Panel(
                    f"✅ [green]FFmpeg is available.[/green]\n"
                    f"CPU cores: {capabilities.core_count}, multithreading: "
                    f"{'yes' if environment.can_use_multithreading else 'no'}",
                    title="System Status",
                    border_style="green",
                )
            )
        else:
            console.print(
                Panel(
                    "⚠️  [yellow]FFmpeg was not found.[/yellow]\n"
                    "Install FFmpeg or set [bold]VID2ANIM_FFMPEG_PATH[/bold].",
                    title="System Status",
                    border_style="yellow",
                )
            )

    except Exception as e:
        handle_generic_error("Dependency check", e)
