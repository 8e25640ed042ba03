"""CLI module for vid2anim commands.

This module re-exports all command functions so the entry point only needs
``main`` while commands stay organized in separate modules.
"""

from pathlib import Path

import click

from ..config import AppConfig, load_config_file
from ..io import setup_logging
from .convert_cmd import convert
from .deps_cmd import deps
from .history_cmd import history
from .probe_cmd import probe
from .strategy_cmd import strategy
from .utils import handle_generic_error


@click.group()
@click.version_option(version="0.1.0", prog_name="vid2anim")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with configuration overrides",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """🎞️ vid2anim: convert video clips to animated GIF and WebP."""
    setup_logging(log_level="DEBUG" if verbose else "WARNING")
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config_file(config_path) if config_path else AppConfig()
    except Exception as e:
        handle_generic_error("Configuration", e)


# Register all commands from the modular CLI structure
main.add_command(convert)
main.add_command(probe)
main.add_command(strategy)
main.add_command(history)
main.add_command(deps)

__all__ = [
    "convert",
    "deps",
    "history",
    "main",
    "probe",
    "strategy",
]
