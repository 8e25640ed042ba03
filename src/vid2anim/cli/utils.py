"""Shared utilities for CLI commands."""

import sys
from pathlib import Path

import click

from ..config import AppConfig
from ..error_handling import describe_error
from ..models import ConversionFormat


def handle_generic_error(command_name: str, error: Exception) -> None:
    """Handle generic command errors with consistent formatting."""
    click.echo(f"❌ {command_name} failed: {error}", err=True)
    sys.exit(1)


def handle_conversion_error(command_name: str, error: Exception) -> None:
    """Report a conversion error as one of the three user-visible outcomes.

    * ``environment``: setup guidance, exit code 3 (retrying will not help)
    * ``failed``: the error plus a retry hint, exit code 1
    * ``cancelled``: silent, exit code 0
    """
    outcome = describe_error(error)
    if outcome == "cancelled":
        return

    if outcome == "environment":
        click.echo(f"🚫 {command_name} unavailable on this system: {error}", err=True)
        click.echo(
            "💡 Install FFmpeg or point VID2ANIM_FFMPEG_PATH at a working binary, "
            "then check the setup with `vid2anim deps`",
            err=True,
        )
        sys.exit(3)

    click.echo(f"❌ {command_name} failed: {error}", err=True)
    error_context = getattr(error, "error_context", None)
    if error_context is not None:
        click.echo(f"💡 {error_context.suggestion}", err=True)
    click.echo("🔁 This attempt failed; run the same command again to retry", err=True)
    sys.exit(1)


def handle_keyboard_interrupt(command_name: str) -> None:
    """Handle keyboard interrupt with consistent formatting."""
    click.echo(f"\n⏹️  {command_name} interrupted by user", err=True)
    sys.exit(1)


def get_app_config(ctx: click.Context) -> AppConfig:
    """Return the config loaded by the group, or defaults when run standalone."""
    obj = ctx.find_object(dict) or {}
    return obj.get("config") or AppConfig()


def default_output_path(input_path: Path, fmt: ConversionFormat) -> Path:
    """``clip.mp4`` -> ``clip.gif`` beside the input."""
    return input_path.with_suffix(f".{fmt.value}")


def display_common_header(title: str) -> None:
    """Display a common header for CLI commands."""
    click.echo(f"🎞️  {title}")


def display_path_info(label: str, path: Path, emoji: str = "📁") -> None:
    """Display path information with consistent formatting."""
    click.echo(f"{emoji} {label}: {path}")


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.2f} MB"
