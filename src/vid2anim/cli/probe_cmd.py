"""Probe a video file's metadata through the engine."""

import asyncio
import json
from dataclasses import asdict
from pathlib import Path

import click

from ..codecs import detect_container
from ..models import InputFile, VideoMetadata
from ..orchestrator import ConversionService
from .utils import get_app_config, handle_conversion_error


async def _probe(service: ConversionService, file: InputFile) -> VideoMetadata:
    try:
        return await service.get_video_metadata(file)
    finally:
        service.terminate()


@click.command("probe")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "output_json", is_flag=True, help="Output metadata as JSON")
@click.pass_context
def probe(ctx: click.Context, input_path: Path, output_json: bool) -> None:
    """Show resolution, duration, codec, frame rate and bitrate of INPUT_PATH."""
    try:
        service = ConversionService.create(get_app_config(ctx))
        metadata = asyncio.run(_probe(service, InputFile.from_path(input_path)))
        container = detect_container(input_path.name)

        if output_json:
            click.echo(json.dumps({**asdict(metadata), "container": container.value}, indent=2))
            return

        click.echo(f"🎬 {input_path.name}")
        click.echo(f"   • Container: {container.value}")
        click.echo(f"   • Codec: {metadata.codec}")
        click.echo(f"   • Resolution: {metadata.width}x{metadata.height}")
        click.echo(f"   • Duration: {metadata.duration:.2f}s")
        click.echo(f"   • Frame rate: {metadata.framerate:g} fps")
        click.echo(f"   • Bitrate: {metadata.bitrate // 1000} kb/s")

    except Exception as e:
        handle_conversion_error("Probe", e)
