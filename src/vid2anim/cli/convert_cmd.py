"""Convert a video file to an animated GIF or WebP."""

import asyncio
import json
import time
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from ..error_handling import ConversionCancelledError
from ..io import atomic_write
from ..models import (
    ConversionFormat,
    ConversionOptions,
    ConversionOutput,
    ConversionPath,
    FailurePhase,
    InputFile,
    Quality,
)
from ..orchestrator import ConversionService
from .utils import (
    default_output_path,
    display_common_header,
    display_path_info,
    format_bytes,
    get_app_config,
    handle_conversion_error,
    handle_keyboard_interrupt,
)


async def _run_conversion(
    service: ConversionService,
    file: InputFile,
    fmt: ConversionFormat,
    options: ConversionOptions,
    show_progress: bool,
) -> tuple[ConversionOutput, str]:
    """Initialize, probe and convert; the outcome is recorded in history."""
    console = Console(stderr=True)
    await service.initialize()
    metadata = await service.get_video_metadata(file)
    convert = service.convert_to_gif if fmt is ConversionFormat.GIF else service.convert_to_webp

    started = time.monotonic()
    try:
        if not show_progress:
            output = await convert(file, options, metadata)
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task(f"Converting to {fmt.value}...", total=100)
                output = await convert(
                    file,
                    options,
                    metadata,
                    on_progress=lambda value: progress.update(task, completed=value),
                    on_status=lambda message: progress.update(task, description=message),
                )
    except ConversionCancelledError:
        raise
    except Exception as e:
        service.record_outcome(
            metadata.codec,
            fmt,
            ConversionPath.CPU,
            (time.monotonic() - started) * 1000,
            success=False,
            error_message=str(e),
            failure_phase=FailurePhase.ENCODE,
        )
        raise
    finally:
        service.terminate()

    service.record_outcome(
        metadata.codec, fmt, ConversionPath.CPU, (time.monotonic() - started) * 1000, success=True
    )
    return output, metadata.codec


@click.command("convert")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice([f.value for f in (ConversionFormat.GIF, ConversionFormat.WEBP)]),
    default="gif",
    show_default=True,
    help="Output format",
)
@click.option(
    "--quality",
    "-q",
    type=click.Choice([q.value for q in Quality]),
    default="medium",
    show_default=True,
    help="Quality preset (frame rate, colours and encoder effort)",
)
@click.option(
    "--scale",
    type=click.FloatRange(0.0, 1.0, min_open=True),
    default=1.0,
    show_default=True,
    help="Downscale factor in (0, 1]",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Output path (default: input name with the output extension)",
)
@click.option("--json", "output_json", is_flag=True, help="Output result summary as JSON")
@click.pass_context
def convert(
    ctx: click.Context,
    input_path: Path,
    fmt: str,
    quality: str,
    scale: float,
    output: Path | None,
    output_json: bool,
) -> None:
    """Convert INPUT_PATH to an animated GIF or WebP using FFmpeg."""
    try:
        config = get_app_config(ctx)
        conversion_format = ConversionFormat(fmt)
        options = ConversionOptions(quality=Quality(quality), scale=scale)
        output_path = output or default_output_path(input_path, conversion_format)

        if not output_json:
            display_common_header(f"vid2anim {conversion_format.value.upper()} conversion")
            display_path_info("Input", input_path, "🎬")
            display_path_info("Output", output_path, "📄")

        service = ConversionService.create(config)
        result, codec = asyncio.run(
            _run_conversion(
                service,
                InputFile.from_path(input_path),
                conversion_format,
                options,
                show_progress=not output_json,
            )
        )

        with atomic_write(output_path, "wb") as fh:
            fh.write(result.data)

        if output_json:
            click.echo(
                json.dumps(
                    {
                        "input": str(input_path),
                        "output": str(output_path),
                        "format": result.format.value,
                        "mime_type": result.mime_type,
                        "size": result.size,
                        "codec": codec,
                        "quality": options.quality.value,
                        "scale": options.scale,
                    },
                    indent=2,
                )
            )
        else:
            click.echo(f"✅ Wrote {format_bytes(result.size)} {result.mime_type} to {output_path}")

    except KeyboardInterrupt:
        handle_keyboard_interrupt("Conversion")
    except Exception as e:
        handle_conversion_error("Conversion", e)
