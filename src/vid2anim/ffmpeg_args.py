"""FFmpeg argument builders for the GIF and WebP pipelines.

Every builder returns a plain ``list[str]`` so commands can be inspected in
tests without running FFmpeg.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Literal

from .config import QUALITY_PRESETS
from .models import ConversionFormat, Quality

logger = logging.getLogger(__name__)

ThreadingMode = Literal["filter-complex", "scale-filter", "simple"]

MAX_THREADS = 12
MAX_FPS = 60
MIN_FPS = 1

VALID_WEBP_PRESETS = frozenset({"default", "picture", "photo", "drawing", "icon", "text"})

_SCALE_FLAGS: dict[Quality, str] = {
    Quality.HIGH: "lanczos",
    Quality.MEDIUM: "bicubic",
    Quality.LOW: "bilinear",
}

_TIME_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2}\.\d{2})")
_OUT_TIME_MS_RE = re.compile(r"out_time_ms=(\d+)")


@dataclass(frozen=True)
class InputOverride:
    """Force a raw demuxer for the input, e.g. an Annex-B ``h264`` stream."""

    format: str
    framerate: float


def _quality(quality: Quality | str) -> Quality:
    return quality if isinstance(quality, Quality) else Quality(quality)


def _fmt_key(fmt: ConversionFormat | str) -> str:
    return fmt.value if isinstance(fmt, ConversionFormat) else str(fmt)


def quality_preset(fmt: ConversionFormat | str, quality: Quality | str) -> dict:
    return QUALITY_PRESETS[_fmt_key(fmt)][_quality(quality).value]


def dither_mode(quality: Quality | str) -> str:
    return "sierra2_4a" if _quality(quality) is Quality.HIGH else "bayer"


def scale_filter(quality: Quality | str, scale: float) -> str | None:
    """Scale filter for *scale* (None when no scaling is needed)."""
    if scale >= 1.0:
        return None
    flags = _SCALE_FLAGS[_quality(quality)]
    return f"scale=iw*{scale}:ih*{scale}:flags={flags}"


def optimal_fps(source_fps: float, quality: Quality | str, fmt: ConversionFormat | str) -> int:
    """Cap the source frame rate at the quality preset, clamped to [1, 60].

    Raises:
        ValueError: If *source_fps* is not a positive finite number.
    """
    if not isinstance(source_fps, (int, float)) or not math.isfinite(source_fps) or source_fps <= 0:
        raise ValueError(f"Invalid source FPS: {source_fps}. Must be a positive number.")
    target = quality_preset(fmt, quality)["fps"]
    return max(MIN_FPS, min(MAX_FPS, round(min(source_fps, target))))


def optimal_thread_count(core_count: int) -> int:
    return max(1, min(math.floor(core_count * 0.75), MAX_THREADS))


def threading_args(mode: ThreadingMode, core_count: int) -> list[str]:
    """Thread flags per pipeline shape.

    ``filter-complex`` graphs (palettegen/paletteuse) run single-threaded since
    their filters do not parallelize and extra threads only add contention.
    """
    if mode == "filter-complex":
        return ["-threads", "1", "-filter_threads", "1", "-filter_complex_threads", "1"]
    optimal = optimal_thread_count(core_count)
    if mode == "scale-filter":
        threads = max(2, math.floor(optimal * 0.75))
        return ["-threads", str(threads), "-filter_threads", str(threads)]
    return ["-threads", str(optimal)]


def input_args(input_name: str, override: InputOverride | None = None) -> list[str]:
    if override is not None:
        logger.debug(f"Using input format override {override.format} @ {override.framerate}fps")
        return ["-f", override.format, "-r", f"{override.framerate:g}", "-i", input_name]
    return ["-i", input_name]


def progress_args() -> list[str]:
    return ["-progress", "-", "-loglevel", "info"]


def _webp_encoder_args(preset: dict) -> list[str]:
    args = ["-c:v", "libwebp", "-lossless", "0", "-quality", str(preset["quality"])]
    if preset["preset"] in VALID_WEBP_PRESETS:
        args += ["-preset", preset["preset"]]
    else:
        logger.warning(f"⚠️  Skipping unsupported libwebp preset '{preset['preset']}'")
    args += [
        "-compression_level",
        str(preset["compression_level"]),
        "-method",
        str(preset["method"]),
        "-loop",
        "0",
    ]
    return args


# ---------------------------------------------------------------------------
# Video input pipelines
# ---------------------------------------------------------------------------


def gif_palette_args(
    input_arguments: list[str],
    fps: int,
    colors: int,
    palette_name: str,
    scale: str | None = None,
) -> list[str]:
    chain = f"fps={fps},palettegen=max_colors={colors}"
    if scale:
        chain = f"{scale},{chain}"
    return [
        *threading_args("filter-complex", 1),
        *input_arguments,
        "-vf",
        chain,
        "-update",
        "1",
        palette_name,
    ]


def gif_paletteuse_args(
    input_arguments: list[str],
    fps: int,
    dither: str,
    palette_name: str,
    output_name: str,
    scale: str | None = None,
) -> list[str]:
    chain = f"fps={fps}[v];[v][1:v]paletteuse=dither={dither}"
    if scale:
        chain = f"{scale},{chain}"
    return [
        *threading_args("filter-complex", 1),
        *input_arguments,
        "-i",
        palette_name,
        "-lavfi",
        chain,
        *progress_args(),
        output_name,
    ]


def webp_args(
    input_arguments: list[str],
    fps: int,
    preset: dict,
    output_name: str,
    core_count: int,
    scale: str | None = None,
    h264_input: bool = False,
) -> list[str]:
    mode: ThreadingMode = "scale-filter" if scale or h264_input else "simple"
    vf = f"{scale},fps={fps}" if scale else f"fps={fps}"
    return [
        *threading_args(mode, core_count),
        *input_arguments,
        "-vf",
        vf,
        *_webp_encoder_args(preset),
        *progress_args(),
        output_name,
    ]


# ---------------------------------------------------------------------------
# Frame sequence pipelines
# ---------------------------------------------------------------------------


def frame_pattern(frame_files: list[str] | None) -> str:
    """``frame_%06d.<ext>`` with the extension taken from the staged frames."""
    extension = "png"
    if frame_files:
        first = frame_files[0].lower()
        if first.endswith((".jpeg", ".jpg")):
            extension = "jpeg"
    return f"frame_%06d.{extension}"


def frames_gif_palette_args(pattern: str, fps: int, colors: int, palette_name: str) -> list[str]:
    return [
        *threading_args("filter-complex", 1),
        "-framerate",
        str(fps),
        "-i",
        pattern,
        "-vf",
        f"palettegen=max_colors={colors}",
        "-update",
        "1",
        palette_name,
    ]


def frames_gif_paletteuse_args(
    pattern: str, fps: int, dither: str, palette_name: str, output_name: str
) -> list[str]:
    return [
        *threading_args("filter-complex", 1),
        "-framerate",
        str(fps),
        "-i",
        pattern,
        "-i",
        palette_name,
        "-filter_complex",
        f"paletteuse=dither={dither}",
        output_name,
    ]


def frames_webp_threads(core_count: int, multithreading: bool) -> int:
    if not multithreading:
        return 1
    return min(4, max(2, math.floor(core_count * 0.5)))


def frames_webp_args(
    pattern: str, fps: int, preset: dict, output_name: str, threads: int
) -> list[str]:
    return [
        "-threads",
        str(threads),
        "-filter_threads",
        "1",
        "-framerate",
        str(fps),
        "-i",
        pattern,
        *_webp_encoder_args(preset),
        output_name,
    ]


# ---------------------------------------------------------------------------
# Log parsing
# ---------------------------------------------------------------------------


def parse_progress_seconds(line: str) -> float | None:
    """Encoded position in seconds from a ``time=`` or ``out_time_ms=`` line."""
    match = _TIME_RE.search(line)
    if match:
        hours, minutes, seconds = match.groups()
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    match = _OUT_TIME_MS_RE.search(line)
    if match:
        # FFmpeg reports out_time_ms in microseconds
        return int(match.group(1)) / 1_000_000
    return None


def map_progress(position_seconds: float, total_seconds: float, start: int, end: int) -> int:
    ratio = min(position_seconds / total_seconds, 1.0) if total_seconds > 0 else 0.0
    return round(start + ratio * (end - start))
