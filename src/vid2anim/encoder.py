"""FFmpeg GIF/WebP encoder driven through the lifecycle-managed engine.

Each public conversion holds the encoder lock for its whole duration. Lock
contention is detected before the first ``await`` so a second caller is
rejected immediately instead of queueing behind the first.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable

import psutil

from .cache import ResourceCache
from .classification import classify_conversion_error
from .config import PROGRESS_RANGES
from .engine import EngineHandle
from .error_handling import (
    ConversionCancelledError,
    ConversionError,
    ConversionInProgressError,
    ConversionValidationError,
    EngineEnvironmentError,
    EngineError,
    safe_cleanup,
)
from .ffmpeg_args import (
    InputOverride,
    dither_mode,
    frame_pattern,
    frames_gif_palette_args,
    frames_gif_paletteuse_args,
    frames_webp_args,
    frames_webp_threads,
    gif_palette_args,
    gif_paletteuse_args,
    input_args,
    map_progress,
    optimal_fps,
    parse_progress_seconds,
    quality_preset,
    scale_filter,
    webp_args,
)
from .lifecycle import EngineLifecycleManager
from .models import (
    CancellationToken,
    ConversionFormat,
    ConversionOptions,
    ConversionOutput,
    InputFile,
    LogEntry,
    VideoMetadata,
)
from .supervisor import ConversionSupervisor
from .timeouts import calculate_timeout, get_timeout_for_format

logger = logging.getLogger(__name__)

GIF = ConversionFormat.GIF
WEBP = ConversionFormat.WEBP

DEFAULT_SOURCE_FPS = 30
DEFAULT_ESTIMATED_SECONDS = 30.0
PALETTE_HEARTBEAT_SECONDS = 30.0

_PASSTHROUGH_ERRORS = (
    ConversionCancelledError,
    ConversionInProgressError,
    ConversionValidationError,
    EngineEnvironmentError,
)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


class FFmpegEncoder:
    """Builds and runs the FFmpeg passes for each output format."""

    def __init__(
        self,
        lifecycle: EngineLifecycleManager,
        cache: ResourceCache,
        supervisor: ConversionSupervisor,
        core_count: int | None = None,
        multithreading: bool = True,
    ) -> None:
        self.lifecycle = lifecycle
        self.cache = cache
        self.supervisor = supervisor
        self.core_count = core_count or psutil.cpu_count(logical=True) or 2
        self.multithreading = multithreading
        self._converting = False
        self._cancel_requested = False

    @property
    def is_converting(self) -> bool:
        return self._converting

    def cancel(self) -> None:
        """Request cancellation; honoured at the next checkpoint."""
        self._cancel_requested = True
        logger.info("Conversion cancellation requested")

    # ------------------------------------------------------------------
    # Lock and checkpoints
    # ------------------------------------------------------------------

    def _acquire(self) -> None:
        if self._converting:
            raise ConversionInProgressError()
        self._converting = True
        self._cancel_requested = False

    def _release(self) -> None:
        self._converting = False

    def _check_cancelled(self, token: CancellationToken | None) -> None:
        if self._cancel_requested or (token is not None and token.cancelled):
            raise ConversionCancelledError("Conversion cancelled by user")

    @staticmethod
    def _duration_ms(metadata: VideoMetadata | None, options: ConversionOptions) -> int | None:
        seconds = metadata.duration if metadata and metadata.duration else options.duration
        if not seconds or not math.isfinite(seconds) or seconds <= 0:
            return None
        return round(seconds * 1000)

    # ------------------------------------------------------------------
    # Pass execution
    # ------------------------------------------------------------------

    def _log_handler(
        self, progress_range: tuple[float, int, int] | None
    ) -> Callable[[LogEntry], None]:
        def handle(entry: LogEntry) -> None:
            self.supervisor.update_log_activity()
            self.lifecycle.add_log_entry(entry.type, entry.message)
            if progress_range is None:
                return
            position = parse_progress_seconds(entry.message)
            if position is not None:
                total, start, end = progress_range
                self.supervisor.update_progress(map_progress(position, total, start, end))

        return handle

    async def _run_pass(
        self,
        engine: EngineHandle,
        args: list[str],
        label: str,
        timeout_ms: int,
        heartbeat: tuple[int, int, float],
        progress_range: tuple[float, int, int] | None = None,
    ) -> None:
        logger.debug(f"{label}: {' '.join(args)}")
        unsubscribe = engine.add_log_listener(self._log_handler(progress_range))
        handle = self.supervisor.start_heartbeat(*heartbeat)
        try:
            await asyncio.wait_for(engine.exec(args), timeout_ms / 1000)
        except asyncio.TimeoutError:
            self.supervisor.report_status("Terminating FFmpeg...")
            self.lifecycle.terminate()
            self.cache.reset()
            raise EngineError(f"{label} timed out after {timeout_ms / 1000:g} seconds.")
        finally:
            unsubscribe()
            self.supervisor.stop_heartbeat(handle)

    # ------------------------------------------------------------------
    # Error enrichment
    # ------------------------------------------------------------------

    def _enrich(
        self,
        error: Exception,
        fmt: ConversionFormat,
        options: ConversionOptions,
        metadata: VideoMetadata | None,
    ) -> Exception:
        if isinstance(error, _PASSTHROUGH_ERRORS):
            return error
        try:
            settings = {
                "format": fmt.value,
                "quality": options.quality.value,
                "scale": options.scale,
            }
            context = classify_conversion_error(
                str(error), metadata, settings, self.lifecycle.get_recent_logs()
            )
            if isinstance(error, ConversionError):
                if error.error_context is None:
                    error.error_context = context
                return error
            return ConversionError(str(error), context={"format": fmt.value}, error_context=context)
        except Exception as e:
            logger.debug(f"Error enrichment failed, passing original error through: {e}")
            return error

    async def _cleanup_after_failure(
        self, output_name: str, extra_names: list[str]
    ) -> None:
        if not self.lifecycle.is_ready:
            return
        engine = self.lifecycle.engine
        await safe_cleanup(
            lambda: self.cache.cleanup_after_conversion(engine, output_name, extra_names),
            "failed conversion cleanup",
            logger,
        )

    # ------------------------------------------------------------------
    # Video input conversions
    # ------------------------------------------------------------------

    async def convert_to_gif(
        self,
        file: InputFile,
        options: ConversionOptions,
        metadata: VideoMetadata | None = None,
        cancel_token: CancellationToken | None = None,
        input_override: InputOverride | None = None,
    ) -> ConversionOutput:
        """Two-pass GIF: palettegen, then paletteuse with the generated palette."""
        self._acquire()
        output_name = "output.gif"
        palette_name = self.cache.palette_name
        try:
            engine = self.lifecycle.engine
            await self.cache.ensure_input_staged(engine, file, hold=True)

            quality = options.quality
            source_fps = metadata.framerate if metadata and metadata.framerate else DEFAULT_SOURCE_FPS
            fps = optimal_fps(source_fps, quality, GIF)
            preset = quality_preset(GIF, quality)
            scale = scale_filter(quality, options.scale)
            timeout_ms = get_timeout_for_format(GIF, self._duration_ms(metadata, options))
            ranges = PROGRESS_RANGES["gif"]
            inputs = input_args(self.cache.input_name, input_override)

            logger.info(
                f"Starting GIF conversion (quality={quality.value}, scale={options.scale}, "
                f"fps={fps}, colors={preset['colors']})"
            )
            self.supervisor.update_progress(ranges["palette_start"])

            await self._run_pass(
                engine,
                gif_palette_args(inputs, fps, preset["colors"], palette_name, scale),
                "GIF palette generation",
                timeout_ms,
                heartbeat=(ranges["palette_start"], ranges["palette_end"], PALETTE_HEARTBEAT_SECONDS),
            )

            self._check_cancelled(cancel_token)
            self.supervisor.update_progress(ranges["conversion_start"])

            estimated = metadata.duration if metadata and metadata.duration else DEFAULT_ESTIMATED_SECONDS
            await self._run_pass(
                engine,
                gif_paletteuse_args(inputs, fps, dither_mode(quality), palette_name, output_name, scale),
                "GIF conversion",
                timeout_ms,
                heartbeat=(ranges["conversion_start"], ranges["conversion_end"], estimated),
                progress_range=(estimated, ranges["conversion_start"], ranges["conversion_end"]),
            )

            data = await self.cache.read_validated_output(engine, output_name, GIF)
            self.supervisor.update_progress(ranges["complete"])
            logger.info(f"GIF conversion completed ({len(data)} bytes)")

            await self.cache.cleanup_after_conversion(engine, output_name, [palette_name])
            return ConversionOutput(data=data, format=GIF)
        except Exception as e:
            await self._cleanup_after_failure(output_name, [palette_name])
            enriched = self._enrich(e, GIF, options, metadata)
            if enriched is e:
                raise
            raise enriched from e
        finally:
            self._release()

    async def convert_to_webp(
        self,
        file: InputFile,
        options: ConversionOptions,
        metadata: VideoMetadata | None = None,
        cancel_token: CancellationToken | None = None,
        input_override: InputOverride | None = None,
    ) -> ConversionOutput:
        """Single-pass animated WebP through libwebp."""
        self._acquire()
        output_name = "output.webp"
        try:
            engine = self.lifecycle.engine
            await self.cache.ensure_input_staged(engine, file, hold=True)

            quality = options.quality
            source_fps = metadata.framerate if metadata and metadata.framerate else DEFAULT_SOURCE_FPS
            fps = optimal_fps(source_fps, quality, WEBP)
            preset = quality_preset(WEBP, quality)
            scale = scale_filter(quality, options.scale)
            timeout_ms = get_timeout_for_format(WEBP, self._duration_ms(metadata, options))
            ranges = PROGRESS_RANGES["webp"]
            inputs = input_args(self.cache.input_name, input_override)

            logger.info(
                f"Starting WebP conversion (quality={quality.value}, scale={options.scale}, fps={fps})"
            )
            self.supervisor.update_progress(ranges["conversion_start"])
            self._check_cancelled(cancel_token)

            estimated = metadata.duration if metadata and metadata.duration else DEFAULT_ESTIMATED_SECONDS
            h264_input = input_override is not None and input_override.format == "h264"
            await self._run_pass(
                engine,
                webp_args(inputs, fps, preset, output_name, self.core_count, scale, h264_input),
                "WebP conversion",
                timeout_ms,
                heartbeat=(ranges["conversion_start"], ranges["conversion_end"], estimated),
                progress_range=(estimated, ranges["conversion_start"], ranges["conversion_end"]),
            )

            data = await self.cache.read_validated_output(engine, output_name, WEBP)
            self.supervisor.update_progress(ranges["complete"])
            logger.info(f"WebP conversion completed ({len(data)} bytes)")

            await self.cache.cleanup_after_conversion(engine, output_name)
            return ConversionOutput(data=data, format=WEBP)
        except Exception as e:
            await self._cleanup_after_failure(output_name, [])
            enriched = self._enrich(e, WEBP, options, metadata)
            if enriched is e:
                raise
            raise enriched from e
        finally:
            self._release()

    # ------------------------------------------------------------------
    # Frame sequences
    # ------------------------------------------------------------------

    async def encode_frame_sequence(
        self,
        fmt: ConversionFormat,
        options: ConversionOptions,
        frame_count: int,
        fps: float,
        duration_seconds: float,
        frame_files: list[str] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ConversionOutput:
        """Encode already-staged ``frame_%06d`` images into a GIF or WebP."""
        self._acquire()
        output_name = f"output.{fmt.value}"
        frame_names = list(frame_files) if frame_files else sorted(
            name for name in self.cache.known_files if name.startswith("frame_")
        )
        extra_names = [*frame_names]
        if fmt is GIF:
            extra_names.append(self.cache.palette_name)
        try:
            if fmt is GIF and frame_count < 2:
                raise ConversionValidationError("GIF requires at least 2 frames for animation")
            if frame_count < 1:
                raise ConversionValidationError("Frame sequence must contain at least 1 frame")
            if fmt not in (GIF, WEBP):
                raise ConversionValidationError(f"Frame sequences cannot be encoded to {fmt.value}")
            if not math.isfinite(fps) or fps <= 0:
                raise ConversionValidationError(f"Invalid frame rate: {fps}")

            engine = self.lifecycle.engine
            quality = options.quality
            frame_fps = max(1, min(60, round(fps)))
            duration = max(0.0, duration_seconds or 0.0)
            pattern = frame_pattern(frame_names)
            preset = quality_preset(fmt, quality)
            ranges = PROGRESS_RANGES["frames"]
            self._check_cancelled(cancel_token)
            self.supervisor.update_progress(ranges["encode_start"])

            if fmt is GIF:
                timeout_ms = calculate_timeout(GIF, duration * 1000)
                await self._run_pass(
                    engine,
                    frames_gif_palette_args(pattern, frame_fps, preset["colors"], self.cache.palette_name),
                    "Frame sequence GIF palette generation",
                    timeout_ms,
                    heartbeat=(ranges["encode_start"], ranges["palette_end"], _clamp(duration, 15, 45)),
                    progress_range=(duration, ranges["encode_start"], ranges["palette_end"]),
                )
                self._check_cancelled(cancel_token)
                self.supervisor.update_progress(ranges["palette_end"])
                await self._run_pass(
                    engine,
                    frames_gif_paletteuse_args(
                        pattern, frame_fps, dither_mode(quality), self.cache.palette_name, output_name
                    ),
                    "Frame sequence GIF conversion",
                    timeout_ms,
                    heartbeat=(ranges["palette_end"], ranges["encode_end"], _clamp(duration * 1.2, 20, 60)),
                    progress_range=(duration, ranges["palette_end"], ranges["encode_end"]),
                )
            else:
                timeout_ms = calculate_timeout(WEBP, duration * 1000)
                threads = frames_webp_threads(self.core_count, self.multithreading)
                await self._run_pass(
                    engine,
                    frames_webp_args(pattern, frame_fps, preset, output_name, threads),
                    "Frame sequence WebP encoding",
                    timeout_ms,
                    heartbeat=(ranges["encode_start"], ranges["encode_end"], _clamp(duration, 15, 45)),
                    progress_range=(duration, ranges["encode_start"], ranges["encode_end"]),
                )

            data = await self.cache.read_validated_output(engine, output_name, fmt)
            self.supervisor.update_progress(ranges["complete"])
            logger.info(f"Encoded {frame_count} frames to {fmt.value} ({len(data)} bytes)")

            await self.cache.cleanup_after_conversion(engine, output_name, extra_names)
            return ConversionOutput(data=data, format=fmt)
        except Exception as e:
            await self._cleanup_after_failure(output_name, extra_names)
            enriched = self._enrich(e, fmt, options, None)
            if enriched is e:
                raise
            raise enriched from e
        finally:
            self._release()
