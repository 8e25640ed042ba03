"""Pipeline orchestration: one supervised conversion at a time.

:class:`ConversionOrchestrator` wires the lifecycle, cache, supervisor and
encoder together for a single request. :class:`ConversionService` is the
caller-facing facade that also owns the strategy registry and history.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image

from .cache import ResourceCache
from .classification import classify_conversion_error
from .config import AppConfig
from .encoder import FFmpegEncoder
from .engine import LocalFFmpegEngine
from .error_handling import (
    ConversionCancelledError,
    ConversionInProgressError,
    ConversionValidationError,
    StallError,
)
from .ffmpeg_args import InputOverride
from .history import StrategyHistoryStore
from .lifecycle import EngineLifecycleManager
from .models import (
    CancellationToken,
    Capabilities,
    ContainerFormat,
    ConversionFormat,
    ConversionOptions,
    ConversionOutput,
    ConversionPath,
    ConversionRecord,
    FailurePhase,
    InputFile,
    StrategyDecision,
    StrategyReasoning,
    VideoMetadata,
)
from .registry import StrategyRegistry
from .supervisor import ConversionSupervisor, SupervisorCallbacks
from .system_tools import probe_capabilities, probe_environment

logger = logging.getLogger(__name__)

__all__ = [
    "CancellationToken",
    "ConversionOrchestrator",
    "ConversionRequest",
    "ConversionService",
]


@dataclass
class ConversionRequest:
    """One conversion job: either a video ``file`` or a sequence of ``frames``."""

    format: ConversionFormat
    file: InputFile | None = None
    options: ConversionOptions = field(default_factory=ConversionOptions)
    metadata: VideoMetadata | None = None
    on_progress: Callable[[int], None] | None = None
    on_status: Callable[[str], None] | None = None
    frames: Sequence[Image.Image | bytes] | None = None
    frame_fps: float | None = None
    input_override: InputOverride | None = None


class ConversionOrchestrator:
    """Runs a request under the supervisor with single-flight semantics."""

    def __init__(
        self,
        lifecycle: EngineLifecycleManager,
        cache: ResourceCache,
        supervisor: ConversionSupervisor,
        encoder: FFmpegEncoder,
    ) -> None:
        self.lifecycle = lifecycle
        self.cache = cache
        self.supervisor = supervisor
        self.encoder = encoder
        self._converting = False
        self._token: CancellationToken | None = None

    @property
    def is_converting(self) -> bool:
        return self._converting

    def cancel(self) -> bool:
        """Request cancellation of the active conversion. Returns False when idle."""
        if not self._converting:
            return False
        if self._token is not None:
            self._token.cancel()
        self.encoder.cancel()
        return True

    def _on_stall(self) -> None:
        logger.warning("⚠️  Supervisor requested termination, stopping engine")
        self.lifecycle.terminate()
        self.cache.reset()

    async def convert(self, request: ConversionRequest) -> ConversionOutput:
        if self._converting:
            raise ConversionInProgressError()
        self._converting = True
        token = CancellationToken()
        self._token = token

        try:
            if not self.lifecycle.is_ready:
                await self.lifecycle.initialize(on_status=request.on_status)

            on_progress = request.on_progress
            self.supervisor.start(
                metadata=request.metadata,
                quality=request.options.quality,
                fmt=request.format,
                callbacks=SupervisorCallbacks(
                    on_progress=(lambda value, _hb: on_progress(value)) if on_progress else None,
                    on_status=request.on_status,
                    on_terminate=self._on_stall,
                ),
            )

            try:
                return await self._dispatch(request, token)
            except Exception as e:
                if self.supervisor.stalled and not isinstance(e, ConversionCancelledError):
                    raise self._stall_error(request, e) from e
                raise
        finally:
            self.supervisor.stop()
            self._converting = False
            self._token = None

    def _stall_error(self, request: ConversionRequest, error: Exception) -> StallError:
        settings = {
            "format": request.format.value,
            "quality": request.options.quality.value,
            "scale": request.options.scale,
        }
        context = classify_conversion_error(
            f"Conversion timed out: stalled ({error})",
            request.metadata,
            settings,
            self.lifecycle.get_recent_logs(),
        )
        return StallError(
            "Conversion stalled - the engine was terminated",
            cause=error,
            error_context=context,
        )

    async def _dispatch(
        self, request: ConversionRequest, token: CancellationToken
    ) -> ConversionOutput:
        if request.frames is not None:
            return await self._encode_frames(request, token)

        if request.file is None:
            raise ConversionValidationError("A conversion request needs a file or frames")
        if request.format is ConversionFormat.GIF:
            return await self.encoder.convert_to_gif(
                request.file, request.options, request.metadata, token, request.input_override
            )
        if request.format is ConversionFormat.WEBP:
            return await self.encoder.convert_to_webp(
                request.file, request.options, request.metadata, token, request.input_override
            )
        raise ConversionValidationError(
            f"{request.format.value} output is not produced by the CPU pipeline"
        )

    async def _encode_frames(
        self, request: ConversionRequest, token: CancellationToken
    ) -> ConversionOutput:
        frames = request.frames or []
        fps = request.frame_fps or (request.metadata.framerate if request.metadata else 0) or 10
        duration = request.options.duration or (len(frames) / fps if fps else 0.0)
        names = await self.cache.stage_frames(self.lifecycle.engine, frames) if frames else []
        return await self.encoder.encode_frame_sequence(
            request.format,
            request.options,
            frame_count=len(frames),
            fps=fps,
            duration_seconds=duration,
            frame_files=names,
            cancel_token=token,
        )


class ConversionService:
    """Caller-facing facade over strategy selection and the CPU pipeline."""

    def __init__(
        self,
        lifecycle: EngineLifecycleManager,
        cache: ResourceCache,
        supervisor: ConversionSupervisor,
        encoder: FFmpegEncoder,
        orchestrator: ConversionOrchestrator,
        history: StrategyHistoryStore,
        registry: StrategyRegistry,
        capabilities_probe: Callable[[], Capabilities] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.cache = cache
        self.supervisor = supervisor
        self.encoder = encoder
        self.orchestrator = orchestrator
        self.history = history
        self.registry = registry
        self._capabilities_probe = capabilities_probe or Capabilities
        self._capabilities: Capabilities | None = None

    @classmethod
    def create(
        cls, config: AppConfig | None = None, history_path: Path | None = None
    ) -> ConversionService:
        """Wire the default stack around :class:`LocalFFmpegEngine`."""
        config = config or AppConfig()
        history = StrategyHistoryStore(config.strategy, snapshot_path=history_path)
        registry = StrategyRegistry(history, config.strategy)
        lifecycle = EngineLifecycleManager(
            engine_factory=lambda: LocalFFmpegEngine(config.engine),
            environment_probe=lambda: probe_environment(config.engine),
            config=config.lifecycle,
            prefetch_config=config.prefetch,
        )
        cache = ResourceCache(config.cache)
        supervisor = ConversionSupervisor(config.monitoring)
        encoder = FFmpegEncoder(lifecycle, cache, supervisor)
        orchestrator = ConversionOrchestrator(lifecycle, cache, supervisor, encoder)
        return cls(
            lifecycle,
            cache,
            supervisor,
            encoder,
            orchestrator,
            history,
            registry,
            capabilities_probe=lambda: probe_capabilities(config.engine),
        )

    # ------------------------------------------------------------------
    # Engine
    # ------------------------------------------------------------------

    @property
    def capabilities(self) -> Capabilities:
        if self._capabilities is None:
            self._capabilities = self._capabilities_probe()
        return self._capabilities

    async def initialize(
        self,
        on_progress: Callable[[int], None] | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        await self.lifecycle.initialize(on_progress=on_progress, on_status=on_status)

    async def prefetch_assets(self) -> None:
        await self.lifecycle.prefetch()

    async def get_video_metadata(self, file: InputFile) -> VideoMetadata:
        if not self.lifecycle.is_ready:
            await self.lifecycle.initialize()
        return await self.lifecycle.get_video_metadata(file, self.cache)

    def cancel_conversion(self) -> bool:
        return self.orchestrator.cancel()

    def terminate(self) -> None:
        self.supervisor.force_cleanup()
        self.lifecycle.terminate()
        self.cache.reset()

    def get_recent_logs(self) -> list[str]:
        return self.lifecycle.get_recent_logs()

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    async def convert_to_gif(
        self,
        file: InputFile,
        options: ConversionOptions,
        metadata: VideoMetadata | None = None,
        on_progress: Callable[[int], None] | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> ConversionOutput:
        return await self.orchestrator.convert(
            ConversionRequest(
                format=ConversionFormat.GIF,
                file=file,
                options=options,
                metadata=metadata,
                on_progress=on_progress,
                on_status=on_status,
            )
        )

    async def convert_to_webp(
        self,
        file: InputFile,
        options: ConversionOptions,
        metadata: VideoMetadata | None = None,
        on_progress: Callable[[int], None] | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> ConversionOutput:
        return await self.orchestrator.convert(
            ConversionRequest(
                format=ConversionFormat.WEBP,
                file=file,
                options=options,
                metadata=metadata,
                on_progress=on_progress,
                on_status=on_status,
            )
        )

    async def encode_frame_sequence(
        self,
        fmt: ConversionFormat,
        frames: Sequence[Image.Image | bytes],
        options: ConversionOptions,
        fps: float,
        on_progress: Callable[[int], None] | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> ConversionOutput:
        return await self.orchestrator.convert(
            ConversionRequest(
                format=fmt,
                options=options,
                frames=frames,
                frame_fps=fps,
                on_progress=on_progress,
                on_status=on_status,
            )
        )

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------

    def get_strategy(
        self,
        codec: str,
        fmt: ConversionFormat,
        container: ContainerFormat = ContainerFormat.UNKNOWN,
        capabilities: Capabilities | None = None,
        duration_seconds: float | None = None,
    ) -> StrategyDecision:
        return self.registry.get_strategy(
            codec, fmt, container, capabilities or self.capabilities, duration_seconds
        )

    def get_strategy_reasoning(
        self,
        codec: str,
        fmt: ConversionFormat,
        container: ContainerFormat = ContainerFormat.UNKNOWN,
        capabilities: Capabilities | None = None,
        duration_seconds: float | None = None,
    ) -> StrategyReasoning:
        return self.registry.get_strategy_reasoning(
            codec, fmt, container, capabilities or self.capabilities, duration_seconds
        )

    def record_outcome(
        self,
        codec: str,
        fmt: ConversionFormat,
        path: ConversionPath,
        duration_ms: float,
        success: bool,
        error_message: str | None = None,
        failure_phase: FailurePhase | None = None,
    ) -> ConversionRecord:
        """Append an outcome to history; later strategy queries take it into account."""
        record = ConversionRecord(
            codec=codec,
            format=fmt,
            path=path,
            duration_ms=duration_ms,
            success=success,
            timestamp=time.monotonic() * 1000,
            error_message=error_message,
            failure_phase=None if success else failure_phase,
        )
        self.history.record(record)
        if success:
            self.registry.record_success(codec, fmt, path, duration_ms)
        return record
