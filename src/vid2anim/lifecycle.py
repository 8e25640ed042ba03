"""Engine lifecycle: single-flight initialization, termination and prefetch.

The manager owns exactly one :class:`EngineHandle` at a time. Concurrent
``initialize()`` callers share one in-flight task, and every caller's progress
and status callbacks are notified. ``terminate()`` tears the engine down and
holds the manager in ``TERMINATING`` for a short settle window so that a
re-initialization cannot race the old process exit.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

import requests

from .codecs import display_codec_name
from .config import LifecycleConfig, PrefetchConfig
from .engine import EngineHandle
from .error_handling import (
    EngineEnvironmentError,
    EngineError,
    InitializationError,
    log_warning_with_context,
)
from .io import atomic_write
from .models import EngineEnvironment, InputFile, ProgressEvent, VideoMetadata

if TYPE_CHECKING:
    from .cache import ResourceCache

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
StatusCallback = Callable[[str], None]

_RESOLUTION_RE = re.compile(r"(\d{2,5})x(\d{2,5})")
_DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}\.\d{2})")
_CODEC_RE = re.compile(r"Video:\s+([a-zA-Z0-9_]+(?:-[a-zA-Z0-9]+)*)(?:\s|\(|,)", re.IGNORECASE)
_FPS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*fps")
_BITRATE_RE = re.compile(r"bitrate:\s*(\d+)\s*kb/s")


class LifecycleState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    TERMINATING = "terminating"


def parse_video_metadata(output: str) -> VideoMetadata:
    """Extract resolution, duration, codec, fps and bitrate from ``ffmpeg -i`` output.

    Fields that cannot be found keep their defaults (zero / ``"unknown"``).
    """
    metadata = VideoMetadata()

    video_line = next((line for line in output.splitlines() if "Video:" in line), "")

    resolution = _RESOLUTION_RE.search(video_line) or _RESOLUTION_RE.search(output)
    if resolution:
        metadata.width = int(resolution.group(1))
        metadata.height = int(resolution.group(2))

    duration = _DURATION_RE.search(output)
    if duration:
        hours, minutes, seconds = duration.groups()
        metadata.duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    codec = _CODEC_RE.search(output)
    if codec:
        metadata.codec = display_codec_name(codec.group(1))

    fps = _FPS_RE.search(video_line) or _FPS_RE.search(output)
    if fps:
        metadata.framerate = float(fps.group(1))

    bitrate = _BITRATE_RE.search(output)
    if bitrate:
        metadata.bitrate = int(bitrate.group(1)) * 1000

    return metadata


class EngineLifecycleManager:
    """Loads, supervises and tears down the conversion engine."""

    def __init__(
        self,
        engine_factory: Callable[[], EngineHandle],
        environment_probe: Callable[[], EngineEnvironment],
        config: LifecycleConfig | None = None,
        prefetch_config: PrefetchConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine_factory = engine_factory
        self._environment_probe = environment_probe
        self.config = config or LifecycleConfig()
        self.prefetch_config = prefetch_config or PrefetchConfig()
        self._clock = clock

        self._state = LifecycleState.UNINITIALIZED
        self._engine: EngineHandle | None = None
        self._init_task: asyncio.Task | None = None
        self._prefetch_task: asyncio.Task | None = None
        self._settle_handle: asyncio.TimerHandle | None = None
        self._unsubscribe_engine_progress: Callable[[], None] | None = None

        self._init_progress_callbacks: list[ProgressCallback] = []
        self._init_status_callbacks: list[StatusCallback] = []
        self._progress_listeners: list[ProgressCallback] = []

        self._last_progress_value: int | None = None
        self._last_progress_time = 0.0
        self._logs: deque[str] = deque(maxlen=self.config.LOG_BUFFER_SIZE)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return (
            self._state is LifecycleState.READY
            and self._engine is not None
            and self._engine.loaded
        )

    @property
    def engine(self) -> EngineHandle:
        if not self.is_ready or self._engine is None:
            raise InitializationError("Engine is not loaded. Call initialize() first.")
        return self._engine

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(
        self,
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        """Load the engine once; concurrent callers share the in-flight load."""
        if self.is_ready:
            return

        if on_progress is not None:
            self._init_progress_callbacks.append(on_progress)
        if on_status is not None:
            self._init_status_callbacks.append(on_status)

        if self._init_task is None:
            self._init_task = asyncio.create_task(self._run_initialize())
            self._init_task.add_done_callback(self._on_initialize_done)

        await asyncio.shield(self._init_task)

    def _on_initialize_done(self, task: asyncio.Task) -> None:
        if self._init_task is task:
            self._init_task = None
        self._init_progress_callbacks.clear()
        self._init_status_callbacks.clear()
        # Consume the exception so an unobserved failure is not reported twice
        if not task.cancelled():
            task.exception()

    async def _run_initialize(self) -> None:
        environment = self._environment_probe()
        if not (environment.shared_memory and environment.isolated):
            raise EngineEnvironmentError(
                "Execution environment cannot run the engine "
                f"(shared_memory={environment.shared_memory}, isolated={environment.isolated})",
                context={"engine_path": environment.engine_path},
            )

        await self._wait_for_termination()

        self._state = LifecycleState.INITIALIZING
        self._notify_status("Loading FFmpeg engine...")
        self._last_progress_value = None
        self._last_progress_time = 0.0

        engine: EngineHandle | None = None
        try:
            engine = self._engine_factory()
            self._unsubscribe_engine_progress = engine.add_progress_listener(
                self._relay_engine_progress
            )
            await engine.load()
        except Exception as e:
            self._state = LifecycleState.UNINITIALIZED
            self._detach_engine(engine)
            if isinstance(e, EngineEnvironmentError):
                raise
            logger.error(f"🚨 Engine initialization failed: {e}")
            raise InitializationError("Failed to initialize FFmpeg engine", cause=e)

        self._engine = engine
        self._state = LifecycleState.READY
        self._emit_progress(100, force=True)
        self._notify_status("FFmpeg engine ready")
        logger.info("Engine initialized")

    async def _wait_for_termination(self) -> None:
        waited_ms = 0
        interval_ms = self.config.TERMINATION_CHECK_INTERVAL_MS
        while self._state is LifecycleState.TERMINATING:
            if waited_ms >= self.config.MAX_TERMINATION_WAIT_MS:
                logger.warning(
                    f"⚠️  Termination did not settle within {self.config.MAX_TERMINATION_WAIT_MS}ms, "
                    "forcing re-initialization"
                )
                self._clear_terminating()
                break
            await asyncio.sleep(interval_ms / 1000)
            waited_ms += interval_ms

    # ------------------------------------------------------------------
    # Progress and status relay
    # ------------------------------------------------------------------

    def subscribe_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Receive throttled engine progress (0-100); returns an unsubscribe callable."""
        self._progress_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._progress_listeners:
                self._progress_listeners.remove(callback)

        return unsubscribe

    def _relay_engine_progress(self, event: ProgressEvent) -> None:
        value = max(0, min(100, round(event.ratio * 100)))
        self._emit_progress(value)

    def _emit_progress(self, value: int, force: bool = False) -> None:
        now = self._clock()
        if not force and value != 100:
            elapsed_ms = (now - self._last_progress_time) * 1000
            if self._last_progress_value is not None and (
                elapsed_ms < self.config.PROGRESS_THROTTLE_MS
                or abs(value - self._last_progress_value) < 1
            ):
                return
        self._last_progress_value = value
        self._last_progress_time = now

        for callback in [*self._init_progress_callbacks, *self._progress_listeners]:
            try:
                callback(value)
            except Exception as e:
                logger.debug(f"Progress callback failed: {e}")

    def _notify_status(self, message: str) -> None:
        for callback in list(self._init_status_callbacks):
            try:
                callback(message)
            except Exception as e:
                logger.debug(f"Status callback failed: {e}")

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self) -> None:
        """Tear the engine down; safe to call in any state."""
        self._state = LifecycleState.TERMINATING
        engine = self._engine
        self._engine = None
        if engine is not None:
            try:
                engine.terminate()
            except Exception as e:
                logger.warning(f"⚠️  Engine terminate raised (ignored): {e}")
        self._detach_engine(None)
        self._logs.clear()

        if self._settle_handle is not None:
            self._settle_handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._clear_terminating()
            return
        self._settle_handle = loop.call_later(
            self.config.TERMINATION_SETTLE_MS / 1000, self._clear_terminating
        )
        logger.info("Engine terminated")

    def _clear_terminating(self) -> None:
        self._settle_handle = None
        if self._state is LifecycleState.TERMINATING:
            self._state = LifecycleState.UNINITIALIZED

    def _detach_engine(self, engine: EngineHandle | None) -> None:
        if self._unsubscribe_engine_progress is not None:
            self._unsubscribe_engine_progress()
            self._unsubscribe_engine_progress = None
        if engine is not None:
            try:
                engine.terminate()
            except Exception as e:
                logger.debug(f"Discarding half-loaded engine failed: {e}")

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def add_log_entry(self, type: str, message: str) -> None:
        self._logs.append(f"[{type}] {message}")

    def get_recent_logs(self) -> list[str]:
        return list(self._logs)

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    def _assets_cached(self) -> bool:
        asset_dir = self.prefetch_config.ASSET_DIR
        return all((asset_dir / name).exists() for name in self.prefetch_config.ASSETS)

    async def prefetch(self) -> None:
        """Download engine assets ahead of time; concurrent calls share one task."""
        if self.is_ready or self._assets_cached():
            return

        if self._prefetch_task is None:
            self._prefetch_task = asyncio.create_task(self._run_prefetch())
            self._prefetch_task.add_done_callback(self._on_prefetch_done)

        await asyncio.shield(self._prefetch_task)

    def _on_prefetch_done(self, task: asyncio.Task) -> None:
        if self._prefetch_task is task:
            self._prefetch_task = None
        if not task.cancelled():
            task.exception()

    def _download_asset(self, mirror: str, asset: str) -> None:
        url = f"{mirror.rstrip('/')}/{asset}"
        response = requests.get(url, timeout=self.prefetch_config.REQUEST_TIMEOUT_S)
        response.raise_for_status()
        with atomic_write(self.prefetch_config.ASSET_DIR / asset, mode="wb") as fh:
            fh.write(response.content)
        logger.debug(f"💾 Prefetched {url} ({len(response.content)} bytes)")

    async def _run_prefetch(self) -> None:
        config = self.prefetch_config
        last_error: Exception | None = None

        for mirror in config.MIRRORS:
            for attempt in range(config.MAX_RETRIES + 1):
                try:
                    await asyncio.gather(
                        *(asyncio.to_thread(self._download_asset, mirror, asset) for asset in config.ASSETS)
                    )
                    logger.info(f"Engine assets prefetched from {mirror}")
                    return
                except (requests.RequestException, OSError) as e:
                    last_error = e
                    logger.debug(f"Prefetch attempt {attempt + 1} from {mirror} failed: {e}")
                    if attempt < config.MAX_RETRIES:
                        await asyncio.sleep(config.RETRY_BACKOFF_MS * 2**attempt / 1000)

        log_warning_with_context(
            "Engine asset prefetch failed on every mirror",
            {"mirrors": len(config.MIRRORS), "last_error": last_error},
            logger,
        )
        raise InitializationError("Failed to prefetch engine assets", cause=last_error)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_video_metadata(self, file: InputFile, cache: ResourceCache) -> VideoMetadata:
        """Probe *file* with ``ffmpeg -i`` and parse the diagnostic output."""
        engine = self.engine
        await cache.ensure_input_staged(engine, file)

        lines: list[str] = []
        unsubscribe = engine.add_log_listener(lambda entry: lines.append(entry.message))
        try:
            await engine.exec(
                ["-i", cache.input_name], timeout=self.config.VIDEO_ANALYSIS_TIMEOUT_MS
            )
        except EngineError as e:
            # Probing without an output file always exits non-zero
            logger.debug(f"Metadata probe exited with expected error: {e}")
        finally:
            unsubscribe()

        metadata = parse_video_metadata("\n".join(lines))
        logger.debug(
            f"Video metadata: {metadata.width}x{metadata.height}, {metadata.duration:.2f}s, "
            f"{metadata.codec}, {metadata.framerate}fps"
        )
        return metadata
