"""Stall detection and synthetic progress for running conversions.

Three timers run while a conversion is supervised:

* the watchdog, which terminates the engine when no progress has been
  reported within an adaptive timeout;
* the log-silence detector, which counts strikes while the engine prints
  nothing and terminates after the maximum strike count;
* heartbeats, which advance progress through a stage's range while a single
  long FFmpeg pass produces no measurable progress of its own.

All timers are asyncio tasks, so ``stop()`` can cancel them synchronously.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import MonitoringConfig
from .models import ConversionFormat, Quality, VideoMetadata
from .timeouts import calculate_adaptive_watchdog_timeout

logger = logging.getLogger(__name__)

STALL_STATUS = "Conversion stalled - terminating..."
UNRESPONSIVE_STATUS = "Encoder is unresponsive, checking..."
SILENT_STALL_STATUS = "Conversion stalled - terminating (no encoder output)..."

_HEARTBEAT_FRACTION_CAP = 0.99


@dataclass
class SupervisorCallbacks:
    on_progress: Callable[[int, bool], None] | None = None
    on_status: Callable[[str], None] | None = None
    on_terminate: Callable[[], None] | None = None


@dataclass(eq=False)
class HeartbeatHandle:
    id: int
    start: int
    end: int
    estimated_seconds: float
    task: asyncio.Task | None = field(default=None, repr=False)
    last_value: int = -1


class ConversionSupervisor:
    """Watchdog, log-silence detector and heartbeat driver for one conversion."""

    def __init__(
        self,
        config: MonitoringConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or MonitoringConfig()
        self._clock = clock
        self._callbacks = SupervisorCallbacks()

        self._watchdog_task: asyncio.Task | None = None
        self._log_silence_task: asyncio.Task | None = None
        self._heartbeats: dict[int, HeartbeatHandle] = {}
        self._heartbeat_ids = itertools.count(1)

        self._active = False
        self._stalled = False
        self._last_progress_time = 0.0
        self._last_log_time = 0.0
        self._last_progress_value = -1
        self._log_silence_strikes = 0
        self.current_timeout_ms = self.config.WATCHDOG_STALL_TIMEOUT_MS

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def stalled(self) -> bool:
        """True once the watchdog or log-silence detector requested termination."""
        return self._stalled

    @property
    def active_heartbeats(self) -> int:
        return len(self._heartbeats)

    @property
    def log_silence_strikes(self) -> int:
        return self._log_silence_strikes

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(
        self,
        metadata: VideoMetadata | None = None,
        quality: Quality | None = None,
        fmt: ConversionFormat | None = None,
        enable_log_silence_check: bool = True,
        callbacks: SupervisorCallbacks | None = None,
    ) -> None:
        """Begin supervising; any previous run is fully stopped first."""
        self.stop()

        self._callbacks = callbacks or SupervisorCallbacks()
        now = self._clock()
        self._last_progress_time = now
        self._last_log_time = now
        self._log_silence_strikes = 0
        self._last_progress_value = -1
        self._stalled = False
        self._active = True

        base_timeout = (
            self.config.WATCHDOG_WEBP_BASE_TIMEOUT_MS
            if fmt is ConversionFormat.WEBP
            else self.config.WATCHDOG_STALL_TIMEOUT_MS
        )
        self.current_timeout_ms = calculate_adaptive_watchdog_timeout(
            base_timeout, metadata=metadata, quality=quality, config=self.config
        )
        logger.debug(
            f"⏱️  Watchdog started (format={fmt.value if fmt else 'unknown'}, "
            f"timeout={self.current_timeout_ms / 1000:.1f}s)"
        )

        if enable_log_silence_check:
            self._log_silence_task = asyncio.create_task(self._log_silence_loop())
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())

    def stop(self) -> None:
        """Cancel every timer and mark the supervisor inactive. Idempotent."""
        was_active = (
            self._active
            or self._watchdog_task is not None
            or self._log_silence_task is not None
            or bool(self._heartbeats)
        )
        self._cancel_task(self._watchdog_task)
        self._watchdog_task = None
        self._cancel_task(self._log_silence_task)
        self._log_silence_task = None
        for handle in list(self._heartbeats.values()):
            self._cancel_task(handle.task)
        self._heartbeats.clear()
        self._active = False
        if was_active:
            logger.debug("Supervisor state reset")

    def force_cleanup(self) -> None:
        """Clear every timer regardless of state."""
        heartbeat_count = len(self._heartbeats)
        self.stop()
        self._log_silence_strikes = 0
        logger.info(f"🧹 Supervisor force cleanup complete (heartbeats cleared: {heartbeat_count})")

    @staticmethod
    def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        # A timer may stop its own supervisor from inside a callback
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def update_progress(self, value: int, is_heartbeat: bool = False) -> None:
        if self._active:
            self._last_progress_time = self._clock()
            self._last_progress_value = value
        if self._callbacks.on_progress is not None:
            self._callbacks.on_progress(value, is_heartbeat)

    def update_log_activity(self) -> None:
        self._last_log_time = self._clock()
        self._log_silence_strikes = 0

    def report_status(self, message: str) -> None:
        if self._callbacks.on_status is not None:
            self._callbacks.on_status(message)

    def _terminate(self) -> None:
        self._stalled = True
        if self._callbacks.on_terminate is not None:
            self._callbacks.on_terminate()

    # ------------------------------------------------------------------
    # Timer loops
    # ------------------------------------------------------------------

    async def _watchdog_loop(self) -> None:
        interval = self.config.WATCHDOG_CHECK_INTERVAL_MS / 1000
        while self._active:
            await asyncio.sleep(interval)
            since_progress_ms = (self._clock() - self._last_progress_time) * 1000
            logger.debug(
                f"Watchdog check: {since_progress_ms / 1000:.1f}s since last progress "
                f"(timeout: {self.current_timeout_ms / 1000:.1f}s)"
            )
            if since_progress_ms > self.current_timeout_ms:
                logger.error(
                    f"🚨 Conversion stalled - no progress for "
                    f"{self.current_timeout_ms / 1000:.1f}s (last={self._last_progress_value})"
                )
                self.report_status(STALL_STATUS)
                self._terminate()
                return

    async def _log_silence_loop(self) -> None:
        interval = self.config.LOG_SILENCE_CHECK_INTERVAL_MS / 1000
        while self._active:
            await asyncio.sleep(interval)
            silence_ms = (self._clock() - self._last_log_time) * 1000
            if silence_ms <= self.config.LOG_SILENCE_TIMEOUT_MS:
                continue

            self._log_silence_strikes += 1
            logger.warning(
                f"⚠️  No encoder logs for {silence_ms / 1000:.1f}s "
                f"(strike {self._log_silence_strikes}/{self.config.LOG_SILENCE_MAX_STRIKES})"
            )
            self.report_status(UNRESPONSIVE_STATUS)
            if self._log_silence_strikes >= self.config.LOG_SILENCE_MAX_STRIKES:
                logger.error("🚨 Encoder produced no output after repeated checks, terminating")
                self.report_status(SILENT_STALL_STATUS)
                self._terminate()
                return

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def start_heartbeat(self, start: int, end: int, estimated_seconds: float) -> HeartbeatHandle:
        """Advance progress from *start* toward *end* over *estimated_seconds*."""
        handle = HeartbeatHandle(
            id=next(self._heartbeat_ids),
            start=start,
            end=end,
            estimated_seconds=max(estimated_seconds, 0.001),
        )
        handle.task = asyncio.create_task(self._heartbeat_loop(handle))
        self._heartbeats[handle.id] = handle
        logger.debug(f"Starting heartbeat: {start}% -> {end}% (estimated {estimated_seconds}s)")
        return handle

    def heartbeat_value(self, handle: HeartbeatHandle, elapsed_seconds: float) -> int:
        fraction = min(elapsed_seconds / handle.estimated_seconds, _HEARTBEAT_FRACTION_CAP)
        value = round(handle.start + (handle.end - handle.start) * fraction)
        return min(value, self.config.HEARTBEAT_MAX_PROGRESS)

    async def _heartbeat_loop(self, handle: HeartbeatHandle) -> None:
        started = self._clock()
        interval = self.config.HEARTBEAT_INTERVAL_MS / 1000
        while True:
            await asyncio.sleep(interval)
            value = self.heartbeat_value(handle, self._clock() - started)
            if value <= handle.last_value:
                continue
            handle.last_value = value
            self.update_progress(value, is_heartbeat=True)

    def stop_heartbeat(self, handle: HeartbeatHandle | None) -> None:
        """Stop *handle*. Unknown or already-stopped handles are ignored."""
        if handle is None:
            return
        if self._heartbeats.pop(handle.id, None) is not None:
            self._cancel_task(handle.task)
            logger.debug("Heartbeat stopped")
