"""Tests for the conversion supervisor timers."""

import asyncio
from dataclasses import replace

import pytest

from vid2anim.models import ConversionFormat, Quality, VideoMetadata
from vid2anim.supervisor import (
    SILENT_STALL_STATUS,
    STALL_STATUS,
    UNRESPONSIVE_STATUS,
    ConversionSupervisor,
    HeartbeatHandle,
    SupervisorCallbacks,
)


class Recorder:
    """Collects supervisor callbacks."""

    def __init__(self):
        self.progress = []
        self.statuses = []
        self.terminations = 0

    def callbacks(self):
        return SupervisorCallbacks(
            on_progress=lambda value, is_heartbeat: self.progress.append((value, is_heartbeat)),
            on_status=self.statuses.append,
            on_terminate=self._terminate,
        )

    def _terminate(self):
        self.terminations += 1


class TestWatchdog:
    """Tests for progress-based stall detection."""

    @pytest.mark.fast
    def test_stall_terminates_once(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        recorder = Recorder()

        async def run():
            supervisor.start(enable_log_silence_check=False, callbacks=recorder.callbacks())
            await asyncio.sleep(0.2)
            supervisor.stop()

        asyncio.run(run())

        assert supervisor.stalled
        assert recorder.terminations == 1
        assert recorder.statuses == [STALL_STATUS]

    @pytest.mark.fast
    def test_progress_keeps_watchdog_quiet(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        recorder = Recorder()

        async def run():
            supervisor.start(enable_log_silence_check=False, callbacks=recorder.callbacks())
            for value in range(15):
                supervisor.update_progress(value)
                await asyncio.sleep(0.01)
            supervisor.stop()

        asyncio.run(run())

        assert not supervisor.stalled
        assert recorder.terminations == 0
        assert recorder.progress[-1] == (14, False)

    @pytest.mark.fast
    def test_webp_uses_longer_base_timeout(self, fast_monitoring):
        config = replace(fast_monitoring, WATCHDOG_WEBP_BASE_TIMEOUT_MS=120)
        supervisor = ConversionSupervisor(config)

        async def run():
            supervisor.start(fmt=ConversionFormat.WEBP, enable_log_silence_check=False)
            webp_timeout = supervisor.current_timeout_ms
            supervisor.start(fmt=ConversionFormat.GIF, enable_log_silence_check=False)
            gif_timeout = supervisor.current_timeout_ms
            supervisor.stop()
            return webp_timeout, gif_timeout

        assert asyncio.run(run()) == (120, 50)

    @pytest.mark.fast
    def test_timeout_scales_with_input_and_is_capped(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        metadata = VideoMetadata(width=3840, height=2160, duration=600.0, codec="h264", framerate=30)

        async def run():
            supervisor.start(metadata=metadata, quality=Quality.HIGH, enable_log_silence_check=False)
            supervisor.stop()

        asyncio.run(run())

        assert supervisor.current_timeout_ms == fast_monitoring.WATCHDOG_MAX_TIMEOUT_MS


class TestLogSilence:
    """Tests for the log-silence detector."""

    @pytest.fixture
    def silence_config(self, fast_monitoring):
        return replace(
            fast_monitoring,
            WATCHDOG_STALL_TIMEOUT_MS=10_000,
            WATCHDOG_WEBP_BASE_TIMEOUT_MS=10_000,
            WATCHDOG_MAX_TIMEOUT_MS=20_000,
        )

    @pytest.mark.fast
    def test_terminates_after_max_strikes(self, silence_config):
        supervisor = ConversionSupervisor(silence_config)
        recorder = Recorder()

        async def run():
            supervisor.start(callbacks=recorder.callbacks())
            await asyncio.sleep(0.3)
            supervisor.stop()

        asyncio.run(run())

        assert supervisor.stalled
        assert recorder.terminations == 1
        assert supervisor.log_silence_strikes == 3
        assert recorder.statuses.count(UNRESPONSIVE_STATUS) == 3
        assert recorder.statuses[-1] == SILENT_STALL_STATUS

    @pytest.mark.fast
    def test_log_activity_resets_strikes(self, silence_config):
        supervisor = ConversionSupervisor(silence_config)
        recorder = Recorder()

        async def run():
            supervisor.start(callbacks=recorder.callbacks())
            for _ in range(20):
                supervisor.update_log_activity()
                await asyncio.sleep(0.01)
            supervisor.stop()

        asyncio.run(run())

        assert not supervisor.stalled
        assert supervisor.log_silence_strikes == 0

    @pytest.mark.fast
    def test_disabled_check_never_strikes(self, silence_config):
        supervisor = ConversionSupervisor(silence_config)

        async def run():
            supervisor.start(enable_log_silence_check=False)
            await asyncio.sleep(0.1)
            supervisor.stop()

        asyncio.run(run())

        assert supervisor.log_silence_strikes == 0


class TestHeartbeat:
    """Tests for synthetic progress."""

    @pytest.mark.fast
    def test_value_interpolates_and_caps(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        handle = HeartbeatHandle(id=1, start=0, end=100, estimated_seconds=1.0)

        assert supervisor.heartbeat_value(handle, 0.5) == 50
        assert supervisor.heartbeat_value(handle, 10.0) == 99

    @pytest.mark.fast
    def test_value_respects_configured_cap(self, fast_monitoring):
        supervisor = ConversionSupervisor(replace(fast_monitoring, HEARTBEAT_MAX_PROGRESS=95))
        handle = HeartbeatHandle(id=1, start=0, end=100, estimated_seconds=1.0)

        assert supervisor.heartbeat_value(handle, 10.0) == 95

    @pytest.mark.fast
    def test_heartbeat_emits_increasing_values(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        recorder = Recorder()

        async def run():
            supervisor.start(enable_log_silence_check=False, callbacks=recorder.callbacks())
            handle = supervisor.start_heartbeat(40, 90, estimated_seconds=0.1)
            assert supervisor.active_heartbeats == 1
            await asyncio.sleep(0.2)
            supervisor.stop_heartbeat(handle)
            supervisor.stop_heartbeat(handle)
            supervisor.stop_heartbeat(None)
            assert supervisor.active_heartbeats == 0
            supervisor.stop()

        asyncio.run(run())

        values = [value for value, is_heartbeat in recorder.progress if is_heartbeat]
        assert values
        assert values == sorted(set(values))
        assert 40 <= values[0] and values[-1] <= 90


class TestStop:
    """Tests for supervisor shutdown."""

    @pytest.mark.fast
    def test_stop_is_idempotent(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)

        async def run():
            supervisor.start()
            supervisor.start_heartbeat(0, 50, 1.0)
            supervisor.stop()
            supervisor.stop()
            await asyncio.sleep(0.1)

        asyncio.run(run())

        assert not supervisor.is_active
        assert supervisor.active_heartbeats == 0
        assert not supervisor.stalled

    @pytest.mark.fast
    def test_stop_without_start(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        supervisor.stop()
        supervisor.force_cleanup()

        assert not supervisor.is_active

    @pytest.mark.fast
    def test_update_progress_forwards_when_inactive(self, fast_monitoring):
        supervisor = ConversionSupervisor(fast_monitoring)
        recorder = Recorder()

        async def run():
            supervisor.start(enable_log_silence_check=False, callbacks=recorder.callbacks())
            supervisor.stop()
            supervisor.update_progress(77)

        asyncio.run(run())

        assert recorder.progress == [(77, False)]
