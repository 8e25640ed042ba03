"""Tests for the FFmpeg GIF/WebP encoder."""

import asyncio
from unittest.mock import patch

import pytest

from conftest import VALID_GIF, VALID_WEBP, FakeEngine, default_script, make_input, make_lifecycle, png_bytes
from vid2anim.cache import ResourceCache
from vid2anim.config import CacheConfig
from vid2anim.encoder import FFmpegEncoder
from vid2anim.error_handling import (
    ConversionCancelledError,
    ConversionError,
    ConversionInProgressError,
    ConversionValidationError,
    EngineError,
    OutputValidationError,
)
from vid2anim.ffmpeg_args import InputOverride
from vid2anim.lifecycle import LifecycleState
from vid2anim.models import (
    CancellationToken,
    ConversionFormat,
    ConversionOptions,
    Quality,
    VideoMetadata,
)
from vid2anim.supervisor import ConversionSupervisor, SupervisorCallbacks

METADATA = VideoMetadata(width=1280, height=720, duration=4.0, codec="H.264", framerate=30.0)


def make_encoder(engine):
    return FFmpegEncoder(
        make_lifecycle(lambda: engine),
        ResourceCache(),
        ConversionSupervisor(),
        core_count=8,
    )


def run_with_engine(engine, body):
    """Initialize an encoder around *engine* and run ``body(encoder)``."""
    encoder = make_encoder(engine)

    async def run():
        await encoder.lifecycle.initialize()
        return await body(encoder)

    return encoder, asyncio.run(run())


class TestVideoConversions:
    """Tests for GIF and WebP conversion from a video input."""

    @pytest.mark.fast
    def test_gif_two_pass(self):
        engine = FakeEngine()
        encoder, output = run_with_engine(
            engine,
            lambda enc: enc.convert_to_gif(make_input(), ConversionOptions(quality=Quality.HIGH), METADATA),
        )

        assert output.data == VALID_GIF
        assert output.format is ConversionFormat.GIF
        assert output.mime_type == "image/gif"

        palette_pass, conversion_pass = engine.commands
        assert palette_pass[-1] == "palette.png"
        assert "palettegen=max_colors=256" in palette_pass[palette_pass.index("-vf") + 1]
        assert conversion_pass[-1] == "output.gif"
        assert "dither=sierra2_4a" in conversion_pass[conversion_pass.index("-lavfi") + 1]

        # Intermediates are removed, the staged input stays cached
        assert set(engine.files) == {"input.mp4"}
        assert not encoder.is_converting

    @pytest.mark.fast
    def test_input_outlives_ttl_during_slow_palette_pass(self):
        input_present = []

        async def slow_palette(engine, args):
            if args[-1] == "palette.png":
                await asyncio.sleep(0.1)
            elif args[-1] == "output.gif":
                input_present.append("input.mp4" in engine.files)
            default_script(engine, args)

        engine = FakeEngine(script=slow_palette)
        encoder = FFmpegEncoder(
            make_lifecycle(lambda: engine),
            ResourceCache(CacheConfig(INPUT_CACHE_TTL_MS=20, INPUT_CACHE_POST_CONVERT_MS=10_000)),
            ConversionSupervisor(),
            core_count=8,
        )

        async def run():
            await encoder.lifecycle.initialize()
            return await encoder.convert_to_gif(make_input(), ConversionOptions(), METADATA)

        output = asyncio.run(run())

        assert output.data == VALID_GIF
        assert input_present == [True]
        assert not encoder.cache.input_held

    @pytest.mark.fast
    def test_webp_single_pass(self):
        engine = FakeEngine()
        _, output = run_with_engine(
            engine, lambda enc: enc.convert_to_webp(make_input(), ConversionOptions(), METADATA)
        )

        assert output.data == VALID_WEBP
        assert len(engine.commands) == 1
        assert "libwebp" in engine.commands[0]
        assert set(engine.files) == {"input.mp4"}

    @pytest.mark.fast
    def test_webp_input_override(self):
        engine = FakeEngine()
        override = InputOverride(format="h264", framerate=30.0)
        run_with_engine(
            engine,
            lambda enc: enc.convert_to_webp(make_input(), ConversionOptions(), METADATA, input_override=override),
        )

        command = engine.commands[0]
        assert command[command.index("-f") + 1] == "h264"
        assert "-filter_threads" in command

    @pytest.mark.fast
    def test_progress_follows_stage_ranges(self):
        engine = FakeEngine()
        encoder = make_encoder(engine)
        progress = []

        async def run():
            await encoder.lifecycle.initialize()
            encoder.supervisor.start(
                enable_log_silence_check=False,
                callbacks=SupervisorCallbacks(on_progress=lambda value, _: progress.append(value)),
            )
            try:
                await encoder.convert_to_gif(make_input(), ConversionOptions(), METADATA)
            finally:
                encoder.supervisor.stop()

        asyncio.run(run())

        # time=00:00:02.00 of a 4s clip lands halfway through the 40-90 range
        assert progress == [10, 40, 65, 100]

    @pytest.mark.fast
    def test_stale_cancel_request_is_cleared(self):
        engine = FakeEngine()
        encoder = make_encoder(engine)
        encoder.cancel()

        async def run():
            await encoder.lifecycle.initialize()
            return await encoder.convert_to_webp(make_input(), ConversionOptions())

        assert asyncio.run(run()).data == VALID_WEBP


class TestConversionFailures:
    """Tests for cancellation, contention and error enrichment."""

    @pytest.mark.fast
    def test_cancel_between_gif_passes(self):
        token = CancellationToken()

        def cancel_after_palette(engine, args):
            default_script(engine, args)
            if args[-1] == "palette.png":
                token.cancel()

        engine = FakeEngine(script=cancel_after_palette)

        with pytest.raises(ConversionCancelledError):
            run_with_engine(
                engine,
                lambda enc: enc.convert_to_gif(make_input(), ConversionOptions(), METADATA, cancel_token=token),
            )

        assert len(engine.commands) == 1
        assert set(engine.files) == {"input.mp4"}

    @pytest.mark.fast
    def test_second_conversion_rejected(self):
        async def body(encoder):
            gate = asyncio.Event()

            async def blocking(engine, args):
                await gate.wait()
                default_script(engine, args)

            engine.script = blocking
            first = asyncio.create_task(encoder.convert_to_webp(make_input(), ConversionOptions()))
            await asyncio.sleep(0.01)
            assert encoder.is_converting

            with pytest.raises(ConversionInProgressError):
                await encoder.convert_to_gif(make_input(), ConversionOptions())

            gate.set()
            return await first

        engine = FakeEngine()
        encoder, output = run_with_engine(engine, body)

        assert output.data == VALID_WEBP
        assert not encoder.is_converting

    @pytest.mark.fast
    def test_invalid_output(self):
        def tiny_gif(engine, args):
            default_script(engine, args)
            if args[-1] == "output.gif":
                engine.files["output.gif"] = b"GIF8"

        engine = FakeEngine(script=tiny_gif)

        with pytest.raises(OutputValidationError) as exc_info:
            run_with_engine(engine, lambda enc: enc.convert_to_gif(make_input(), ConversionOptions()))

        assert exc_info.value.error_context is not None
        assert "output.gif" not in engine.files
        assert "palette.png" not in engine.files

    @pytest.mark.fast
    def test_engine_failure_is_classified(self):
        def decoder_missing(engine, args):
            raise EngineError("ffmpeg command failed (exit 1).\n\nSTDERR:\nDecoder not found")

        engine = FakeEngine(script=decoder_missing)

        with pytest.raises(ConversionError) as exc_info:
            run_with_engine(engine, lambda enc: enc.convert_to_webp(make_input(), ConversionOptions()))

        error = exc_info.value
        assert isinstance(error.__cause__, EngineError)
        assert error.error_context.type == "codec"
        assert error.error_context.settings == {"format": "webp", "quality": "medium", "scale": 1.0}

    @pytest.mark.fast
    def test_pass_timeout_terminates_engine(self):
        async def hang(engine, args):
            await asyncio.sleep(5)

        engine = FakeEngine(script=hang)
        holder = {}

        async def body(encoder):
            holder["encoder"] = encoder
            return await encoder.convert_to_gif(make_input(), ConversionOptions())

        with patch("vid2anim.encoder.get_timeout_for_format", return_value=20):
            with pytest.raises(ConversionError) as exc_info:
                run_with_engine(engine, body)

        encoder = holder["encoder"]
        assert "timed out" in str(exc_info.value)
        assert exc_info.value.error_context.phase == "ffmpeg_timeout"
        assert engine.terminated
        assert encoder.lifecycle.state in (LifecycleState.TERMINATING, LifecycleState.UNINITIALIZED)
        assert not encoder.lifecycle.is_ready
        assert encoder.cache.known_files == frozenset()


class TestFrameSequences:
    """Tests for encoding staged frame sequences."""

    @staticmethod
    def _encode(engine, fmt, frame_count=3, fps=10.0):
        async def body(encoder):
            await encoder.cache.stage_frames(engine, [png_bytes() for _ in range(frame_count)])
            return await encoder.encode_frame_sequence(
                fmt, ConversionOptions(), frame_count, fps, frame_count / fps
            )

        return run_with_engine(engine, body)

    @pytest.mark.fast
    def test_frames_to_gif(self):
        engine = FakeEngine()
        _, output = self._encode(engine, ConversionFormat.GIF)

        assert output.data == VALID_GIF
        palette_pass, conversion_pass = engine.commands
        assert palette_pass[palette_pass.index("-i") + 1] == "frame_%06d.png"
        assert palette_pass[palette_pass.index("-framerate") + 1] == "10"
        assert conversion_pass[-1] == "output.gif"
        assert engine.files == {}

    @pytest.mark.fast
    def test_frames_to_webp(self):
        engine = FakeEngine()
        _, output = self._encode(engine, ConversionFormat.WEBP, fps=24.0)

        assert output.data == VALID_WEBP
        assert len(engine.commands) == 1
        command = engine.commands[0]
        assert command[command.index("-framerate") + 1] == "24"
        assert engine.files == {}

    @pytest.mark.fast
    def test_gif_needs_two_frames(self):
        engine = FakeEngine()

        with pytest.raises(ConversionValidationError, match="at least 2 frames"):
            self._encode(engine, ConversionFormat.GIF, frame_count=1)
        assert engine.commands == []

    @pytest.mark.fast
    def test_single_frame_webp_allowed(self):
        engine = FakeEngine()
        _, output = self._encode(engine, ConversionFormat.WEBP, frame_count=1)

        assert output.data == VALID_WEBP

    @pytest.mark.fast
    def test_mp4_rejected(self):
        engine = FakeEngine()

        with pytest.raises(ConversionValidationError):
            self._encode(engine, ConversionFormat.MP4)
        assert engine.files == {}

    @pytest.mark.fast
    def test_invalid_fps(self):
        engine = FakeEngine()

        with pytest.raises(ConversionValidationError, match="Invalid frame rate"):
            self._encode(engine, ConversionFormat.WEBP, fps=float("nan"))
