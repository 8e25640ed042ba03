"""Tests for the conversion orchestrator and service facade."""

import asyncio

import pytest

from conftest import VALID_GIF, VALID_WEBP, FakeEngine, default_script, make_input, make_service, png_bytes
from vid2anim.config import AppConfig
from vid2anim.error_handling import (
    ConversionCancelledError,
    ConversionInProgressError,
    ConversionValidationError,
    StallError,
)
from vid2anim.models import (
    Capabilities,
    ContainerFormat,
    ConversionFormat,
    ConversionOptions,
    ConversionPath,
    FailurePhase,
)
from vid2anim.orchestrator import CancellationToken, ConversionRequest, ConversionService

GIF = ConversionFormat.GIF
WEBP = ConversionFormat.WEBP


def gated_palette_script(gate):
    async def script(engine, args):
        if args[-1] == "palette.png":
            await gate.wait()
        default_script(engine, args)

    return script


class TestConvert:
    """Tests for running conversions through the service."""

    @pytest.mark.fast
    def test_gif_end_to_end(self):
        engine = FakeEngine()
        service = make_service(engine)
        progress, statuses = [], []

        async def run():
            metadata = await service.get_video_metadata(make_input())
            output = await service.convert_to_gif(
                make_input(),
                ConversionOptions(),
                metadata,
                on_progress=progress.append,
                on_status=statuses.append,
            )
            return metadata, output

        metadata, output = asyncio.run(run())

        assert metadata.width == 1280
        assert output.data == VALID_GIF
        assert progress[-1] == 100
        assert engine.load_calls == 1
        assert not service.orchestrator.is_converting
        assert not service.supervisor.is_active

    @pytest.mark.fast
    def test_convert_initializes_engine(self):
        engine = FakeEngine()
        service = make_service(engine)
        statuses = []

        output = asyncio.run(
            service.convert_to_webp(make_input(), ConversionOptions(), on_status=statuses.append)
        )

        assert output.data == VALID_WEBP
        assert "FFmpeg engine ready" in statuses

    @pytest.mark.fast
    def test_frame_sequence(self):
        engine = FakeEngine()
        service = make_service(engine)

        output = asyncio.run(
            service.encode_frame_sequence(GIF, [png_bytes() for _ in range(4)], ConversionOptions(), fps=12)
        )

        assert output.data == VALID_GIF
        palette_pass = engine.commands[0]
        assert palette_pass[palette_pass.index("-framerate") + 1] == "12"
        assert engine.files == {}

    @pytest.mark.fast
    def test_mp4_output_rejected(self):
        service = make_service(FakeEngine())
        request = ConversionRequest(format=ConversionFormat.MP4, file=make_input())

        with pytest.raises(ConversionValidationError):
            asyncio.run(service.orchestrator.convert(request))
        assert not service.orchestrator.is_converting

    @pytest.mark.fast
    def test_request_needs_input(self):
        service = make_service(FakeEngine())

        with pytest.raises(ConversionValidationError):
            asyncio.run(service.orchestrator.convert(ConversionRequest(format=GIF)))


class TestSingleFlight:
    """Tests for concurrency and cancellation."""

    @pytest.mark.fast
    def test_second_request_rejected(self):
        engine = FakeEngine()
        service = make_service(engine)

        async def run():
            gate = asyncio.Event()
            engine.script = gated_palette_script(gate)
            first = asyncio.create_task(service.convert_to_gif(make_input(), ConversionOptions()))
            await asyncio.sleep(0.02)

            with pytest.raises(ConversionInProgressError):
                await service.convert_to_webp(make_input(), ConversionOptions())

            gate.set()
            return await first

        assert asyncio.run(run()).data == VALID_GIF

    @pytest.mark.fast
    def test_cancel_when_idle(self):
        service = make_service(FakeEngine())

        assert service.cancel_conversion() is False

    @pytest.mark.fast
    def test_cancel_active_conversion(self):
        engine = FakeEngine()
        service = make_service(engine)

        async def run():
            gate = asyncio.Event()
            engine.script = gated_palette_script(gate)
            task = asyncio.create_task(service.convert_to_gif(make_input(), ConversionOptions()))
            await asyncio.sleep(0.02)

            assert service.cancel_conversion() is True
            gate.set()
            with pytest.raises(ConversionCancelledError):
                await task

        asyncio.run(run())

        assert not service.orchestrator.is_converting
        assert "output.gif" not in engine.files

    @pytest.mark.fast
    def test_token_reexported(self):
        token = CancellationToken()
        token.cancel()

        assert token.cancelled


class TestStall:
    """Tests for supervisor-driven termination."""

    @pytest.mark.fast
    def test_stall_raises_stall_error(self, fast_monitoring):
        async def hang(engine, args):
            await asyncio.sleep(0.3)

        engine = FakeEngine(script=hang)
        service = make_service(engine, monitoring=fast_monitoring)
        statuses = []

        with pytest.raises(StallError) as exc_info:
            asyncio.run(
                service.convert_to_gif(make_input(), ConversionOptions(), on_status=statuses.append)
            )

        error = exc_info.value
        assert error.error_context.type == "timeout"
        assert error.error_context.phase == "watchdog_timeout"
        assert engine.terminated
        assert not service.lifecycle.is_ready
        assert service.cache.known_files == frozenset()
        assert any("stalled" in status for status in statuses)


class TestServiceFacade:
    """Tests for strategy passthrough, history and teardown."""

    @pytest.mark.fast
    def test_capabilities_probed_once(self):
        calls = []

        def probe():
            calls.append(1)
            return Capabilities(hardware_accelerated=False)

        service = make_service(FakeEngine(), capabilities_probe=probe)

        decision = service.get_strategy("h264", GIF, ContainerFormat.MP4)
        service.get_strategy_reasoning("h264", GIF, ContainerFormat.MP4)

        assert decision.preferred_path is ConversionPath.CPU
        assert len(calls) == 1

    @pytest.mark.fast
    def test_explicit_capabilities_skip_probe(self):
        service = make_service(FakeEngine(), capabilities_probe=lambda: pytest.fail("probed"))

        reasoning = service.get_strategy_reasoning(
            "hevc", WEBP, capabilities=Capabilities(hardware_accelerated=False), duration_seconds=5.0
        )

        assert reasoning.decision is ConversionPath.CPU

    @pytest.mark.fast
    def test_record_outcome(self):
        service = make_service(FakeEngine())

        failure = service.record_outcome(
            "h264", WEBP, ConversionPath.GPU, 1200.0, False, "decode failed", FailurePhase.DECODE
        )
        success = service.record_outcome(
            "h264", WEBP, ConversionPath.CPU, 900.0, True, failure_phase=FailurePhase.ENCODE
        )

        assert failure.failure_phase is FailurePhase.DECODE
        assert success.failure_phase is None
        history = service.history.get_history("h264", WEBP)
        assert history.total_conversions == 2

    @pytest.mark.fast
    def test_terminate(self):
        engine = FakeEngine()
        service = make_service(engine)

        async def run():
            await service.convert_to_webp(make_input(), ConversionOptions())
            service.terminate()

        asyncio.run(run())

        assert engine.terminated
        assert not service.lifecycle.is_ready
        assert service.cache.known_files == frozenset()
        assert service.get_recent_logs() == []

    @pytest.mark.fast
    def test_create_wires_default_stack(self, tmp_path):
        history_path = tmp_path / "history.json"
        service = ConversionService.create(AppConfig(), history_path=history_path)

        assert service.orchestrator.encoder is service.encoder
        assert service.encoder.cache is service.cache
        assert service.registry.history is service.history

        service.record_outcome("vp9", GIF, ConversionPath.CPU, 500.0, True)
        assert history_path.exists()
