"""Shared fixtures: an in-memory engine and small-interval configs."""

import asyncio
import inspect
import io
from collections.abc import Callable

import pytest
from PIL import Image

from vid2anim.cache import ResourceCache
from vid2anim.config import CacheConfig, LifecycleConfig, MonitoringConfig, PrefetchConfig
from vid2anim.encoder import FFmpegEncoder
from vid2anim.engine import EngineHandle
from vid2anim.error_handling import EngineError
from vid2anim.history import StrategyHistoryStore
from vid2anim.lifecycle import EngineLifecycleManager
from vid2anim.models import Capabilities, EngineEnvironment, InputFile, LogEntry, ProgressEvent
from vid2anim.orchestrator import ConversionOrchestrator, ConversionService
from vid2anim.registry import StrategyRegistry
from vid2anim.supervisor import ConversionSupervisor

VALID_GIF = b"GIF89a" + b"\x00" * 64
VALID_WEBP = b"RIFF" + (60).to_bytes(4, "little") + b"WEBP" + b"\x00" * 52

PROBE_OUTPUT = [
    "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'input.mp4':",
    "  Duration: 00:00:04.00, start: 0.000000, bitrate: 1205 kb/s",
    "  Stream #0:0(und): Video: h264 (High) (avc1 / 0x31637661), yuv420p, "
    "1280x720 [SAR 1:1 DAR 16:9], 1100 kb/s, 30 fps, 30 tbr, 15360 tbn (default)",
    "At least one output file must be specified",
]


def png_bytes(color=(255, 0, 0), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def jpeg_bytes(color=(0, 0, 255), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


def default_script(engine: "FakeEngine", args: list[str]) -> None:
    """Mimic FFmpeg: answer probes and write plausible outputs."""
    if args == ["-i", "input.mp4"]:
        for line in PROBE_OUTPUT:
            engine.log(line)
        raise EngineError("FFmpeg exited with code 1")

    engine.log("frame=   10 fps=0.0 q=-0.0 size=N/A time=00:00:02.00 bitrate=N/A speed=4x")
    output = args[-1]
    if output.endswith(".gif"):
        engine.files[output] = VALID_GIF
    elif output.endswith(".webp"):
        engine.files[output] = VALID_WEBP
    elif output.endswith(".png"):
        engine.files[output] = png_bytes()


class FakeEngine(EngineHandle):
    """In-memory engine; ``script`` decides what each exec does."""

    def __init__(self, script: Callable | None = default_script):
        super().__init__()
        self.script = script
        self.files: dict[str, bytes] = {}
        self.commands: list[list[str]] = []
        self.load_calls = 0
        self.load_error: Exception | None = None
        self.terminated = False
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        self.load_calls += 1
        await asyncio.sleep(0)
        if self.load_error is not None:
            raise self.load_error
        self._loaded = True
        self._emit_progress(ProgressEvent(1.0))

    async def exec(self, args: list[str], timeout: int | None = None) -> int:
        self.commands.append(list(args))
        if self.script is not None:
            result = self.script(self, list(args))
            if inspect.isawaitable(result):
                await result
        return 0

    async def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = bytes(data)

    async def read_file(self, name: str) -> bytes:
        if name not in self.files:
            raise FileNotFoundError(name)
        return self.files[name]

    async def delete_file(self, name: str) -> None:
        if name not in self.files:
            raise FileNotFoundError(name)
        del self.files[name]

    def terminate(self) -> None:
        self.terminated = True
        self._loaded = False
        self.files.clear()

    def log(self, message: str, type: str = "stderr") -> None:
        self._emit_log(LogEntry(type=type, message=message))


def ready_environment() -> EngineEnvironment:
    return EngineEnvironment(shared_memory=True, isolated=True, engine_path="ffmpeg")


def make_lifecycle(engine_factory: Callable[[], EngineHandle], **kwargs) -> EngineLifecycleManager:
    return EngineLifecycleManager(
        engine_factory=engine_factory,
        environment_probe=kwargs.pop("environment_probe", ready_environment),
        config=kwargs.pop("config", LifecycleConfig(TERMINATION_SETTLE_MS=10)),
        **kwargs,
    )


def make_service(
    engine: EngineHandle,
    monitoring: MonitoringConfig | None = None,
    capabilities_probe=None,
    environment_probe=ready_environment,
):
    """A ConversionService wired around *engine* instead of a local FFmpeg."""
    lifecycle = make_lifecycle(lambda: engine, environment_probe=environment_probe)
    cache = ResourceCache()
    supervisor = ConversionSupervisor(monitoring)
    encoder = FFmpegEncoder(lifecycle, cache, supervisor, core_count=8)
    orchestrator = ConversionOrchestrator(lifecycle, cache, supervisor, encoder)
    history = StrategyHistoryStore()
    return ConversionService(
        lifecycle,
        cache,
        supervisor,
        encoder,
        orchestrator,
        history,
        StrategyRegistry(history),
        capabilities_probe=capabilities_probe or Capabilities,
    )


def make_input(name: str = "clip.mp4", data: bytes = b"\x00\x00\x00\x18ftypmp42", mtime: float = 1.0) -> InputFile:
    return InputFile.from_bytes(name, data, last_modified=mtime)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fast_monitoring():
    """Monitoring config with intervals small enough for unit tests."""
    return MonitoringConfig(
        WATCHDOG_CHECK_INTERVAL_MS=10,
        WATCHDOG_STALL_TIMEOUT_MS=50,
        WATCHDOG_WEBP_BASE_TIMEOUT_MS=50,
        WATCHDOG_MAX_TIMEOUT_MS=200,
        LOG_SILENCE_CHECK_INTERVAL_MS=10,
        LOG_SILENCE_TIMEOUT_MS=30,
        LOG_SILENCE_MAX_STRIKES=3,
        HEARTBEAT_INTERVAL_MS=10,
    )


@pytest.fixture
def cache():
    return ResourceCache(CacheConfig())


@pytest.fixture
def prefetch_config(tmp_path):
    return PrefetchConfig(
        MIRRORS=["https://mirror-a.example/dist", "https://mirror-b.example/dist"],
        ASSETS=["ffmpeg-core.js", "ffmpeg-core.wasm"],
        MAX_RETRIES=2,
        RETRY_BACKOFF_MS=500,
        ASSET_DIR=tmp_path / "assets",
    )
