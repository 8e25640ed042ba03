"""Engine handle interface and the local FFmpeg subprocess implementation.

The orchestration layer only talks to :class:`EngineHandle`. An engine owns a
private file space addressed by bare file names (``input.mp4``,
``palette.png``) and runs FFmpeg argument lists against it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from pathlib import Path

from .config import EngineConfig
from .error_handling import EngineError, InitializationError
from .models import LogEntry, ProgressEvent
from .system_tools import discover_tool

logger = logging.getLogger(__name__)

LogListener = Callable[[LogEntry], None]
ProgressListener = Callable[[ProgressEvent], None]

_DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")
_OUT_TIME_RE = re.compile(r"^out_time_(?:ms|us)=(\d+)")
_STDERR_TAIL_LINES = 20


class EngineHandle(ABC):
    """Abstract decode/encode engine with a private file space."""

    def __init__(self) -> None:
        self._log_listeners: list[LogListener] = []
        self._progress_listeners: list[ProgressListener] = []

    @property
    @abstractmethod
    def loaded(self) -> bool: ...

    @abstractmethod
    async def load(self) -> None: ...

    @abstractmethod
    async def exec(self, args: list[str], timeout: int | None = None) -> int:
        """Run an FFmpeg argument list; *timeout* is in milliseconds."""

    @abstractmethod
    async def write_file(self, name: str, data: bytes) -> None: ...

    @abstractmethod
    async def read_file(self, name: str) -> bytes: ...

    @abstractmethod
    async def delete_file(self, name: str) -> None:
        """Delete *name*; raises ``FileNotFoundError`` when it does not exist."""

    @abstractmethod
    def terminate(self) -> None: ...

    def add_log_listener(self, callback: LogListener) -> Callable[[], None]:
        """Subscribe to log lines; returns an unsubscribe callable."""
        self._log_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._log_listeners:
                self._log_listeners.remove(callback)

        return unsubscribe

    def add_progress_listener(self, callback: ProgressListener) -> Callable[[], None]:
        """Subscribe to progress ratios; returns an unsubscribe callable."""
        self._progress_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._progress_listeners:
                self._progress_listeners.remove(callback)

        return unsubscribe

    def _emit_log(self, entry: LogEntry) -> None:
        for listener in list(self._log_listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.debug(f"Log listener failed: {e}")

    def _emit_progress(self, event: ProgressEvent) -> None:
        for listener in list(self._progress_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.debug(f"Progress listener failed: {e}")


class LocalFFmpegEngine(EngineHandle):
    """Runs the local ``ffmpeg`` binary inside a private scratch directory."""

    def __init__(self, engine_config: EngineConfig | None = None) -> None:
        super().__init__()
        self.engine_config = engine_config or EngineConfig()
        self._ffmpeg_path: str | None = None
        self._work_dir: Path | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def work_dir(self) -> Path | None:
        return self._work_dir

    async def load(self) -> None:
        tool = discover_tool("ffmpeg", self.engine_config)
        try:
            tool.require()
        except RuntimeError as e:
            raise InitializationError("FFmpeg binary is unavailable", cause=e)

        self._ffmpeg_path = tool.name
        self._work_dir = Path(tempfile.mkdtemp(prefix="vid2anim_", dir=self.engine_config.WORK_DIR))
        self._loaded = True
        self._emit_progress(ProgressEvent(ratio=1.0))
        logger.info(f"FFmpeg engine loaded ({tool.name}, version {tool.version or 'unknown'})")

    def _require_loaded(self) -> Path:
        if not self._loaded or self._work_dir is None:
            raise EngineError("Engine is not loaded")
        return self._work_dir

    def _resolve(self, name: str) -> Path:
        work_dir = self._require_loaded()
        candidate = Path(name)
        if candidate.name != name or name in ("", ".", ".."):
            raise ValueError(f"Engine file names must be bare names, got {name!r}")
        return work_dir / candidate

    async def exec(self, args: list[str], timeout: int | None = None) -> int:
        work_dir = self._require_loaded()
        cmd = [self._ffmpeg_path or "ffmpeg", "-hide_banner", "-nostdin", "-y", *args]
        logger.debug(f"Running: {' '.join(cmd)}")

        start = time.perf_counter()
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(work_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        total_seconds: list[float] = []

        async def pump(stream: asyncio.StreamReader, kind: str) -> None:
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                if kind == "stderr":
                    stderr_tail.append(line)
                    match = _DURATION_RE.search(line)
                    if match and not total_seconds:
                        h, m, s = match.groups()
                        total_seconds.append(int(h) * 3600 + int(m) * 60 + float(s))
                else:
                    match = _OUT_TIME_RE.match(line)
                    if match and total_seconds and total_seconds[0] > 0:
                        # out_time_ms is reported in microseconds
                        elapsed = int(match.group(1)) / 1_000_000
                        self._emit_progress(
                            ProgressEvent(ratio=min(elapsed / total_seconds[0], 1.0))
                        )
                self._emit_log(LogEntry(type=kind, message=line))

        pumps = asyncio.gather(pump(process.stdout, "stdout"), pump(process.stderr, "stderr"))
        try:
            await asyncio.wait_for(
                asyncio.shield(pumps), timeout / 1000 if timeout else None
            )
            returncode = await process.wait()
        except asyncio.TimeoutError:
            self._kill()
            pumps.cancel()
            raise EngineError(f"ffmpeg command timed out after {timeout / 1000:.0f} seconds.")
        except asyncio.CancelledError:
            self._kill()
            pumps.cancel()
            raise
        finally:
            self._process = None

        duration_ms = int((time.perf_counter() - start) * 1000)
        if returncode != 0:
            raise EngineError(
                f"ffmpeg command failed (exit {returncode}).\n\n"
                f"STDERR:\n" + "\n".join(stderr_tail),
                context={"command": " ".join(cmd), "render_ms": duration_ms},
            )
        logger.debug(f"ffmpeg finished in {duration_ms}ms")
        return returncode

    async def write_file(self, name: str, data: bytes) -> None:
        await asyncio.to_thread(self._resolve(name).write_bytes, data)

    async def read_file(self, name: str) -> bytes:
        return await asyncio.to_thread(self._resolve(name).read_bytes)

    async def delete_file(self, name: str) -> None:
        path = self._resolve(name)
        await asyncio.to_thread(path.unlink)

    def _kill(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def terminate(self) -> None:
        self._kill()
        self._process = None
        if self._work_dir is not None:
            shutil.rmtree(self._work_dir, ignore_errors=True)
            logger.debug(f"🧹 Removed engine work dir {self._work_dir}")
        self._work_dir = None
        self._loaded = False
