"""Engine file-space cache for staged inputs, frames and intermediates.

The cache is the single owner of what it believes lives in the engine's file
space. A staged input is reused across conversions of the same file (keyed by
name, size and modification time) and evicted by a TTL timer. The timer is
suspended while a conversion holds the input and shortened once it finishes.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from PIL import Image

from .config import CacheConfig
from .engine import EngineHandle
from .error_handling import (
    ConversionValidationError,
    EngineError,
    OutputValidationError,
    error_context,
)
from .models import ConversionFormat, InputFile

logger = logging.getLogger(__name__)

_JPEG_MAGIC = b"\xff\xd8\xff"


@dataclass
class CacheEntry:
    key: str
    timer: asyncio.TimerHandle | None = None
    held: bool = False


@dataclass(frozen=True)
class OutputValidationResult:
    valid: bool
    reason: str | None = None


def _frame_extension(frame: Image.Image | bytes) -> str:
    if isinstance(frame, Image.Image):
        return "png"
    if bytes(frame[:3]) == _JPEG_MAGIC:
        return "jpeg"
    return "png"


def _encode_frame(frame: Image.Image | bytes) -> bytes:
    if isinstance(frame, Image.Image):
        buffer = io.BytesIO()
        frame.save(buffer, format="PNG")
        return buffer.getvalue()
    return bytes(frame)


class ResourceCache:
    """Tracks staged files in one engine's file space."""

    def __init__(self, config: CacheConfig | None = None) -> None:
        self.config = config or CacheConfig()
        self._entry: CacheEntry | None = None
        self._known_files: set[str] = set()
        self._eviction_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def input_name(self) -> str:
        return self.config.INPUT_FILE_NAME

    @property
    def palette_name(self) -> str:
        return self.config.PALETTE_FILE_NAME

    @property
    def staged_key(self) -> str | None:
        return self._entry.key if self._entry else None

    @property
    def known_files(self) -> frozenset[str]:
        return frozenset(self._known_files)

    def has_file(self, name: str) -> bool:
        return name in self._known_files

    @staticmethod
    def cache_key(file: InputFile) -> str:
        return f"{file.name}-{file.size}-{file.last_modified}"

    # ------------------------------------------------------------------
    # Input staging
    # ------------------------------------------------------------------

    async def ensure_input_staged(
        self, engine: EngineHandle, file: InputFile, hold: bool = False
    ) -> None:
        """Write *file* as the engine input unless the same file is already staged.

        With ``hold=True`` the TTL timer stays suspended until
        :meth:`cleanup_after_conversion` re-arms it.
        """
        key = self.cache_key(file)
        if self._entry is not None and self._entry.key == key and self.input_name in self._known_files:
            logger.debug(f"💾 Input cache hit for {file.name}")
            self._hold_or_arm(engine, hold)
            return

        if self._entry is not None or self.input_name in self._known_files:
            await self._delete_quietly(engine, self.input_name)
            self._known_files.discard(self.input_name)
            self._cancel_timer()
            self._entry = None

        with error_context("stage input", EngineError, context={"file": file.name}, logger=logger):
            data = await asyncio.to_thread(file.read)
            await engine.write_file(self.input_name, data)
        self._known_files.add(self.input_name)
        self._entry = CacheEntry(key=key)
        self._hold_or_arm(engine, hold)
        logger.debug(f"💾 Staged {file.name} ({len(data)} bytes) as {self.input_name}")

    @property
    def input_held(self) -> bool:
        return self._entry is not None and self._entry.held

    def _hold_or_arm(self, engine: EngineHandle, hold: bool) -> None:
        if hold:
            self._cancel_timer()
            self._entry.held = True
        elif not self._entry.held:
            self._arm_timer(engine, self.config.INPUT_CACHE_TTL_MS)

    def _arm_timer(self, engine: EngineHandle, ttl_ms: int) -> None:
        if self._entry is None:
            return
        self._entry.held = False
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._entry.timer = loop.call_later(ttl_ms / 1000, self._on_ttl_expired, engine)

    def _cancel_timer(self) -> None:
        if self._entry is not None and self._entry.timer is not None:
            self._entry.timer.cancel()
            self._entry.timer = None

    def _on_ttl_expired(self, engine: EngineHandle) -> None:
        if self._entry is not None:
            self._entry.timer = None
        if self.input_held:
            return
        logger.debug("⏱️  Staged input TTL expired, evicting")
        self._eviction_task = asyncio.ensure_future(self.evict_input(engine))

    async def evict_input(self, engine: EngineHandle) -> None:
        """Remove the staged input from the engine and forget its key."""
        self._cancel_timer()
        if self.input_name in self._known_files:
            await self._delete_quietly(engine, self.input_name)
        self._known_files.discard(self.input_name)
        self._entry = None

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    async def stage_frames(
        self, engine: EngineHandle, frames: Sequence[Image.Image | bytes]
    ) -> list[str]:
        """Write frames as ``frame_%06d.<ext>`` and return the staged names."""
        extensions = {_frame_extension(frame) for frame in frames}
        if len(extensions) > 1:
            raise ConversionValidationError("Frame sequence mixes PNG and JPEG frames")

        names: list[str] = []
        for index, frame in enumerate(frames):
            name = f"frame_{index:06d}.{_frame_extension(frame)}"
            data = await asyncio.to_thread(_encode_frame, frame)
            await engine.write_file(name, data)
            self._known_files.add(name)
            names.append(name)
        logger.debug(f"💾 Staged {len(names)} frames")
        return names

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def validate_output(self, data: bytes, fmt: ConversionFormat | str) -> OutputValidationResult:
        """Check size and signature of encoded output. Never raises."""
        try:
            fmt = ConversionFormat(fmt)
            size = len(data)
            if fmt is ConversionFormat.GIF:
                if size < self.config.MIN_GIF_SIZE_BYTES:
                    return OutputValidationResult(False, f"GIF output too small ({size} bytes)")
                if not bytes(data[:4]) == b"GIF8":
                    return OutputValidationResult(False, "GIF output is missing the GIF8 signature")
                return OutputValidationResult(True)
            if fmt is ConversionFormat.WEBP:
                if size < self.config.MIN_WEBP_SIZE_BYTES:
                    return OutputValidationResult(False, f"WebP output too small ({size} bytes)")
                if bytes(data[0:4]) != b"RIFF" or bytes(data[8:12]) != b"WEBP":
                    return OutputValidationResult(False, "WebP output is missing the RIFF/WEBP header")
                return OutputValidationResult(True)
            if size == 0:
                return OutputValidationResult(False, "Output is empty")
            return OutputValidationResult(True)
        except Exception as e:
            return OutputValidationResult(False, f"Output validation error: {e}")

    async def read_validated_output(
        self, engine: EngineHandle, name: str, fmt: ConversionFormat
    ) -> bytes:
        with error_context("read engine output", EngineError, context={"file": name}, logger=logger):
            data = await engine.read_file(name)
        result = self.validate_output(data, fmt)
        if not result.valid:
            raise OutputValidationError(
                f"Output validation failed: {result.reason}",
                context={"file": name, "format": fmt.value, "size": len(data)},
            )
        return data

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _delete_quietly(self, engine: EngineHandle, name: str) -> None:
        try:
            await engine.delete_file(name)
        except FileNotFoundError:
            logger.debug(f"🧹 {name} already absent")
        except Exception as e:
            logger.warning(f"🧹 Failed to delete {name} (ignored): {e}")

    async def cleanup_after_conversion(
        self,
        engine: EngineHandle,
        output_name: str,
        extra_names: Iterable[str] = (),
        aggressive: bool = False,
    ) -> None:
        """Delete outputs and intermediates, then shorten or drop the input TTL."""
        names = [output_name, *extra_names]
        await asyncio.gather(*(self._delete_quietly(engine, name) for name in names))
        self._known_files.difference_update(names)

        if aggressive:
            await self.evict_input(engine)
        else:
            self._arm_timer(engine, self.config.INPUT_CACHE_POST_CONVERT_MS)

    async def clear(self, engine: EngineHandle) -> None:
        """Delete every known file and reset the cache."""
        self._cancel_timer()
        names = sorted(self._known_files)
        await asyncio.gather(*(self._delete_quietly(engine, name) for name in names))
        self._known_files.clear()
        self._entry = None

    def reset(self) -> None:
        """Forget all state without touching the engine (after engine termination)."""
        self._cancel_timer()
        self._known_files.clear()
        self._entry = None
