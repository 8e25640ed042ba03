"""Core data types shared by the conversion orchestration components.

Every entity that crosses a component boundary is a closed dataclass or Enum
so that codec matching and path selection can be expressed over known values
instead of loose dictionaries.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

MAX_ERROR_MESSAGE_LENGTH = 500


class ConversionFormat(Enum):
    """Output container requested by the caller."""

    GIF = "gif"
    WEBP = "webp"
    MP4 = "mp4"

    @property
    def mime_type(self) -> str:
        return {
            ConversionFormat.GIF: "image/gif",
            ConversionFormat.WEBP: "image/webp",
            ConversionFormat.MP4: "video/mp4",
        }[self]


class ConversionPath(Enum):
    """Execution strategy used to produce the output."""

    GPU = "gpu"
    CPU = "cpu"
    WEBAV = "webav"
    HYBRID = "hybrid"


class FailurePhase(Enum):
    """Stage in which a failed attempt broke down."""

    DECODE = "decode"
    ENCODE = "encode"
    OTHER = "other"


class Quality(Enum):
    """Quality tier controlling presets, dithering and scale filters."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContainerFormat(Enum):
    """Input container family detected from the file name."""

    MP4 = "mp4"
    MOV = "mov"
    M4V = "m4v"
    WEBM = "webm"
    MKV = "mkv"
    AVI = "avi"
    WMV = "wmv"
    UNKNOWN = "unknown"


class Confidence(Enum):
    """Qualitative confidence label attached to a strategy decision."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def downgrade(self) -> Confidence:
        """Lower confidence one level; only ``high`` moves (to ``medium``)."""
        if self is Confidence.HIGH:
            return Confidence.MEDIUM
        return self


# ---------------------------------------------------------------------------
# History records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversionRecord:
    """A single conversion attempt reported back by the caller."""

    codec: str
    format: ConversionFormat
    path: ConversionPath
    duration_ms: float
    success: bool
    timestamp: float
    error_message: str | None = None
    failure_phase: FailurePhase | None = None

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            raise ValueError(f"duration_ms must be >= 0, got {self.duration_ms}")
        if self.error_message and len(self.error_message) > MAX_ERROR_MESSAGE_LENGTH:
            object.__setattr__(
                self, "error_message", self.error_message[:MAX_ERROR_MESSAGE_LENGTH]
            )
        if self.success and self.failure_phase is not None:
            object.__setattr__(self, "failure_phase", None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "codec": self.codec,
            "format": self.format.value,
            "path": self.path.value,
            "durationMs": self.duration_ms,
            "success": self.success,
            "errorMessage": self.error_message,
            "failurePhase": self.failure_phase.value if self.failure_phase else None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversionRecord:
        phase = data.get("failurePhase")
        return cls(
            codec=data["codec"],
            format=ConversionFormat(data["format"]),
            path=ConversionPath(data["path"]),
            duration_ms=float(data["durationMs"]),
            success=bool(data["success"]),
            timestamp=float(data["timestamp"]),
            error_message=data.get("errorMessage"),
            failure_phase=FailurePhase(phase) if phase else None,
        )


@dataclass(frozen=True)
class PathStatistics:
    """Aggregate outcome statistics for one execution path."""

    count: int
    success_count: int
    success_rate: float
    avg_duration_ms: float


@dataclass(frozen=True)
class ConversionHistory:
    """All records for one normalized (codec, format) pair plus summary stats."""

    codec: str
    format: ConversionFormat
    records: tuple[ConversionRecord, ...]
    total_conversions: int
    success_rate: float
    avg_duration_ms: float
    preferred_path: ConversionPath


@dataclass(frozen=True)
class RecommendedPath:
    """History-derived path recommendation. Computed fresh per query."""

    path: ConversionPath
    confidence: float
    based_on_records: int
    avg_duration_ms: float


# ---------------------------------------------------------------------------
# Strategy types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Benchmarks:
    avg_time_seconds: float
    success_rate: float


@dataclass(frozen=True)
class CodecPathPreference:
    """Reference preference for a (codec, format) pair."""

    codec: str
    format: ConversionFormat
    preferred_path: ConversionPath
    fallback_path: ConversionPath
    reason: str
    benchmarks: Benchmarks | None = None


@dataclass(frozen=True)
class StrategyDecision(CodecPathPreference):
    """A preference with a confidence label, as returned by the registry."""

    confidence: Confidence = Confidence.MEDIUM

    @property
    def path(self) -> ConversionPath:
        return self.preferred_path


@dataclass(frozen=True)
class RejectedAlternative:
    path: ConversionPath
    rejection_reason: str


@dataclass(frozen=True)
class StrategyReasoning:
    """Diagnostic breakdown of a strategy decision."""

    decision: ConversionPath
    factors: dict[str, Any]
    alternatives_considered: tuple[RejectedAlternative, ...]


# ---------------------------------------------------------------------------
# Environment descriptors
# ---------------------------------------------------------------------------


@dataclass
class Capabilities:
    """Decode/encode capability descriptor for the current device.

    Per-codec booleans describe whether the accelerated decode path can handle
    the codec. Hardware decode hints are tri-state: ``None`` means unknown.
    """

    h264: bool = False
    hevc: bool = False
    av1: bool = False
    vp8: bool = False
    vp9: bool = False
    webcodecs_decode: bool = False
    mp4_encode: bool = False
    webp_encode: bool = True
    gif_encode: bool = True
    hardware_accelerated: bool = False
    h264_hardware_decode: bool | None = None
    hevc_hardware_decode: bool | None = None
    av1_hardware_decode: bool | None = None
    vp8_hardware_decode: bool | None = None
    vp9_hardware_decode: bool | None = None
    core_count: int = 2


@dataclass
class EngineEnvironment:
    """Execution context preconditions checked before engine initialization."""

    shared_memory: bool
    isolated: bool
    engine_path: str | None = None

    @property
    def can_use_multithreading(self) -> bool:
        return self.shared_memory and self.isolated


@dataclass
class VideoMetadata:
    """Probe results parsed from the engine's diagnostic output."""

    width: int = 0
    height: int = 0
    duration: float = 0.0
    codec: str = "unknown"
    framerate: float = 0.0
    bitrate: int = 0

    @property
    def total_pixels(self) -> float:
        return self.width * self.height * self.framerate * self.duration


@dataclass
class ConversionOptions:
    quality: Quality = Quality.MEDIUM
    scale: float = 1.0
    duration: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.quality, str):
            self.quality = Quality(self.quality)
        if not 0 < self.scale <= 1.0:
            raise ValueError(f"scale must be in (0, 1], got {self.scale}")


@dataclass
class ConversionOutput:
    """Encoded output bytes plus their MIME type."""

    data: bytes
    format: ConversionFormat

    @property
    def mime_type(self) -> str:
        return self.format.mime_type

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class InputFile:
    """A video file to stage into the engine's file space.

    ``read`` is called lazily so that cache hits never touch the bytes.
    """

    name: str
    size: int
    last_modified: float
    read: Callable[[], bytes] = field(repr=False)

    @classmethod
    def from_path(cls, path: Path) -> InputFile:
        stat = os.stat(path)
        return cls(
            name=path.name,
            size=stat.st_size,
            last_modified=stat.st_mtime,
            read=path.read_bytes,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, last_modified: float = 0.0) -> InputFile:
        return cls(name=name, size=len(data), last_modified=last_modified, read=lambda: data)


@dataclass(frozen=True)
class LogEntry:
    """A diagnostic line emitted by the engine."""

    type: str
    message: str


@dataclass(frozen=True)
class ProgressEvent:
    """Engine-reported progress as a 0..1 ratio."""

    ratio: float


class CancellationToken:
    """Cooperative cancellation flag passed into long-running calls."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
