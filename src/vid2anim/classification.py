"""Best-effort classification of conversion failures.

Classification runs on error paths, so it must never raise: malformed input
degrades to the ``general`` category.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .models import VideoMetadata

logger = logging.getLogger(__name__)

MAX_TOTAL_PIXEL_COUNT = 500_000_000


@dataclass
class ErrorContext:
    """Structured description of a failed conversion."""

    type: str
    original_error: str
    suggestion: str
    phase: str = "unknown"
    settings: dict[str, Any] | None = None
    logs: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "phase": self.phase,
            "suggestion": self.suggestion,
            "original_error": self.original_error,
            "settings": self.settings,
            "timestamp": self.timestamp,
        }


def _contains_any(text: str, needles: Sequence[str]) -> bool:
    return any(needle in text for needle in needles)


def _logs_mention(logs: Sequence[str], needle: str) -> bool:
    return any(needle in str(line).lower() for line in logs)


def _classify(
    error_message: str,
    metadata: VideoMetadata | None,
    settings: dict[str, Any] | None,
    logs: list[str],
) -> ErrorContext:
    message = error_message.lower()

    def build(kind: str, suggestion: str, phase: str = "unknown") -> ErrorContext:
        return ErrorContext(
            type=kind,
            phase=phase,
            suggestion=suggestion,
            original_error=error_message,
            settings=settings,
            logs=logs,
        )

    if _contains_any(message, ("timed out", "90s", "hung")):
        stalled = "stalled" in message
        return build(
            "timeout",
            (
                "The conversion stalled without progress updates. Try quality 'low' or scale 0.5."
                if stalled
                else "The conversion took too long. Try quality 'low', scale 0.5 or a shorter clip."
            ),
            phase="watchdog_timeout" if stalled else "ffmpeg_timeout",
        )

    if _contains_any(message, ("memory", "abort", "stack overflow")):
        return build(
            "memory",
            "The engine ran out of memory. Try a smaller file, quality 'low' or a lower scale.",
        )

    if _contains_any(
        message, ("webcodecs", "hardware acceleration", "frame callback", "media capabilities")
    ):
        return build(
            "codec",
            "Hardware decoding is not available for this codec. Fall back to the CPU path.",
            phase="webcodecs_decode_failure",
        )

    if _contains_any(
        message,
        ("codec", "unsupported", "not found", "function not implemented", "decoder", "decode"),
    ):
        metadata_codec = (metadata.codec if metadata else "") or ""
        is_av1 = (
            _contains_any(metadata_codec.lower(), ("av1", "av01"))
            or _contains_any(message, ("av1", "av01"))
            or _logs_mention(logs, "av1")
            or _logs_mention(logs, "av01")
        )
        if is_av1 and ("gif" in message or _logs_mention(logs, "gif")):
            return build(
                "codec",
                "Converting AV1 video to GIF hit a compatibility issue. Retry on the GPU path.",
                phase="av1_gif_conversion_failure",
            )
        if is_av1:
            return build(
                "codec",
                "AV1 requires hardware decode support. Try quality 'low' or a lower scale.",
                phase="av1_decode_failure",
            )
        return build(
            "codec",
            "The video codec is not supported. Convert the video to H.264/MP4 first.",
            phase="codec_error",
        )

    if _contains_any(message, ("webp", "libwebp")):
        return build("format", "WebP conversion failed. Try GIF, or lower quality/scale.")

    if "avif" in message:
        return build("format", "AVIF conversion failed. Try WebP or GIF instead.")

    if _contains_any(
        message, ("worker", "thread", "cors", "cross-origin", "sharedarraybuffer")
    ):
        return build(
            "general",
            "Threading or isolation issue in the execution environment. Retry the conversion.",
        )

    if metadata is not None and metadata.total_pixels > MAX_TOTAL_PIXEL_COUNT:
        return build(
            "memory",
            "The video is too complex (very high total pixel count). Lower quality, scale or length.",
        )

    return build(
        "general",
        "An unexpected error occurred. Try quality 'low', scale 0.5 or a different file.",
    )


def classify_conversion_error(
    error_message: Any,
    metadata: VideoMetadata | None = None,
    settings: dict[str, Any] | None = None,
    logs: Sequence[str] | None = None,
) -> ErrorContext:
    """Classify a raw engine error message into an :class:`ErrorContext`.

    Never raises; malformed inputs yield a ``general`` classification.
    """
    text = "unknown error"
    try:
        text = error_message if isinstance(error_message, str) else str(error_message)
        log_list = [str(line) for line in logs] if logs else []
        return _classify(text, metadata, settings, log_list)
    except Exception as e:
        logger.debug(f"Error classification failed, using general: {e}")
        return ErrorContext(
            type="general",
            original_error=text,
            suggestion="An unexpected error occurred.",
            settings=settings if isinstance(settings, dict) else None,
        )
