"""Timeout calculation for engine commands and the stall watchdog."""

from __future__ import annotations

import logging
import math

from .config import DEFAULT_TIMEOUT_MS, TIMEOUT_CONFIG, MonitoringConfig
from .models import ConversionFormat, Quality, VideoMetadata

logger = logging.getLogger(__name__)

# Reference resolution for the watchdog resolution factor (720p)
_REFERENCE_PIXELS = 1280 * 720
_MAX_RESOLUTION_FACTOR = 4.0
# Clips up to this length get no duration allowance
_DURATION_GRACE_SECONDS = 30.0

_QUALITY_FACTORS: dict[Quality, float] = {
    Quality.LOW: 1.0,
    Quality.MEDIUM: 1.25,
    Quality.HIGH: 1.5,
}


def _format_key(fmt: ConversionFormat | str) -> str:
    return (fmt.value if isinstance(fmt, ConversionFormat) else str(fmt)).lower()


def calculate_timeout(fmt: ConversionFormat | str, duration_ms: float) -> int:
    """Return ``min(base + seconds * multiplier, max)`` for *fmt*, in milliseconds.

    Raises:
        ValueError: If *duration_ms* is negative or not finite.
    """
    if not math.isfinite(duration_ms) or duration_ms < 0:
        raise ValueError(f"Invalid duration_ms: {duration_ms}. Must be a non-negative number.")

    key = _format_key(fmt)
    config = TIMEOUT_CONFIG.get(key)
    if config is None:
        logger.warning(f"⚠️  No timeout config for format '{key}', using default")
        return DEFAULT_TIMEOUT_MS

    seconds = duration_ms / 1000
    adaptive = config["base_timeout"] + seconds * config["per_second_multiplier"]
    final = int(min(adaptive, config["max_timeout"]))
    logger.debug(
        f"⏱️  Adaptive timeout for {key}: {final / 1000:.1f}s (duration {seconds:.1f}s)"
    )
    return final


def get_timeout_for_format(fmt: ConversionFormat | str, duration_ms: float | None = None) -> int:
    """Adaptive timeout when the duration is known, otherwise the format's base timeout."""
    if duration_ms is not None and math.isfinite(duration_ms) and duration_ms > 0:
        return calculate_timeout(fmt, duration_ms)

    config = TIMEOUT_CONFIG.get(_format_key(fmt))
    if config is None:
        return DEFAULT_TIMEOUT_MS
    return config["base_timeout"]


def calculate_adaptive_watchdog_timeout(
    base_timeout_ms: int,
    metadata: VideoMetadata | None = None,
    quality: Quality | None = None,
    config: MonitoringConfig | None = None,
) -> int:
    """Scale the stall timeout by duration, resolution and quality.

    Each factor is >= 1 and non-decreasing in its input, so the result never
    shrinks as inputs grow. The result is capped at ``WATCHDOG_MAX_TIMEOUT_MS``.
    """
    config = config or MonitoringConfig()

    duration_factor = 1.0
    resolution_factor = 1.0
    if metadata is not None:
        if metadata.duration and metadata.duration > 0:
            duration_factor += max(0.0, metadata.duration - _DURATION_GRACE_SECONDS) / 60.0
        pixels = metadata.width * metadata.height
        if pixels > 0:
            resolution_factor = min(
                max(1.0, pixels / _REFERENCE_PIXELS), _MAX_RESOLUTION_FACTOR
            )

    quality_factor = _QUALITY_FACTORS.get(quality, 1.0) if quality else 1.0

    timeout = base_timeout_ms * duration_factor * resolution_factor * quality_factor
    return int(min(max(timeout, base_timeout_ms), config.WATCHDOG_MAX_TIMEOUT_MS))
