"""Configuration settings for vid2anim."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .error_handling import ConfigurationError


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", cause=e)


@dataclass
class EngineConfig:
    """Configuration for engine binary paths with environment variable overrides."""

    # Path to FFmpeg executable.
    # Usually "ffmpeg" works if installed via package manager
    # Override with: VID2ANIM_FFMPEG_PATH
    FFMPEG_PATH: str = "ffmpeg"

    # Path to FFprobe executable (companion to FFmpeg).
    # Override with: VID2ANIM_FFPROBE_PATH
    FFPROBE_PATH: str = "ffprobe"

    # Working directory root for engine scratch space (None = system temp dir)
    # Override with: VID2ANIM_WORK_DIR
    WORK_DIR: str | None = None

    def __post_init__(self) -> None:
        """Apply environment variable overrides after initialization."""
        env_overrides = {
            "FFMPEG_PATH": "VID2ANIM_FFMPEG_PATH",
            "FFPROBE_PATH": "VID2ANIM_FFPROBE_PATH",
            "WORK_DIR": "VID2ANIM_WORK_DIR",
        }

        for attr_name, env_var_name in env_overrides.items():
            env_value = os.getenv(env_var_name)
            if env_value:
                setattr(self, attr_name, env_value)


@dataclass
class StrategyConfig:
    """Tuning for the strategy registry and history store.

    The override threshold and recent-failure window have no derivation
    behind them; they are exposed here so deployments can tune them.
    """

    # Ring buffer capacity for conversion records (oldest evicted first)
    MAX_RECORDS: int = 50

    # Records on a path needed before history confidence can reach 1.0
    HIGH_CONFIDENCE_THRESHOLD: int = 5

    # Minimum history confidence for the historical override to win
    # Override with: VID2ANIM_HISTORY_CONFIDENCE_THRESHOLD
    HISTORY_CONFIDENCE_THRESHOLD: float = 0.6

    # Number of most recent records inspected for failure avoidance
    # Override with: VID2ANIM_RECENT_FAILURE_WINDOW
    RECENT_FAILURE_WINDOW: int = 3

    # Failures (with zero successes) inside the window that demote a path
    RECENT_FAILURE_LIMIT: int = 2

    # Snapshot schema version; a mismatch on load discards the snapshot
    SNAPSHOT_VERSION: int = 2

    # Optional snapshot location (None = in-memory only)
    # Override with: VID2ANIM_HISTORY_PATH
    HISTORY_SNAPSHOT_PATH: Path | None = None

    def __post_init__(self) -> None:
        threshold = _env_float("VID2ANIM_HISTORY_CONFIDENCE_THRESHOLD")
        if threshold is not None:
            self.HISTORY_CONFIDENCE_THRESHOLD = threshold
        window = _env_float("VID2ANIM_RECENT_FAILURE_WINDOW")
        if window is not None:
            self.RECENT_FAILURE_WINDOW = int(window)
        history_path = os.getenv("VID2ANIM_HISTORY_PATH")
        if history_path:
            self.HISTORY_SNAPSHOT_PATH = Path(history_path)
        if isinstance(self.HISTORY_SNAPSHOT_PATH, str):
            self.HISTORY_SNAPSHOT_PATH = Path(self.HISTORY_SNAPSHOT_PATH)

        if self.MAX_RECORDS < 1:
            raise ConfigurationError(f"MAX_RECORDS must be >= 1, got {self.MAX_RECORDS}")
        if self.HIGH_CONFIDENCE_THRESHOLD < 1:
            raise ConfigurationError(
                f"HIGH_CONFIDENCE_THRESHOLD must be >= 1, got {self.HIGH_CONFIDENCE_THRESHOLD}"
            )
        if not 0.0 <= self.HISTORY_CONFIDENCE_THRESHOLD <= 1.0:
            raise ConfigurationError(
                "HISTORY_CONFIDENCE_THRESHOLD must be within [0, 1], "
                f"got {self.HISTORY_CONFIDENCE_THRESHOLD}"
            )
        if self.RECENT_FAILURE_WINDOW < 1:
            raise ConfigurationError(
                f"RECENT_FAILURE_WINDOW must be >= 1, got {self.RECENT_FAILURE_WINDOW}"
            )


@dataclass
class MonitoringConfig:
    """Watchdog, log-silence and heartbeat timings."""

    # How often the watchdog compares time-since-progress to the timeout
    WATCHDOG_CHECK_INTERVAL_MS: int = 10_000

    # Base stall timeout; WebP gets a longer base (libwebp is slow on VP9 input)
    WATCHDOG_STALL_TIMEOUT_MS: int = 90_000
    WATCHDOG_WEBP_BASE_TIMEOUT_MS: int = 360_000

    # Upper bound for the adaptive timeout
    WATCHDOG_MAX_TIMEOUT_MS: int = 600_000

    # Log silence detection
    LOG_SILENCE_CHECK_INTERVAL_MS: int = 10_000
    LOG_SILENCE_TIMEOUT_MS: int = 30_000
    LOG_SILENCE_MAX_STRIKES: int = 3

    # Synthetic progress
    HEARTBEAT_INTERVAL_MS: int = 5_000
    HEARTBEAT_MAX_PROGRESS: int = 99

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value <= 0:
                raise ConfigurationError(f"{f.name} must be positive, got {value}")
        if self.HEARTBEAT_MAX_PROGRESS >= 100:
            raise ConfigurationError("HEARTBEAT_MAX_PROGRESS must stay below 100")


@dataclass
class LifecycleConfig:
    """Engine lifecycle timings and buffer sizes."""

    # Minimum time between relayed progress emissions
    PROGRESS_THROTTLE_MS: int = 220

    # Termination handling
    TERMINATION_SETTLE_MS: int = 200
    TERMINATION_CHECK_INTERVAL_MS: int = 100
    MAX_TERMINATION_WAIT_MS: int = 5_000

    # Recent engine log lines kept for diagnostics
    LOG_BUFFER_SIZE: int = 100

    # Metadata probe limit
    VIDEO_ANALYSIS_TIMEOUT_MS: int = 30_000


@dataclass
class CacheConfig:
    """Engine file-space names, input TTLs and output validation limits."""

    INPUT_FILE_NAME: str = "input.mp4"
    PALETTE_FILE_NAME: str = "palette.png"

    # Staged input eviction (shortened after a conversion finishes)
    INPUT_CACHE_TTL_MS: int = 120_000
    INPUT_CACHE_POST_CONVERT_MS: int = 60_000

    # Smallest plausible encoded outputs
    MIN_GIF_SIZE_BYTES: int = 35
    MIN_WEBP_SIZE_BYTES: int = 30


FFMPEG_CORE_VERSION = "0.12.6"


@dataclass
class PrefetchConfig:
    """Mirrors and retry policy for engine asset prefetch."""

    MIRRORS: list[str] | None = None
    ASSETS: list[str] | None = None
    MAX_RETRIES: int = 2
    RETRY_BACKOFF_MS: int = 500
    REQUEST_TIMEOUT_S: float = 90.0

    # Override with: VID2ANIM_ASSET_DIR
    ASSET_DIR: Path | None = None

    def __post_init__(self) -> None:
        if self.MIRRORS is None:
            self.MIRRORS = [
                f"https://cdn.jsdelivr.net/npm/@ffmpeg/core-mt@{FFMPEG_CORE_VERSION}/dist/esm",
                f"https://unpkg.com/@ffmpeg/core-mt@{FFMPEG_CORE_VERSION}/dist/esm",
            ]
        if self.ASSETS is None:
            self.ASSETS = ["ffmpeg-core.js", "ffmpeg-core.wasm", "ffmpeg-core.worker.js"]

        asset_dir = os.getenv("VID2ANIM_ASSET_DIR")
        if asset_dir:
            self.ASSET_DIR = Path(asset_dir)
        if self.ASSET_DIR is None:
            self.ASSET_DIR = Path.home() / ".cache" / "vid2anim" / "assets"
        elif isinstance(self.ASSET_DIR, str):
            self.ASSET_DIR = Path(self.ASSET_DIR)

        if self.MAX_RETRIES < 0:
            raise ConfigurationError(f"MAX_RETRIES must be >= 0, got {self.MAX_RETRIES}")


# Quality tier presets per output format
QUALITY_PRESETS: dict[str, dict[str, dict[str, Any]]] = {
    "gif": {
        "low": {"fps": 10, "colors": 128},
        "medium": {"fps": 15, "colors": 256},
        "high": {"fps": 24, "colors": 256},
    },
    "webp": {
        "low": {"fps": 10, "quality": 70, "preset": "default", "compression_level": 3, "method": 4},
        "medium": {"fps": 15, "quality": 85, "preset": "default", "compression_level": 4, "method": 5},
        "high": {"fps": 24, "quality": 95, "preset": "default", "compression_level": 6, "method": 6},
    },
}

# Progress sub-ranges (0-100) per pipeline stage
PROGRESS_RANGES: dict[str, dict[str, int]] = {
    "gif": {
        "start": 0,
        "palette_start": 10,
        "palette_end": 40,
        "conversion_start": 40,
        "conversion_end": 90,
        "complete": 100,
    },
    "webp": {
        "start": 0,
        "conversion_start": 10,
        "conversion_end": 90,
        "complete": 100,
    },
    "frames": {
        "encode_start": 10,
        "palette_end": 70,
        "encode_end": 90,
        "complete": 100,
    },
}

# Per-command execution timeouts: min(base + seconds * multiplier, max)
TIMEOUT_CONFIG: dict[str, dict[str, int]] = {
    "gif": {"base_timeout": 60_000, "per_second_multiplier": 2_000, "max_timeout": 300_000},
    "webp": {"base_timeout": 90_000, "per_second_multiplier": 3_000, "max_timeout": 600_000},
    "mp4": {"base_timeout": 60_000, "per_second_multiplier": 1_500, "max_timeout": 300_000},
}

DEFAULT_TIMEOUT_MS = 120_000


@dataclass
class AppConfig:
    """Bundle of every component configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    prefetch: PrefetchConfig = field(default_factory=PrefetchConfig)


_SECTIONS: dict[str, type] = {
    "engine": EngineConfig,
    "strategy": StrategyConfig,
    "monitoring": MonitoringConfig,
    "lifecycle": LifecycleConfig,
    "cache": CacheConfig,
    "prefetch": PrefetchConfig,
}


def build_config(overrides: dict[str, Any] | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from a nested ``{section: {FIELD: value}}`` dict."""
    overrides = overrides or {}
    unknown_sections = set(overrides) - set(_SECTIONS)
    if unknown_sections:
        raise ConfigurationError(
            f"Unknown config section(s): {', '.join(sorted(unknown_sections))}"
        )

    sections: dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        values = overrides.get(name) or {}
        if not isinstance(values, dict):
            raise ConfigurationError(f"Config section '{name}' must be a mapping")
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown key(s) in '{name}': {', '.join(sorted(unknown))}"
            )
        try:
            sections[name] = cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid '{name}' configuration: {e}", cause=e)
    return AppConfig(**sections)


def load_config_file(path: Path) -> AppConfig:
    """Load YAML overrides from *path* into an :class:`AppConfig`."""
    import yaml

    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read config file {path}", cause=e)

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping at top level")
    return build_config(data)


DEFAULT_ENGINE_CONFIG = EngineConfig()
DEFAULT_STRATEGY_CONFIG = StrategyConfig()
DEFAULT_MONITORING_CONFIG = MonitoringConfig()
DEFAULT_LIFECYCLE_CONFIG = LifecycleConfig()
DEFAULT_CACHE_CONFIG = CacheConfig()
