from __future__ import annotations

"""Utility helpers for locating FFmpeg and probing what it can do.

These lightweight checks run *before* the engine loads so that a missing
binary or an unusable scratch directory fails fast with an explicit message.
The capability probe is intentionally shallow: it reads the codec, encoder and
hwaccel listings FFmpeg prints and maps them onto :class:`Capabilities`.
"""

import logging
import os
import platform
import re
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from shutil import which

import psutil

from .models import Capabilities, EngineEnvironment

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolInfo:
    """Metadata for an external binary discovered on the system."""

    name: str
    available: bool
    version: str | None = None

    def require(self) -> None:
        """Raise *RuntimeError* if the tool isn't available."""
        if not self.available:
            raise RuntimeError(
                f"Required tool '{self.name}' not found in PATH.\n"
                "📖 Install FFmpeg or set VID2ANIM_FFMPEG_PATH to its location."
            )


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _which(cmd: str) -> str | None:
    """Return full path if *cmd* is executable in $PATH, else *None*."""
    return which(cmd)


def _extract_version(output: str, pattern: str) -> str | None:
    match = re.search(pattern, output)
    if match:
        return match.group(1)
    return None


def _run_version_cmd(cmd: list[str], regex: str) -> str | None:
    try:
        completed = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError):
        return None

    version = _extract_version(completed.stdout, regex) or _extract_version(
        completed.stderr, regex
    )
    if version:
        return version
    if completed.returncode != 0:
        return None
    return version


def _find_repository_binary(tool_key: str) -> str | None:
    """Find binary in repository bin/<platform>/<arch>/ for the current platform."""
    platform_map = {
        "Darwin": "darwin",
        "Linux": "linux",
        "Windows": "windows",
    }
    arch_map = {
        "x86_64": "x86_64",
        "AMD64": "x86_64",
        "arm64": "arm64",
        "aarch64": "arm64",
    }

    platform_dir = platform_map.get(platform.system())
    arch_dir = arch_map.get(platform.machine())
    if not platform_dir or not arch_dir:
        return None

    current = Path(__file__).parent
    while current.parent != current:
        if any((current / marker).exists() for marker in ["pyproject.toml", ".git"]):
            break
        current = current.parent
    else:
        return None

    binary_name = f"{tool_key}.exe" if platform_dir == "windows" else tool_key
    binary_path = current / "bin" / platform_dir / arch_dir / binary_name
    if binary_path.exists() and os.access(binary_path, os.X_OK):
        return str(binary_path)
    return None


# ---------------------------------------------------------------------------
# Tool discovery
# ---------------------------------------------------------------------------

_FALLBACK_TOOLS: dict[str, list[str]] = {
    "ffmpeg": ["ffmpeg"],
    "ffprobe": ["ffprobe"],
}

_VERSION_PATTERNS: dict[str, str] = {
    "ffmpeg": r"ffmpeg version (\S+)",
    "ffprobe": r"ffprobe version (\S+)",
}

_CONFIG_MAPPING: dict[str, str] = {
    "ffmpeg": "FFMPEG_PATH",
    "ffprobe": "FFPROBE_PATH",
}


def discover_tool(tool_key: str, engine_config=None) -> ToolInfo:
    """Return *ToolInfo* for *tool_key* using configuration and fallback discovery.

    Resolution order: configured path, repository ``bin/`` directory, ``$PATH``.

    Args:
        tool_key: Tool identifier (ffmpeg, ffprobe)
        engine_config: EngineConfig instance (uses DEFAULT_ENGINE_CONFIG if None)
    """
    if tool_key not in _FALLBACK_TOOLS:
        raise ValueError(f"Unknown tool: {tool_key}")

    if engine_config is None:
        from .config import DEFAULT_ENGINE_CONFIG

        engine_config = DEFAULT_ENGINE_CONFIG

    version_regex = _VERSION_PATTERNS.get(tool_key, r"(\d+\.\d+\.\d+)")

    configured_path = getattr(engine_config, _CONFIG_MAPPING[tool_key], None)
    if configured_path and _which(configured_path):
        version = _run_version_cmd([configured_path, "-version"], version_regex)
        return ToolInfo(name=configured_path, available=True, version=version)

    repo_binary_path = _find_repository_binary(tool_key)
    if repo_binary_path:
        version = _run_version_cmd([repo_binary_path, "-version"], version_regex)
        return ToolInfo(name=repo_binary_path, available=True, version=version)

    for candidate in _FALLBACK_TOOLS[tool_key]:
        if _which(candidate):
            version = _run_version_cmd([candidate, "-version"], version_regex)
            return ToolInfo(name=candidate, available=True, version=version)

    return ToolInfo(name=_FALLBACK_TOOLS[tool_key][0], available=False, version=None)


def get_available_tools(engine_config=None) -> dict[str, ToolInfo]:
    """Get availability status for all supported tools without requiring them."""
    return {key: discover_tool(key, engine_config) for key in _CONFIG_MAPPING}


# ---------------------------------------------------------------------------
# Capability probe
# ---------------------------------------------------------------------------

# Decoder listing tokens -> Capabilities attribute
_DECODER_TOKENS: dict[str, tuple[str, ...]] = {
    "h264": ("h264",),
    "hevc": ("hevc",),
    "av1": ("av1", "libdav1d", "libaom-av1"),
    "vp8": ("vp8", "libvpx"),
    "vp9": ("vp9", "libvpx-vp9"),
}

# Hardware decoders advertised as <codec>_<backend> in the decoder listing
_HW_DECODER_SUFFIXES = ("_cuvid", "_qsv", "_v4l2m2m", "_mediacodec", "_videotoolbox")

_LISTING_LINE = re.compile(r"^\s*[A-Z.]{6}\s+(\S+)", re.MULTILINE)


def _list_names(ffmpeg_path: str, flag: str) -> list[str]:
    try:
        completed = subprocess.run(
            [ffmpeg_path, "-hide_banner", flag], capture_output=True, text=True, timeout=10
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"ffmpeg {flag} failed: {e}")
        return []
    if flag == "-hwaccels":
        lines = completed.stdout.splitlines()
        return [line.strip() for line in lines[1:] if line.strip()]
    return _LISTING_LINE.findall(completed.stdout)


def parse_capabilities(
    decoders: list[str], encoders: list[str], hwaccels: list[str], core_count: int
) -> Capabilities:
    """Map FFmpeg listings onto a :class:`Capabilities` descriptor."""
    decoder_set = set(decoders)
    caps = Capabilities(core_count=max(1, core_count))

    for attr, tokens in _DECODER_TOKENS.items():
        setattr(caps, attr, any(token in decoder_set for token in tokens))
        hw_decoders = [f"{attr}{suffix}" for suffix in _HW_DECODER_SUFFIXES]
        if any(name in decoder_set for name in hw_decoders):
            setattr(caps, f"{attr}_hardware_decode", True)
        elif not hwaccels:
            setattr(caps, f"{attr}_hardware_decode", False)

    caps.hardware_accelerated = bool(hwaccels)
    caps.webcodecs_decode = caps.hardware_accelerated
    caps.webp_encode = "libwebp" in encoders or "libwebp_anim" in encoders
    caps.gif_encode = "gif" in encoders
    caps.mp4_encode = any(name in encoders for name in ("libx264", "h264_nvenc", "h264_qsv"))
    return caps


def probe_capabilities(engine_config=None) -> Capabilities:
    """Build a :class:`Capabilities` descriptor from the local FFmpeg build.

    Returns a conservative, CPU-only descriptor when FFmpeg is unavailable.
    """
    core_count = psutil.cpu_count(logical=True) or 2
    ffmpeg = discover_tool("ffmpeg", engine_config)
    if not ffmpeg.available:
        logger.warning("⚠️  FFmpeg not found; reporting CPU-only capabilities")
        return Capabilities(core_count=core_count, webp_encode=False, gif_encode=False)

    return parse_capabilities(
        decoders=_list_names(ffmpeg.name, "-decoders"),
        encoders=_list_names(ffmpeg.name, "-encoders"),
        hwaccels=_list_names(ffmpeg.name, "-hwaccels"),
        core_count=core_count,
    )


def _temp_dir_writable(work_dir: str | None) -> bool:
    try:
        with tempfile.TemporaryDirectory(dir=work_dir):
            return True
    except OSError as e:
        logger.debug(f"Scratch directory not writable: {e}")
        return False


def probe_environment(engine_config=None) -> EngineEnvironment:
    """Describe the local execution context for the lifecycle preflight.

    ``shared_memory`` holds when scratch space is writable and threads are
    available; ``isolated`` holds when a usable FFmpeg binary was found.
    """
    if engine_config is None:
        from .config import DEFAULT_ENGINE_CONFIG

        engine_config = DEFAULT_ENGINE_CONFIG

    ffmpeg = discover_tool("ffmpeg", engine_config)
    threads_ok = threading.active_count() >= 1
    return EngineEnvironment(
        shared_memory=threads_ok and _temp_dir_writable(engine_config.WORK_DIR),
        isolated=ffmpeg.available,
        engine_path=ffmpeg.name if ffmpeg.available else None,
    )
