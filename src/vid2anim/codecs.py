"""Codec and container name helpers.

Codec strings arrive in many spellings (``avc1.64001f``, ``H.264``, ``hev1``,
``av01.0.05M.08``). Everything downstream compares normalized family names.
"""

from __future__ import annotations

from pathlib import PurePath

from .models import ContainerFormat

__all__ = [
    "CODEC_DISPLAY_ALIASES",
    "detect_container",
    "display_codec_name",
    "is_av1_codec",
    "is_blocked_container",
    "is_h264_codec",
    "is_hevc_codec",
    "normalize_codec",
]

# Probe output codec token -> human-readable display name
CODEC_DISPLAY_ALIASES: dict[str, str] = {
    "h264": "H.264",
    "avc": "H.264",
    "h265": "H.265",
    "hevc": "H.265",
    "vp8": "VP8",
    "vp9": "VP9",
    "av1": "AV1",
    "av01": "AV1",
    "prores": "ProRes",
    "dnxhd": "DNxHD",
    "mpeg2video": "MPEG2",
    "mpeg1video": "MPEG1",
    "msmpeg4v2": "MSMPEG4v2",
    "wmv1": "WMV1",
    "wmv2": "WMV2",
    "mjpeg": "MJPEG",
    "png": "PNG",
    "bmp": "BMP",
}

_BLOCKED_CONTAINERS = frozenset({ContainerFormat.AVI, ContainerFormat.WMV})


def _clean(codec: str | None) -> str:
    return (codec or "").strip().lower()


def is_av1_codec(codec: str | None) -> bool:
    c = _clean(codec)
    return c == "av1" or c.startswith("av01") or "av1" in c


def is_h264_codec(codec: str | None) -> bool:
    c = _clean(codec)
    return c in ("h264", "h.264", "h-264") or "avc" in c


def is_hevc_codec(codec: str | None) -> bool:
    c = _clean(codec)
    return c in ("hevc", "h265", "h.265", "h-265") or c.startswith(("hvc1", "hev1"))


def normalize_codec(codec: str | None) -> str:
    """Collapse a codec string to its family name (h264, hevc, av1, vp8, vp9).

    Unknown codecs are returned lower-cased and stripped.
    """
    c = _clean(codec)
    if is_h264_codec(c):
        return "h264"
    if is_hevc_codec(c):
        return "hevc"
    if is_av1_codec(c):
        return "av1"
    if "vp09" in c or "vp9" in c:
        return "vp9"
    if "vp08" in c or "vp8" in c:
        return "vp8"
    return c


def display_codec_name(token: str) -> str:
    """Map a probe codec token (e.g. ``hevc``) to a display name (``H.265``)."""
    lowered = token.lower()
    return CODEC_DISPLAY_ALIASES.get(lowered, lowered.upper())


def detect_container(filename: str | PurePath) -> ContainerFormat:
    """Detect the container family from a file name's extension."""
    suffix = PurePath(filename).suffix.lower().lstrip(".")
    if not suffix:
        return ContainerFormat.UNKNOWN
    try:
        return ContainerFormat(suffix)
    except ValueError:
        return ContainerFormat.UNKNOWN


def is_blocked_container(container: ContainerFormat) -> bool:
    """Containers that only the full software pipeline can demux."""
    return container in _BLOCKED_CONTAINERS

