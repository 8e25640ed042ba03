"""Tests for vid2anim.codecs module."""

import pytest

from vid2anim.codecs import (
    detect_container,
    display_codec_name,
    is_av1_codec,
    is_blocked_container,
    is_h264_codec,
    is_hevc_codec,
    normalize_codec,
)
from vid2anim.models import ContainerFormat


class TestNormalizeCodec:
    """Tests for codec family normalization."""

    @pytest.mark.fast
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("avc1.64001f", "h264"),
            ("H.264", "h264"),
            ("hev1.1.6.L93.B0", "hevc"),
            ("H.265", "hevc"),
            ("av01.0.05M.08", "av1"),
            ("AV1", "av1"),
            ("vp09.00.10.08", "vp9"),
            ("VP8", "vp8"),
            ("  ProRes ", "prores"),
        ],
    )
    def test_known_spellings(self, raw, expected):
        """Codec strings collapse to their family name."""
        assert normalize_codec(raw) == expected

    @pytest.mark.fast
    def test_none_and_empty(self):
        """Missing codecs normalize to an empty string."""
        assert normalize_codec(None) == ""
        assert normalize_codec("") == ""

    @pytest.mark.fast
    def test_family_predicates(self):
        """Predicates agree with normalization."""
        assert is_h264_codec("avc1")
        assert is_hevc_codec("hvc1")
        assert is_av1_codec("av01")
        assert not is_h264_codec("vp9")


class TestContainers:
    """Tests for container detection."""

    @pytest.mark.fast
    def test_detect_from_extension(self):
        """The extension decides the container, case-insensitively."""
        assert detect_container("clip.MP4") is ContainerFormat.MP4
        assert detect_container("movie.mkv") is ContainerFormat.MKV
        assert detect_container("legacy.avi") is ContainerFormat.AVI

    @pytest.mark.fast
    def test_unknown_extension(self):
        """Unrecognized or missing extensions give UNKNOWN."""
        assert detect_container("clip.flv") is ContainerFormat.UNKNOWN
        assert detect_container("clip") is ContainerFormat.UNKNOWN

    @pytest.mark.fast
    def test_blocked_containers(self):
        """AVI/WMV are blocked; everything else is not."""
        assert is_blocked_container(ContainerFormat.AVI)
        assert is_blocked_container(ContainerFormat.WMV)
        assert not is_blocked_container(ContainerFormat.MP4)
        assert not is_blocked_container(ContainerFormat.UNKNOWN)


class TestDisplayCodecName:
    """Tests for probe token display names."""

    @pytest.mark.fast
    def test_aliases(self):
        assert display_codec_name("hevc") == "H.265"
        assert display_codec_name("h264") == "H.264"

    @pytest.mark.fast
    def test_unknown_is_uppercased(self):
        assert display_codec_name("theora") == "THEORA"
