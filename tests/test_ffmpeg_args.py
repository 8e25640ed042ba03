"""Tests for FFmpeg argument builders."""

import pytest

from vid2anim.ffmpeg_args import (
    InputOverride,
    dither_mode,
    frame_pattern,
    frames_gif_palette_args,
    frames_gif_paletteuse_args,
    frames_webp_args,
    frames_webp_threads,
    gif_palette_args,
    gif_paletteuse_args,
    input_args,
    map_progress,
    optimal_fps,
    optimal_thread_count,
    parse_progress_seconds,
    quality_preset,
    scale_filter,
    threading_args,
    webp_args,
)
from vid2anim.models import ConversionFormat, Quality


class TestQualityHelpers:
    """Tests for fps, dither and scale selection."""

    @pytest.mark.fast
    def test_optimal_fps_caps_at_preset(self):
        assert optimal_fps(30, Quality.MEDIUM, ConversionFormat.GIF) == 15
        assert optimal_fps(30, "high", "webp") == 24

    @pytest.mark.fast
    def test_optimal_fps_keeps_lower_source(self):
        assert optimal_fps(8, Quality.HIGH, ConversionFormat.GIF) == 8

    @pytest.mark.fast
    @pytest.mark.parametrize("bad", [0, -5, float("nan"), float("inf")])
    def test_optimal_fps_rejects_invalid(self, bad):
        with pytest.raises(ValueError, match="Invalid source FPS"):
            optimal_fps(bad, Quality.LOW, ConversionFormat.GIF)

    @pytest.mark.fast
    def test_dither_mode(self):
        assert dither_mode(Quality.HIGH) == "sierra2_4a"
        assert dither_mode(Quality.MEDIUM) == "bayer"
        assert dither_mode("low") == "bayer"

    @pytest.mark.fast
    def test_scale_filter(self):
        assert scale_filter(Quality.HIGH, 1.0) is None
        assert scale_filter(Quality.HIGH, 0.5) == "scale=iw*0.5:ih*0.5:flags=lanczos"
        assert scale_filter(Quality.LOW, 0.5).endswith("flags=bilinear")

    @pytest.mark.fast
    def test_quality_preset_lookup(self):
        assert quality_preset(ConversionFormat.GIF, Quality.LOW)["colors"] == 128


class TestThreading:
    """Tests for thread flag selection."""

    @pytest.mark.fast
    def test_thread_count_bounds(self):
        assert optimal_thread_count(1) == 1
        assert optimal_thread_count(8) == 6
        assert optimal_thread_count(64) == 12

    @pytest.mark.fast
    def test_filter_complex_single_threaded(self):
        assert threading_args("filter-complex", 16) == [
            "-threads", "1", "-filter_threads", "1", "-filter_complex_threads", "1",
        ]

    @pytest.mark.fast
    def test_scale_filter_mode(self):
        assert threading_args("scale-filter", 8) == ["-threads", "4", "-filter_threads", "4"]

    @pytest.mark.fast
    def test_simple_mode(self):
        assert threading_args("simple", 8) == ["-threads", "6"]

    @pytest.mark.fast
    def test_frames_webp_threads(self):
        assert frames_webp_threads(16, True) == 4
        assert frames_webp_threads(2, True) == 2
        assert frames_webp_threads(16, False) == 1


class TestVideoPipelines:
    """Tests for video-input command construction."""

    @pytest.mark.fast
    def test_input_override(self):
        override = InputOverride(format="h264", framerate=29.97)
        assert input_args("input.mp4", override) == ["-f", "h264", "-r", "29.97", "-i", "input.mp4"]
        assert input_args("input.mp4") == ["-i", "input.mp4"]

    @pytest.mark.fast
    def test_gif_palette_pass(self):
        args = gif_palette_args(["-i", "input.mp4"], 15, 256, "palette.png", "scale=iw*0.5:ih*0.5:flags=bicubic")

        assert args[-1] == "palette.png"
        assert "-update" in args
        vf = args[args.index("-vf") + 1]
        assert vf == "scale=iw*0.5:ih*0.5:flags=bicubic,fps=15,palettegen=max_colors=256"

    @pytest.mark.fast
    def test_gif_paletteuse_pass(self):
        args = gif_paletteuse_args(["-i", "input.mp4"], 15, "bayer", "palette.png", "output.gif")

        assert args[-1] == "output.gif"
        assert args[args.index("-lavfi") + 1] == "fps=15[v];[v][1:v]paletteuse=dither=bayer"
        assert ["-progress", "-"] == args[args.index("-progress"):args.index("-progress") + 2]

    @pytest.mark.fast
    def test_webp_single_pass(self):
        preset = quality_preset(ConversionFormat.WEBP, Quality.MEDIUM)
        args = webp_args(["-i", "input.mp4"], 15, preset, "output.webp", core_count=8)

        assert args[:2] == ["-threads", "6"]
        assert args[args.index("-c:v") + 1] == "libwebp"
        assert args[args.index("-quality") + 1] == "85"
        assert args[args.index("-preset") + 1] == "default"
        assert args[args.index("-loop") + 1] == "0"
        assert args[-1] == "output.webp"

    @pytest.mark.fast
    def test_webp_h264_input_uses_scale_filter_threads(self):
        preset = quality_preset(ConversionFormat.WEBP, Quality.LOW)
        args = webp_args(["-i", "input.mp4"], 10, preset, "output.webp", core_count=8, h264_input=True)

        assert "-filter_threads" in args

    @pytest.mark.fast
    def test_invalid_webp_preset_skipped(self):
        preset = {**quality_preset(ConversionFormat.WEBP, Quality.LOW), "preset": "bogus"}
        args = webp_args(["-i", "input.mp4"], 10, preset, "output.webp", core_count=4)

        assert "-preset" not in args


class TestFramePipelines:
    """Tests for frame-sequence command construction."""

    @pytest.mark.fast
    def test_frame_pattern_extension(self):
        assert frame_pattern(["frame_000000.png"]) == "frame_%06d.png"
        assert frame_pattern(["frame_000000.jpeg"]) == "frame_%06d.jpeg"
        assert frame_pattern(None) == "frame_%06d.png"

    @pytest.mark.fast
    def test_frames_gif_passes(self):
        palette = frames_gif_palette_args("frame_%06d.png", 12, 128, "palette.png")
        use = frames_gif_paletteuse_args("frame_%06d.png", 12, "bayer", "palette.png", "output.gif")

        assert palette[palette.index("-framerate") + 1] == "12"
        assert palette[-1] == "palette.png"
        assert use[use.index("-filter_complex") + 1] == "paletteuse=dither=bayer"
        assert use[-1] == "output.gif"

    @pytest.mark.fast
    def test_frames_webp(self):
        preset = quality_preset(ConversionFormat.WEBP, Quality.HIGH)
        args = frames_webp_args("frame_%06d.png", 24, preset, "output.webp", threads=3)

        assert args[:4] == ["-threads", "3", "-filter_threads", "1"]
        assert args[args.index("-method") + 1] == "6"


class TestProgressParsing:
    """Tests for progress line parsing."""

    @pytest.mark.fast
    def test_time_line(self):
        line = "frame=  120 fps= 30 q=-0.0 size=N/A time=00:01:02.50 bitrate=N/A speed=1x"
        assert parse_progress_seconds(line) == pytest.approx(62.5)

    @pytest.mark.fast
    def test_out_time_ms_is_microseconds(self):
        assert parse_progress_seconds("out_time_ms=2500000") == pytest.approx(2.5)

    @pytest.mark.fast
    def test_unrelated_line(self):
        assert parse_progress_seconds("Stream mapping:") is None

    @pytest.mark.fast
    def test_map_progress(self):
        assert map_progress(5, 10, 40, 90) == 65
        assert map_progress(20, 10, 40, 90) == 90
        assert map_progress(5, 0, 40, 90) == 40
