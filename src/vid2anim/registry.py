"""Execution path selection for (codec, format, capabilities) tuples.

Decision order (first match wins):

1. Mandatory blockers (containers or codecs that force a single path)
2. Historical override from :class:`StrategyHistoryStore`
3. Runtime overrides registered by the caller
4. The predefined benchmark matrix
5. Format heuristics

Every non-blocker result then passes through recent-failure avoidance, which
demotes a path that has just failed repeatedly for the same codec and format.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from .codecs import is_av1_codec, is_blocked_container, is_h264_codec, is_hevc_codec, normalize_codec
from .config import StrategyConfig
from .history import StrategyHistoryStore
from .models import (
    Benchmarks,
    Capabilities,
    CodecPathPreference,
    Confidence,
    ContainerFormat,
    ConversionFormat,
    ConversionHistory,
    ConversionPath,
    RejectedAlternative,
    StrategyDecision,
    StrategyReasoning,
)

logger = logging.getLogger(__name__)

GIF = ConversionFormat.GIF
WEBP = ConversionFormat.WEBP
MP4 = ConversionFormat.MP4
GPU = ConversionPath.GPU
CPU = ConversionPath.CPU
WEBAV = ConversionPath.WEBAV

SHORT_CLIP_SECONDS = 5.0
LONG_CLIP_SECONDS = 15.0


def _pref(
    codec: str,
    fmt: ConversionFormat,
    preferred: ConversionPath,
    fallback: ConversionPath,
    reason: str,
    avg_time: float,
    success_rate: float,
) -> CodecPathPreference:
    return CodecPathPreference(
        codec=codec,
        format=fmt,
        preferred_path=preferred,
        fallback_path=fallback,
        reason=reason,
        benchmarks=Benchmarks(avg_time_seconds=avg_time, success_rate=success_rate),
    )


STRATEGY_MATRIX: dict[tuple[str, ConversionFormat], CodecPathPreference] = {
    (pref.codec, pref.format): pref
    for pref in (
        _pref("h264", GIF, CPU, GPU, "Palette generation is faster than accelerated frame extraction for GIF", 4.5, 0.98),
        _pref("h264", WEBP, GPU, CPU, "Hardware decode + libwebp encoding beats the CPU direct path", 3.2, 0.95),
        _pref("h264", MP4, WEBAV, CPU, "Native re-encoding is optimal for MP4", 2.8, 0.97),
        _pref("hevc", GIF, GPU, CPU, "Hardware decode reduces load time for HEVC, even with palettegen", 5.5, 0.92),
        _pref("hevc", WEBP, GPU, CPU, "Hardware HEVC decode is significantly faster than software decode", 4.1, 0.93),
        _pref("hevc", MP4, WEBAV, CPU, "Native re-encode handles HEVC efficiently with hardware acceleration", 3.5, 0.94),
        _pref("av1", GIF, GPU, CPU, "AV1 prefers hardware decode; CPU decode is slow but compatible", 6.2, 0.89),
        _pref("av1", WEBP, GPU, CPU, "AV1 prefers hardware decode; CPU decode is slow but compatible", 5.8, 0.88),
        _pref("av1", MP4, WEBAV, CPU, "AV1 prefers native re-encode; CPU transcode as last resort", 4.9, 0.91),
        _pref("vp8", GIF, CPU, GPU, "Palette generation is typically faster for VP8 GIF", 5.0, 0.94),
        _pref("vp8", WEBP, GPU, CPU, "Accelerated decode with libwebp encoding is optimal", 4.3, 0.93),
        _pref("vp8", MP4, WEBAV, CPU, "Native transcoding from VP8 to MP4", 3.8, 0.92),
        _pref("vp9", GIF, CPU, GPU, "Palette generation is typically faster for VP9 GIF", 5.4, 0.91),
        _pref("vp9", WEBP, GPU, CPU, "Accelerated decode with libwebp encoding is optimal", 4.5, 0.92),
        _pref("vp9", MP4, WEBAV, CPU, "Native transcoding from VP9 to MP4", 4.0, 0.90),
    )
}


def _decide(
    pref: CodecPathPreference, confidence: Confidence, **changes: object
) -> StrategyDecision:
    base = {
        "codec": pref.codec,
        "format": pref.format,
        "preferred_path": pref.preferred_path,
        "fallback_path": pref.fallback_path,
        "reason": pref.reason,
        "benchmarks": pref.benchmarks,
        "confidence": confidence,
    }
    base.update(changes)
    return StrategyDecision(**base)


def has_codec_support(codec: str, capabilities: Capabilities) -> bool:
    """Whether the accelerated decode path reports support for *codec*."""
    normalized = normalize_codec(codec)
    return {
        "h264": capabilities.h264,
        "hevc": capabilities.hevc,
        "av1": capabilities.av1,
        "vp8": capabilities.vp8,
        "vp9": capabilities.vp9,
    }.get(normalized, False)


def hardware_decode_hint(codec: str, capabilities: Capabilities) -> bool | None:
    normalized = normalize_codec(codec)
    return {
        "h264": capabilities.h264_hardware_decode,
        "hevc": capabilities.hevc_hardware_decode,
        "av1": capabilities.av1_hardware_decode,
        "vp8": capabilities.vp8_hardware_decode,
        "vp9": capabilities.vp9_hardware_decode,
    }.get(normalized)


def should_prefer_gpu_for_gif(codec: str, capabilities: Capabilities) -> bool:
    normalized = normalize_codec(codec)
    if not capabilities.webcodecs_decode or not has_codec_support(normalized, capabilities):
        return False
    if is_av1_codec(normalized):
        return True
    if is_h264_codec(normalized) or is_hevc_codec(normalized):
        hint = hardware_decode_hint(normalized, capabilities)
        if hint is not None:
            return hint
        return capabilities.hardware_accelerated
    if normalized in ("vp8", "vp9"):
        return False
    return capabilities.hardware_accelerated


class StrategyRegistry:
    """Chooses an execution path and confidence for a conversion request.

    The registry holds no mutable state besides caller-registered runtime
    overrides; decisions are a pure function of the inputs and the injected
    history store.
    """

    def __init__(
        self, history: StrategyHistoryStore, config: StrategyConfig | None = None
    ) -> None:
        self.history = history
        self.config = config or history.config
        self._runtime_overrides: dict[tuple[str, ConversionFormat], CodecPathPreference] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_strategy(
        self,
        codec: str,
        fmt: ConversionFormat,
        container: ContainerFormat,
        capabilities: Capabilities,
        duration_seconds: float | None = None,
    ) -> StrategyDecision:
        normalized = normalize_codec(codec)
        key = (normalized, fmt)

        blocked = self._check_mandatory_blockers(normalized, fmt, container, capabilities)
        if blocked is not None:
            return blocked

        history = self.history.get_history(codec, fmt)
        recommended = self.history.get_recommended_path(codec, fmt)
        if recommended and recommended.confidence >= self.config.HISTORY_CONFIDENCE_THRESHOLD:
            preferred = recommended.path
            decision = StrategyDecision(
                codec=normalized,
                format=fmt,
                preferred_path=preferred,
                fallback_path=CPU if preferred is GPU else GPU,
                reason=(
                    f"Historical success (records={recommended.based_on_records}, "
                    f"avg={round(recommended.avg_duration_ms)}ms)"
                ),
                confidence=Confidence.HIGH,
            )
            return self._apply_recent_failure_avoidance(
                self._apply_gif_gpu_preference(decision, capabilities), history
            )

        override = self._runtime_overrides.get(key)
        if override is not None:
            logger.debug(f"Using runtime override strategy for {normalized}/{fmt.value}")
            return self._apply_recent_failure_avoidance(
                self._apply_gif_gpu_preference(_decide(override, Confidence.HIGH), capabilities),
                history,
            )

        strategy = STRATEGY_MATRIX.get(key)
        if strategy is not None:
            if self._validate_capabilities(strategy, capabilities):
                decision = self._apply_hardware_decode_preference(
                    _decide(strategy, Confidence.HIGH), capabilities
                )
                if duration_seconds:
                    decision = self._apply_duration_heuristics(decision, duration_seconds)
                return self._apply_recent_failure_avoidance(
                    self._apply_gif_gpu_preference(decision, capabilities), history
                )

            logger.debug(
                f"Preferred path {strategy.preferred_path.value} for {normalized}/{fmt.value} "
                f"needs missing capabilities, using {strategy.fallback_path.value}"
            )
            return self._apply_recent_failure_avoidance(
                _decide(strategy, Confidence.MEDIUM, preferred_path=strategy.fallback_path),
                history,
            )

        logger.debug(f"No predefined strategy for {normalized}/{fmt.value}, using heuristic")
        return self._apply_recent_failure_avoidance(
            self._apply_gif_gpu_preference(
                self._apply_hardware_decode_preference(
                    self._heuristic_strategy(normalized, fmt, capabilities), capabilities
                ),
                capabilities,
            ),
            history,
        )

    def get_strategy_reasoning(
        self,
        codec: str,
        fmt: ConversionFormat,
        container: ContainerFormat,
        capabilities: Capabilities,
        duration_seconds: float | None = None,
    ) -> StrategyReasoning:
        """Explain a decision: contributing factors and why alternatives lost."""
        normalized = normalize_codec(codec)
        strategy = self.get_strategy(codec, fmt, container, capabilities, duration_seconds)
        decision = strategy.preferred_path

        if decision is CPU:
            codec_support = True
        elif decision is WEBAV:
            codec_support = capabilities.mp4_encode
        else:
            codec_support = has_codec_support(normalized, capabilities)

        history = self.history.get_history(codec, fmt)
        factors = {
            "codec_support": codec_support,
            "container_support": (not is_blocked_container(container)) if decision is GPU else True,
            "hardware_acceleration": capabilities.hardware_accelerated,
            "codec_hardware_decode_hint": hardware_decode_hint(normalized, capabilities),
            "webcodecs_decode_support": capabilities.webcodecs_decode,
            "gif_gpu_eligible": (
                should_prefer_gpu_for_gif(normalized, capabilities) if fmt is GIF else None
            ),
            "historical_success": bool(
                history and any(r.success and r.path is decision for r in history.records)
            ),
            "performance_benchmark_ms": (
                strategy.benchmarks.avg_time_seconds * 1000 if strategy.benchmarks else None
            ),
            "core_count": capabilities.core_count,
        }

        alternatives = tuple(
            RejectedAlternative(
                path=path,
                rejection_reason=self._rejection_reason(path, normalized, fmt, capabilities),
            )
            for path in (GPU, CPU, WEBAV)
            if path is not decision
        )
        return StrategyReasoning(
            decision=decision, factors=factors, alternatives_considered=alternatives
        )

    def get_all_strategies(self) -> list[CodecPathPreference]:
        return list(STRATEGY_MATRIX.values())

    def set_runtime_override(self, preference: CodecPathPreference) -> None:
        """Register a caller-supplied preference for its (codec, format) pair."""
        key = (normalize_codec(preference.codec), preference.format)
        self._runtime_overrides[key] = replace(preference, codec=key[0])

    def clear_runtime_overrides(self) -> None:
        self._runtime_overrides.clear()

    def record_success(
        self, codec: str, fmt: ConversionFormat, path: ConversionPath, duration_ms: float
    ) -> None:
        logger.debug(
            f"Strategy success: {normalize_codec(codec)}/{fmt.value} via {path.value} "
            f"in {duration_ms:.0f}ms"
        )

    # ------------------------------------------------------------------
    # Decision steps
    # ------------------------------------------------------------------

    def _check_mandatory_blockers(
        self,
        codec: str,
        fmt: ConversionFormat,
        container: ContainerFormat,
        capabilities: Capabilities,
    ) -> StrategyDecision | None:
        if is_blocked_container(container):
            return StrategyDecision(
                codec=codec,
                format=fmt,
                preferred_path=CPU,
                fallback_path=CPU,
                reason=f"{container.value.upper()} container requires FFmpeg full pipeline",
                confidence=Confidence.HIGH,
            )

        if is_av1_codec(codec) and not capabilities.av1:
            return StrategyDecision(
                codec=codec,
                format=fmt,
                preferred_path=GPU,
                fallback_path=GPU,
                reason="AV1 requires hardware decode support (will fail if unsupported)",
                confidence=Confidence.LOW,
            )
        return None

    def _validate_capabilities(
        self, strategy: CodecPathPreference, capabilities: Capabilities
    ) -> bool:
        if strategy.preferred_path is GPU:
            return capabilities.webcodecs_decode and has_codec_support(
                strategy.codec, capabilities
            )
        if strategy.preferred_path is WEBAV:
            return capabilities.mp4_encode
        return True

    def _heuristic_strategy(
        self, codec: str, fmt: ConversionFormat, capabilities: Capabilities
    ) -> StrategyDecision:
        def make(preferred, fallback, reason, confidence):
            return StrategyDecision(
                codec=codec,
                format=fmt,
                preferred_path=preferred,
                fallback_path=fallback,
                reason=reason,
                confidence=confidence,
            )

        if not has_codec_support(codec, capabilities):
            return make(CPU, CPU, "Unknown codec - using safe FFmpeg fallback", Confidence.LOW)
        if fmt is MP4 and capabilities.mp4_encode:
            return make(WEBAV, CPU, "MP4 format uses native re-encode when available", Confidence.MEDIUM)
        if fmt is GIF:
            return make(CPU, GPU, "GIF format generally faster with palettegen", Confidence.MEDIUM)
        if fmt is WEBP:
            return make(GPU, CPU, "WebP format benefits from hardware decode", Confidence.MEDIUM)
        return make(GPU, CPU, "Default heuristic: GPU with CPU fallback", Confidence.LOW)

    def _apply_gif_gpu_preference(
        self, strategy: StrategyDecision, capabilities: Capabilities
    ) -> StrategyDecision:
        if strategy.format is not GIF:
            return strategy

        prefer_gpu = should_prefer_gpu_for_gif(strategy.codec, capabilities)
        if prefer_gpu and strategy.preferred_path is not GPU:
            return replace(
                strategy,
                preferred_path=GPU,
                fallback_path=CPU,
                benchmarks=None,
                confidence=strategy.confidence.downgrade(),
                reason="Hardware decode available; preferring GPU decode path for GIF",
            )

        if not prefer_gpu and strategy.preferred_path is GPU:
            if is_av1_codec(strategy.codec):
                return strategy
            return replace(
                strategy,
                preferred_path=CPU,
                fallback_path=GPU,
                benchmarks=None,
                confidence=strategy.confidence.downgrade(),
                reason="GPU decode not available for GIF; preferring CPU path",
            )
        return strategy

    def _apply_hardware_decode_preference(
        self, strategy: StrategyDecision, capabilities: Capabilities
    ) -> StrategyDecision:
        if strategy.format is not WEBP:
            return strategy
        if strategy.preferred_path is not GPU or strategy.fallback_path is not CPU:
            return strategy
        if strategy.codec not in ("h264", "hevc"):
            return strategy

        hint = hardware_decode_hint(strategy.codec, capabilities)
        if hint is False:
            return replace(
                strategy,
                preferred_path=CPU,
                fallback_path=GPU,
                confidence=strategy.confidence.downgrade(),
                reason=f"{strategy.reason} (no hardware decode; preferring CPU)",
            )
        if hint is None and strategy.confidence is Confidence.HIGH:
            return replace(
                strategy,
                confidence=Confidence.MEDIUM,
                reason=f"{strategy.reason} (hardware decode hint unknown)",
            )
        return strategy

    def _apply_duration_heuristics(
        self, strategy: StrategyDecision, duration_seconds: float
    ) -> StrategyDecision:
        if strategy.format is not GIF:
            return strategy

        codec = strategy.codec
        if is_h264_codec(codec) and duration_seconds < SHORT_CLIP_SECONDS:
            if strategy.preferred_path is not CPU:
                return replace(
                    strategy,
                    preferred_path=CPU,
                    fallback_path=GPU,
                    confidence=Confidence.HIGH,
                    reason=(
                        f"{strategy.reason} + short clip ({duration_seconds:.1f}s) "
                        "benefits from lower CPU setup overhead"
                    ),
                )

        long_clip_codec = is_hevc_codec(codec) or is_av1_codec(codec) or codec in ("vp8", "vp9")
        if long_clip_codec and duration_seconds > LONG_CLIP_SECONDS:
            if strategy.preferred_path is not GPU:
                return replace(
                    strategy,
                    preferred_path=GPU,
                    fallback_path=CPU,
                    confidence=Confidence.MEDIUM,
                    reason=(
                        f"{strategy.reason} + long clip ({duration_seconds:.1f}s) "
                        "amortizes GPU setup cost"
                    ),
                )
        return strategy

    def _apply_recent_failure_avoidance(
        self, strategy: StrategyDecision, history: ConversionHistory | None
    ) -> StrategyDecision:
        if history is None:
            return strategy

        window = self.config.RECENT_FAILURE_WINDOW
        # Recording order, not timestamp: monotonic clocks restart between sessions
        recent = list(history.records)[-window:]
        for_path = [r for r in recent if r.path is strategy.preferred_path]
        failures = sum(1 for r in for_path if not r.success)
        successes = len(for_path) - failures

        if (
            failures >= self.config.RECENT_FAILURE_LIMIT
            and successes == 0
            and strategy.fallback_path is not strategy.preferred_path
        ):
            logger.debug(
                f"Avoiding {strategy.preferred_path.value} for {strategy.codec}/"
                f"{strategy.format.value}: {failures} recent failures in last {window}"
            )
            return replace(
                strategy,
                preferred_path=strategy.fallback_path,
                confidence=strategy.confidence.downgrade(),
                reason=f"{strategy.reason} (avoiding recent failures on {strategy.preferred_path.value})",
            )
        return strategy

    def _rejection_reason(
        self,
        path: ConversionPath,
        codec: str,
        fmt: ConversionFormat,
        capabilities: Capabilities,
    ) -> str:
        if path is GPU:
            if not capabilities.webcodecs_decode:
                return "Accelerated decode is not available in this environment"
            if not has_codec_support(codec, capabilities):
                return f"Codec {codec} not supported by accelerated decode"
            if fmt is GIF and not should_prefer_gpu_for_gif(codec, capabilities):
                if not is_av1_codec(codec) and not is_hevc_codec(codec):
                    return "GIF CPU path preferred for this codec"
                return "Hardware decode unavailable for GIF; prefer CPU"
            return "Not optimal for this codec+format combination"

        if path is CPU:
            if fmt is WEBP and has_codec_support(codec, capabilities):
                hint = hardware_decode_hint(codec, capabilities)
                if hint is True or capabilities.hardware_accelerated:
                    return "GPU path faster for WebP with hardware decode"
                if hint is False:
                    return "GPU path benefit reduced without hardware decode"
                return "Hardware decode hint unknown; GPU path often faster for WebP"
            return "Not optimal for this codec+format combination"

        if path is WEBAV:
            if fmt is not MP4:
                return f"Native re-encode only supports MP4 format, not {fmt.value}"
            if not capabilities.mp4_encode:
                return "Native re-encode not available in this environment"
            return "Not optimal for this codec+format combination"

        return "Unknown rejection reason"
