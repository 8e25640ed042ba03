"""Session-scoped ledger of conversion attempts.

The store keeps a bounded ring buffer of :class:`ConversionRecord` objects and
derives per-path statistics from it on demand. History is an optimization for
path selection, never a correctness requirement: persistence problems are
logged and swallowed.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from .codecs import normalize_codec
from .config import StrategyConfig
from .io import atomic_write
from .models import (
    ConversionFormat,
    ConversionHistory,
    ConversionPath,
    ConversionRecord,
    PathStatistics,
    RecommendedPath,
)
from .schema import read_snapshot_version, validate_history_snapshot

logger = logging.getLogger(__name__)


def calculate_path_statistics(
    records: Iterable[ConversionRecord],
) -> dict[ConversionPath, PathStatistics]:
    """Aggregate count, success rate and mean successful duration per path."""
    counts: dict[ConversionPath, int] = {}
    successes: dict[ConversionPath, int] = {}
    durations: dict[ConversionPath, float] = {}

    for record in records:
        counts[record.path] = counts.get(record.path, 0) + 1
        if record.success:
            successes[record.path] = successes.get(record.path, 0) + 1
            durations[record.path] = durations.get(record.path, 0.0) + record.duration_ms

    stats: dict[ConversionPath, PathStatistics] = {}
    for path, count in counts.items():
        success_count = successes.get(path, 0)
        stats[path] = PathStatistics(
            count=count,
            success_count=success_count,
            success_rate=success_count / count if count else 0.0,
            avg_duration_ms=durations.get(path, 0.0) / success_count if success_count else 0.0,
        )
    return stats


def select_preferred_path(stats: dict[ConversionPath, PathStatistics]) -> ConversionPath:
    """Pick the best path: success rate, then success count, then speed.

    Returns ``cpu`` when *stats* is empty.
    """
    if not stats:
        return ConversionPath.CPU
    return min(
        stats,
        key=lambda path: (
            -stats[path].success_rate,
            -stats[path].success_count,
            stats[path].avg_duration_ms,
        ),
    )


class StrategyHistoryStore:
    """Bounded FIFO history of conversion outcomes with success-rate queries."""

    def __init__(
        self,
        config: StrategyConfig | None = None,
        snapshot_path: Path | None = None,
    ) -> None:
        self.config = config or StrategyConfig()
        self.snapshot_path = snapshot_path or self.config.HISTORY_SNAPSHOT_PATH
        self._records: deque[ConversionRecord] = deque(maxlen=self.config.MAX_RECORDS)
        self._load_snapshot()

    @property
    def max_records(self) -> int:
        return self.config.MAX_RECORDS

    @property
    def records(self) -> tuple[ConversionRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record(self, record: ConversionRecord) -> None:
        """Append *record*, evicting the oldest beyond capacity, then persist."""
        self._records.append(record)
        self._save_snapshot()
        logger.debug(
            f"Conversion recorded: {normalize_codec(record.codec)}/{record.format.value} "
            f"via {record.path.value} success={record.success} "
            f"({record.duration_ms:.0f}ms, total={len(self._records)})"
        )

    def clear_history(self) -> None:
        self._records.clear()
        self._save_snapshot()
        logger.debug("Conversion history cleared")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _matching(self, codec: str, fmt: ConversionFormat) -> list[ConversionRecord]:
        family = normalize_codec(codec)
        return [
            r for r in self._records if r.format is fmt and normalize_codec(r.codec) == family
        ]

    @staticmethod
    def _summarize(
        codec: str, fmt: ConversionFormat, records: list[ConversionRecord]
    ) -> ConversionHistory:
        successful = [r for r in records if r.success]
        return ConversionHistory(
            codec=codec,
            format=fmt,
            records=tuple(records),
            total_conversions=len(records),
            success_rate=len(successful) / len(records),
            avg_duration_ms=(
                sum(r.duration_ms for r in successful) / len(successful) if successful else 0.0
            ),
            preferred_path=select_preferred_path(calculate_path_statistics(records)),
        )

    def get_history(self, codec: str, fmt: ConversionFormat) -> ConversionHistory | None:
        """Records for the codec family and exact format, or None when there are none."""
        matching = self._matching(codec, fmt)
        if not matching:
            return None
        return self._summarize(normalize_codec(codec), fmt, matching)

    def get_all_history(self) -> list[ConversionHistory]:
        grouped: dict[tuple[str, ConversionFormat], list[ConversionRecord]] = {}
        for record in self._records:
            grouped.setdefault((normalize_codec(record.codec), record.format), []).append(record)
        return [
            self._summarize(codec, fmt, records) for (codec, fmt), records in grouped.items()
        ]

    def get_recommended_path(
        self, codec: str, fmt: ConversionFormat
    ) -> RecommendedPath | None:
        """Recommend the historically best path, or None if it never succeeded.

        Confidence grows with sample size up to ``HIGH_CONFIDENCE_THRESHOLD``
        records and is scaled by that path's success rate.
        """
        history = self.get_history(codec, fmt)
        if history is None:
            return None

        stats = calculate_path_statistics(history.records)[history.preferred_path]
        if stats.success_count == 0:
            return None

        by_count = min(stats.count / self.config.HIGH_CONFIDENCE_THRESHOLD, 1.0)
        confidence = max(0.0, min(1.0, by_count * stats.success_rate))
        return RecommendedPath(
            path=history.preferred_path,
            confidence=confidence,
            based_on_records=stats.count,
            avg_duration_ms=stats.avg_duration_ms,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_snapshot(self) -> None:
        path = self.snapshot_path
        if path is None or not path.exists():
            return

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            version = read_snapshot_version(data)
            if version != self.config.SNAPSHOT_VERSION:
                logger.info(
                    f"Strategy history version mismatch (stored={version}, "
                    f"current={self.config.SNAPSHOT_VERSION}), discarding snapshot"
                )
                path.unlink(missing_ok=True)
                return

            snapshot = validate_history_snapshot(data)
            records = [ConversionRecord.from_dict(r.model_dump(mode="json")) for r in snapshot.records]
            # deque(maxlen) keeps the newest records when the snapshot is oversized
            self._records.extend(records)
            logger.debug(f"💾 Strategy history loaded ({len(self._records)} records)")
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"⚠️  Failed to load strategy history (non-critical): {e}")

    def _save_snapshot(self) -> None:
        path = self.snapshot_path
        if path is None:
            return

        snapshot = {
            "records": [r.to_dict() for r in self._records],
            "maxRecords": self.config.MAX_RECORDS,
            "version": self.config.SNAPSHOT_VERSION,
        }
        try:
            with atomic_write(path) as fh:
                json.dump(snapshot, fh)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"⚠️  Failed to save strategy history (non-critical): {e}")
