from __future__ import annotations

"""Schemas for persisted vid2anim data."""


from pydantic import BaseModel, ConfigDict, Field

from .models import ConversionFormat, ConversionPath, FailurePhase

# --------------------------------------------------------------------------- #
# Strategy history snapshot
# --------------------------------------------------------------------------- #


class ConversionRecordModel(BaseModel):
    """Validated form of a persisted conversion record."""

    codec: str
    format: ConversionFormat
    path: ConversionPath
    durationMs: float = Field(ge=0)
    success: bool
    errorMessage: str | None = None
    failurePhase: FailurePhase | None = None
    timestamp: float

    model_config = ConfigDict(extra="ignore")


class HistorySnapshot(BaseModel):
    """Envelope for the history snapshot.

    Only ``version`` is inspected before the records are trusted, so older
    snapshots with incompatible record shapes can still be recognised and
    discarded.
    """

    version: int
    maxRecords: int = Field(ge=1)
    records: list[dict] = Field(default_factory=list)


class HistorySnapshotV2(HistorySnapshot):
    records: list[ConversionRecordModel] = Field(default_factory=list)


# --------------------------------------------------------------------------- #
# Convenience helpers
# --------------------------------------------------------------------------- #


def read_snapshot_version(data: dict) -> int:
    """Return the snapshot version. Raises ``pydantic.ValidationError`` if absent."""
    return HistorySnapshot.model_validate(data).version


def validate_history_snapshot(data: dict) -> HistorySnapshotV2:
    """Validate *data* against :class:`HistorySnapshotV2`.

    Raises ``pydantic.ValidationError`` if the snapshot is invalid.
    """
    return HistorySnapshotV2.model_validate(data)
