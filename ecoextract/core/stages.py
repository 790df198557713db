"""Pipeline stages, per-stage status values, and the invalidation table."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

# ── Stages ───────────────────────────────────────────────────────────


class Stage(str, Enum):
    OCR = "ocr"
    METADATA = "metadata"
    EXTRACTION = "extraction"
    REFINEMENT = "refinement"

    @property
    def column(self) -> str:
        """Status column on the documents table."""
        return f"{self.value}_status"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.OCR,
    Stage.METADATA,
    Stage.EXTRACTION,
    Stage.REFINEMENT,
)

# Completing a stage resets these downstream stages to NOT_RUN.
# Extraction does not invalidate refinement: refinement is opt-in only.
INVALIDATES: dict[Stage, tuple[Stage, ...]] = {
    Stage.OCR: (Stage.METADATA, Stage.EXTRACTION, Stage.REFINEMENT),
    Stage.METADATA: (Stage.EXTRACTION, Stage.REFINEMENT),
    Stage.EXTRACTION: (),
    Stage.REFINEMENT: (),
}


def invalidate(stage: Stage) -> tuple[Stage, ...]:
    """Stages whose results become stale once `stage` completes."""
    return INVALIDATES[stage]


# ── Status ───────────────────────────────────────────────────────────


class StatusKind(str, Enum):
    NOT_RUN = "not_run"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


_ERROR_PREFIX = "error: "


class StageStatus(BaseModel):
    """Closed status variant; `reason` is only set for FAILED."""

    model_config = ConfigDict(frozen=True)

    kind: StatusKind
    reason: Optional[str] = None

    @classmethod
    def not_run(cls) -> "StageStatus":
        return cls(kind=StatusKind.NOT_RUN)

    @classmethod
    def completed(cls) -> "StageStatus":
        return cls(kind=StatusKind.COMPLETED)

    @classmethod
    def skipped(cls) -> "StageStatus":
        return cls(kind=StatusKind.SKIPPED)

    @classmethod
    def failed(cls, reason: str) -> "StageStatus":
        return cls(kind=StatusKind.FAILED, reason=reason or "unknown error")

    @property
    def is_completed(self) -> bool:
        return self.kind is StatusKind.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.kind is StatusKind.FAILED

    # ── Storage encoding ─────────────────────────────────────

    def to_db(self) -> Optional[str]:
        """NULL | 'completed' | 'skipped' | 'error: <message>'."""
        if self.kind is StatusKind.NOT_RUN:
            return None
        if self.kind is StatusKind.FAILED:
            return f"{_ERROR_PREFIX}{self.reason}"
        return self.kind.value

    @classmethod
    def from_db(cls, value: Optional[str]) -> "StageStatus":
        """Parse a stored status; any unrecognised text is a failure message."""
        if value is None or not value.strip():
            return cls.not_run()
        if value == StatusKind.COMPLETED.value:
            return cls.completed()
        if value == StatusKind.SKIPPED.value:
            return cls.skipped()
        if value.startswith(_ERROR_PREFIX):
            return cls.failed(value[len(_ERROR_PREFIX):])
        return cls.failed(value)

    def __str__(self) -> str:
        if self.kind is StatusKind.FAILED:
            return f"failed ({self.reason})"
        return self.kind.value


# ── Guard ────────────────────────────────────────────────────────────


def should_run(status: StageStatus, data_exists: bool) -> bool:
    """Run unless the stage completed and its payload is actually present.

    A completed status with missing payload (desync) means a previous run
    crashed mid-write, so the stage runs again.
    """
    if not status.is_completed:
        return True
    return not data_exists
