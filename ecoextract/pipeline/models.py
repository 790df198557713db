"""Options and per-document reports for pipeline runs."""

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from ecoextract.core.stages import STAGE_ORDER, Stage, StageStatus

# None/False: nobody; True/"all": every document; a set: those document ids.
DocumentSelection = Optional[Union[bool, Literal["all"], set[int]]]


def selects(selection: DocumentSelection, document_id: Optional[int]) -> bool:
    """Whether a force/refine selection targets this document."""
    if selection is None or selection is False:
        return False
    if selection is True or selection == "all":
        return True
    return document_id is not None and document_id in selection


class ProcessOptions(BaseModel):
    force_ocr: DocumentSelection = None
    force_metadata: DocumentSelection = None
    force_extraction: DocumentSelection = None
    force_refinement: DocumentSelection = None
    refine: DocumentSelection = None

    def forced(self, stage: Stage) -> DocumentSelection:
        return getattr(self, f"force_{stage.value}")

    def forced_stages(self, document_id: int) -> list[Stage]:
        return [s for s in STAGE_ORDER if selects(self.forced(s), document_id)]

    def refinement_requested(self, document_id: int) -> bool:
        """Refinement runs only when opted in or explicitly forced."""
        return selects(self.refine, document_id) or selects(self.force_refinement, document_id)


class StatusReport(BaseModel):
    """Outcome of one document run: a status per stage plus the stored record count."""

    file: str
    document_id: Optional[int] = None
    ocr: StageStatus = Field(default_factory=StageStatus.not_run)
    metadata: StageStatus = Field(default_factory=StageStatus.not_run)
    extraction: StageStatus = Field(default_factory=StageStatus.not_run)
    refinement: StageStatus = Field(default_factory=StageStatus.not_run)
    records: int = 0

    def status(self, stage: Stage) -> StageStatus:
        return getattr(self, stage.value)

    def set_status(self, stage: Stage, status: StageStatus) -> None:
        setattr(self, stage.value, status)

    @property
    def failed(self) -> bool:
        return any(self.status(s).is_failed for s in STAGE_ORDER)

    @property
    def error(self) -> Optional[str]:
        """First failure reason, if any stage failed."""
        for stage in STAGE_ORDER:
            status = self.status(stage)
            if status.is_failed:
                return f"{stage.value}: {status.reason}"
        return None

    def fail_from(self, stage: Stage, reason: str) -> None:
        """Mark `stage` failed and every stage after it skipped."""
        position = STAGE_ORDER.index(stage)
        self.set_status(stage, StageStatus.failed(reason))
        for later in STAGE_ORDER[position + 1 :]:
            self.set_status(later, StageStatus.skipped())

    @classmethod
    def crashed(cls, file: str, reason: str, document_id: Optional[int] = None) -> "StatusReport":
        """Report for a document whose run raised before any stage started."""
        report = cls(file=file, document_id=document_id)
        report.fail_from(STAGE_ORDER[0], reason)
        return report
