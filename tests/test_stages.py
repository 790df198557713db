"""Tests for stage status values and the invalidation table."""

import pytest

from ecoextract.core.stages import (
    STAGE_ORDER,
    Stage,
    StageStatus,
    StatusKind,
    invalidate,
    should_run,
)


def test_stage_order():
    assert STAGE_ORDER == (Stage.OCR, Stage.METADATA, Stage.EXTRACTION, Stage.REFINEMENT)
    assert Stage.EXTRACTION.column == "extraction_status"


def test_invalidation_table():
    assert invalidate(Stage.OCR) == (Stage.METADATA, Stage.EXTRACTION, Stage.REFINEMENT)
    assert invalidate(Stage.METADATA) == (Stage.EXTRACTION, Stage.REFINEMENT)
    assert invalidate(Stage.EXTRACTION) == ()
    assert invalidate(Stage.REFINEMENT) == ()


def test_invalidated_stages_are_downstream():
    for stage in STAGE_ORDER:
        for later in invalidate(stage):
            assert STAGE_ORDER.index(later) > STAGE_ORDER.index(stage)


@pytest.mark.parametrize(
    "status, stored",
    [
        (StageStatus.not_run(), None),
        (StageStatus.completed(), "completed"),
        (StageStatus.skipped(), "skipped"),
        (StageStatus.failed("rate limited"), "error: rate limited"),
    ],
)
def test_storage_encoding(status, stored):
    assert status.to_db() == stored
    assert StageStatus.from_db(stored) == status


def test_unrecognised_text_is_failure():
    status = StageStatus.from_db("OCR failed: corrupt xref")
    assert status.kind is StatusKind.FAILED
    assert status.reason == "OCR failed: corrupt xref"


def test_blank_is_not_run():
    assert StageStatus.from_db("  ").kind is StatusKind.NOT_RUN


def test_status_flags():
    assert StageStatus.completed().is_completed
    assert not StageStatus.skipped().is_completed
    assert StageStatus.failed("x").is_failed
    assert not StageStatus.not_run().is_failed
    assert str(StageStatus.failed("x")) == "failed (x)"
    assert str(StageStatus.completed()) == "completed"


def test_should_run():
    assert should_run(StageStatus.not_run(), data_exists=False)
    assert should_run(StageStatus.failed("x"), data_exists=True)
    assert should_run(StageStatus.skipped(), data_exists=True)
    assert should_run(StageStatus.completed(), data_exists=False)
    assert not should_run(StageStatus.completed(), data_exists=True)
