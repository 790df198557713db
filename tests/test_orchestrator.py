"""Tests for the per-document pipeline orchestrator."""

import sqlite3
import threading
from unittest.mock import patch

import pytest

from ecoextract.agents.models import (
    MetadataPayload,
    OCRAudit,
    OCRPayload,
    PublicationMetadata,
    StageResult,
)
from ecoextract.core.config import ConfigurationError, DedupSettings, PipelineConfig
from ecoextract.core.stages import Stage, StageStatus, StatusKind
from ecoextract.pipeline.models import ProcessOptions
from ecoextract.pipeline.orchestrator import PipelineOrchestrator, process_document


@pytest.fixture()
def run(db, schema, config, fake):
    """Process a file with the fake executors and return the report."""

    def _run(path, options=None, cfg=None):
        orchestrator = PipelineOrchestrator(db, schema, cfg or config, fake.executors())
        return orchestrator.process_document(path, options)

    return _run


def _stored(db, doc_id):
    return {s: db.get_stage_status(doc_id, s) for s in Stage}


# ── Fresh Document ───────────────────────────────────────────────────


def test_new_document_assigns_sequential_ids(run, db, make_pdf):
    report = run(make_pdf(), ProcessOptions(refine=True))

    assert report.document_id is not None
    assert all(report.status(s).is_completed for s in Stage)
    assert report.records == 3

    ids = [r["record_id"] for r in db.get_records(report.document_id)]
    assert ids == ["Smith_2021_1_r1", "Smith_2021_1_r2", "Smith_2021_1_r3"]


def test_stage_statuses_persisted(run, db, make_pdf):
    report = run(make_pdf())
    stored = _stored(db, report.document_id)
    assert stored[Stage.OCR].is_completed
    assert stored[Stage.METADATA].is_completed
    assert stored[Stage.EXTRACTION].is_completed
    # Refinement was not requested: reported as skipped, nothing stored
    assert report.refinement.kind is StatusKind.SKIPPED
    assert stored[Stage.REFINEMENT].kind is StatusKind.NOT_RUN


def test_same_file_resolves_to_same_document(run, make_pdf):
    path = make_pdf()
    first = run(path)
    second = run(path)
    assert first.document_id == second.document_id


def test_records_extracted_matches_database(run, db, make_pdf):
    report = run(make_pdf())
    doc = db.get_document(report.document_id)
    assert doc["records_extracted"] == 3
    assert doc["extraction_reasoning"] == "found three bats"


def test_ocr_audit_reaches_extraction(run, db, fake, make_pdf):
    fake.ocr_audit = OCRAudit(errors_found="Myotis misread as Myot1s")
    report = run(make_pdf())

    doc = db.get_document(report.document_id)
    assert doc["ocr_audit"] == {"errors_found": "Myotis misread as Myot1s", "tables_reconstructed": None}
    assert fake.documents["extraction"]["ocr_audit"]["errors_found"] == "Myotis misread as Myot1s"


# ── Idempotence ──────────────────────────────────────────────────────


def test_second_run_skips_everything(run, fake, make_pdf):
    path = make_pdf()
    first = run(path, ProcessOptions(refine=True))
    second = run(path, ProcessOptions(refine=True))

    assert all(second.status(s).kind is StatusKind.SKIPPED for s in Stage)
    assert second.records == first.records == 3
    assert dict(fake.calls) == {"ocr": 1, "metadata": 1, "extraction": 1, "refinement": 1}


def test_empty_metadata_is_not_rerun(db, schema, config, fake, make_pdf):
    calls = {"metadata": 0}

    def blank_metadata(content):
        calls["metadata"] += 1
        return StageResult.completed(MetadataPayload(metadata=PublicationMetadata(), model="fake"))

    executors = fake.executors()
    executors.metadata = blank_metadata
    orchestrator = PipelineOrchestrator(db, schema, config, executors)
    path = make_pdf()

    first = orchestrator.process_document(path)
    second = orchestrator.process_document(path)

    assert first.metadata.is_completed
    assert all(second.status(s).kind is StatusKind.SKIPPED for s in Stage)
    assert calls["metadata"] == 1
    assert fake.calls["extraction"] == 1
    assert second.records == first.records == 3


def test_skip_leaves_stored_status_completed(run, db, make_pdf):
    path = make_pdf()
    first = run(path)
    run(path)
    assert db.get_stage_status(first.document_id, Stage.OCR).is_completed


# ── Forced Re-runs & Cascade ─────────────────────────────────────────


def test_forced_ocr_cascades_downstream(run, db, fake, make_pdf):
    path = make_pdf()
    first = run(path, ProcessOptions(refine=True))

    second = run(path, ProcessOptions(force_ocr="all", refine=True))

    assert all(second.status(s).is_completed for s in Stage)
    assert dict(fake.calls) == {"ocr": 2, "metadata": 2, "extraction": 2, "refinement": 2}
    # Re-extraction found the same records: no duplicates inserted
    assert second.records == first.records == 3


def test_ocr_completion_resets_downstream_status(run, db, fake, make_pdf):
    path = make_pdf()
    report = run(path, ProcessOptions(refine=True))
    doc_id = report.document_id

    fake.fail["metadata"] = "model offline"
    run(path, ProcessOptions(force_ocr={doc_id}, refine=True))

    stored = _stored(db, doc_id)
    assert stored[Stage.OCR].is_completed
    assert stored[Stage.METADATA].is_failed
    # Reset by the cascade, then skipped because metadata failed
    assert stored[Stage.EXTRACTION].kind is StatusKind.SKIPPED
    assert stored[Stage.REFINEMENT].kind is StatusKind.SKIPPED


def test_force_targets_only_selected_documents(run, fake, make_pdf):
    a, b = make_pdf("a.pdf"), make_pdf("b.pdf")
    ra = run(a)
    run(b)

    run(a, ProcessOptions(force_extraction={ra.document_id}))
    run(b, ProcessOptions(force_extraction={ra.document_id}))
    assert fake.calls["extraction"] == 3


def test_forced_extraction_does_not_rerun_metadata(run, fake, make_pdf):
    path = make_pdf()
    run(path)
    report = run(path, ProcessOptions(force_extraction="all"))
    assert report.metadata.kind is StatusKind.SKIPPED
    assert report.extraction.is_completed
    assert fake.calls["metadata"] == 1


def test_extraction_completion_keeps_refinement_status(run, db, make_pdf):
    path = make_pdf()
    first = run(path, ProcessOptions(refine=True))
    run(path, ProcessOptions(force_extraction=True))
    assert db.get_stage_status(first.document_id, Stage.REFINEMENT).is_completed


# ── Failures ─────────────────────────────────────────────────────────


def test_failed_stage_skips_rest_and_returns(run, db, fake, make_pdf):
    fake.fail["extraction"] = "rate limited"
    report = run(make_pdf(), ProcessOptions(refine=True))

    assert report.ocr.is_completed
    assert report.metadata.is_completed
    assert report.extraction == StageStatus.failed("rate limited")
    assert report.refinement.kind is StatusKind.SKIPPED
    assert report.failed
    assert report.error == "extraction: rate limited"

    stored = _stored(db, report.document_id)
    assert stored[Stage.EXTRACTION] == StageStatus.failed("rate limited")
    assert stored[Stage.REFINEMENT].kind is StatusKind.SKIPPED
    assert fake.calls["refinement"] == 0


def test_failed_stage_reruns_next_time(run, fake, make_pdf):
    path = make_pdf()
    fake.fail["metadata"] = "timeout talking to server"
    run(path)

    del fake.fail["metadata"]
    report = run(path)
    assert report.ocr.kind is StatusKind.SKIPPED
    assert report.metadata.is_completed
    assert report.extraction.is_completed
    assert report.records == 3


def test_executor_exception_becomes_failure(db, schema, config, fake, make_pdf):
    def exploding(content):
        raise ValueError("bad json from model")

    executors = fake.executors()
    executors.metadata = exploding
    report = PipelineOrchestrator(db, schema, config, executors).process_document(make_pdf())

    assert report.metadata == StageStatus.failed("bad json from model")
    assert report.extraction.kind is StatusKind.SKIPPED


def test_status_write_failure_fails_the_stage(db, schema, config, fake, make_pdf):
    store = db.set_stage_status

    def locked_on_extraction(doc_id, stage, status, reset=()):
        if stage is Stage.EXTRACTION and status.is_completed:
            raise sqlite3.OperationalError("database is locked")
        return store(doc_id, stage, status, reset=reset)

    orchestrator = PipelineOrchestrator(db, schema, config, fake.executors())
    with patch.object(db, "set_stage_status", side_effect=locked_on_extraction):
        report = orchestrator.process_document(make_pdf(), ProcessOptions(refine=True))

    assert report.metadata.is_completed
    assert report.extraction.is_failed
    assert "database is locked" in report.extraction.reason
    assert report.refinement.kind is StatusKind.SKIPPED
    assert report.failed
    assert fake.calls["refinement"] == 0
    assert db.get_stage_status(report.document_id, Stage.EXTRACTION).kind is StatusKind.NOT_RUN


def test_storage_error_reported_on_running_stage(db, schema, config, fake, make_pdf):
    orchestrator = PipelineOrchestrator(db, schema, config, fake.executors())
    real_exists = db.stage_data_exists

    def broken_for_metadata(doc_id, stage):
        if stage is Stage.METADATA:
            raise sqlite3.DatabaseError("disk I/O error")
        return real_exists(doc_id, stage)

    with patch.object(db, "stage_data_exists", side_effect=broken_for_metadata):
        report = orchestrator.process_document(make_pdf())

    assert report.document_id is not None
    assert report.ocr.is_completed
    assert report.metadata.is_failed
    assert report.metadata.reason == "DatabaseError: disk I/O error"
    assert report.extraction.kind is StatusKind.SKIPPED
    assert report.error.startswith("metadata:")


def test_record_count_error_names_the_step(db, schema, config, fake, make_pdf):
    orchestrator = PipelineOrchestrator(db, schema, config, fake.executors())
    path = make_pdf()
    orchestrator.process_document(path)

    with patch.object(db, "count_records", side_effect=sqlite3.OperationalError("no such table")):
        report = orchestrator.process_document(path)

    assert report.failed
    assert "counting records: OperationalError: no such table" in report.error


def test_empty_ocr_content_is_failure(db, schema, config, fake, make_pdf):
    executors = fake.executors()
    executors.ocr = lambda path: StageResult.completed(OCRPayload(content="  ", provider="fake"))
    report = PipelineOrchestrator(db, schema, config, executors).process_document(make_pdf())
    assert report.ocr.is_failed
    assert "no content" in report.ocr.reason


def test_stage_timeout_recorded_as_failure(db, schema, fake, make_pdf):
    release = threading.Event()

    def slow_metadata(content):
        release.wait(5)
        return fake.metadata(content)

    cfg = PipelineConfig(
        dedup=DedupSettings(method="jaccard"), stage_timeout_seconds=0.2
    )
    executors = fake.executors()
    executors.metadata = slow_metadata
    try:
        report = PipelineOrchestrator(db, schema, cfg, executors).process_document(make_pdf())
    finally:
        release.set()

    assert report.ocr.is_completed
    assert report.metadata == StageStatus.failed("timeout")
    assert report.extraction.kind is StatusKind.SKIPPED
    assert db.get_stage_status(report.document_id, Stage.METADATA) == StageStatus.failed("timeout")


# ── Desync ───────────────────────────────────────────────────────────


def test_missing_records_trigger_reextraction(run, db, fake, make_pdf):
    path = make_pdf()
    first = run(path)
    db._conn.execute("DELETE FROM records WHERE document_id = ?", (first.document_id,))
    db._conn.commit()

    second = run(path)
    assert second.extraction.is_completed
    assert second.records == 3
    assert fake.calls["extraction"] == 2


def test_missing_content_triggers_reocr(run, db, fake, make_pdf):
    path = make_pdf()
    first = run(path)
    db._conn.execute("UPDATE documents SET content = NULL WHERE document_id = ?", (first.document_id,))
    db._conn.commit()

    second = run(path)
    assert second.ocr.is_completed
    assert fake.calls["ocr"] == 2


# ── Record Restoration ───────────────────────────────────────────────


def test_forced_extraction_restores_physically_deleted_record(run, db, fake, make_pdf):
    fake.records = fake.records + [
        {"species": "Tadarida brasiliensis", "location": "Bridge D", "sentences": []},
        {"species": "Corynorhinus townsendii", "location": "Mine E", "sentences": []},
    ]
    path = make_pdf()
    first = run(path, ProcessOptions(refine=True))
    assert first.records == 5

    db._conn.execute(
        "DELETE FROM records WHERE document_id = ? AND record_id = ?",
        (first.document_id, "Smith_2021_1_r2"),
    )
    db._conn.commit()

    second = run(path, ProcessOptions(force_extraction="all", refine=True))
    assert second.records == 5

    records = {r["species"]: r["record_id"] for r in db.get_records(first.document_id)}
    assert records["Eptesicus fuscus"] == "Smith_2021_1_r6"
    assert records["Myotis lucifugus"] == "Smith_2021_1_r1"


def test_user_deleted_records_stay_deleted(run, db, fake, make_pdf):
    path = make_pdf()
    first = run(path)
    db._conn.execute(
        "UPDATE records SET deleted_by_user = '2024-01-01' WHERE record_id = 'Smith_2021_1_r1'"
    )
    db._conn.commit()

    second = run(path, ProcessOptions(force_extraction="all"))
    assert second.records == 2
    context_ids = {r["record_id"] for r in fake.contexts["extraction"]}
    assert "Smith_2021_1_r1" not in context_ids


# ── Refinement ───────────────────────────────────────────────────────


def test_refinement_updates_in_place_and_keeps_ids(run, db, fake, make_pdf):
    def refine(records):
        records[0]["location"] = "Cave A, north chamber"
        records.append({"species": "Myotis septentrionalis", "location": "Cave F", "sentences": []})
        return records

    fake.refine_fn = refine
    report = run(make_pdf(), ProcessOptions(refine=True))

    rows = {r["record_id"]: r for r in db.get_records(report.document_id)}
    assert report.records == 4
    assert rows["Smith_2021_1_r1"]["location"] == "Cave A, north chamber"
    assert rows["Smith_2021_1_r1"]["fields_changed_count"] == 1
    assert rows["Smith_2021_1_r2"]["fields_changed_count"] == 0
    assert rows["Smith_2021_1_r4"]["species"] == "Myotis septentrionalis"


def test_refinement_ignores_unknown_ids(run, db, fake, make_pdf):
    def refine(records):
        return records + [{"record_id": "Smith_2021_1_r99", "species": "Ghost bat"}]

    fake.refine_fn = refine
    report = run(make_pdf(), ProcessOptions(refine=True))
    assert report.refinement.is_completed
    assert report.records == 3


def test_refinement_leaves_human_edited_rows(run, db, fake, make_pdf):
    path = make_pdf()
    first = run(path)
    db._conn.execute(
        "UPDATE records SET human_edited = '2024-01-01', location = 'Verified cave' "
        "WHERE record_id = 'Smith_2021_1_r1'"
    )
    db._conn.commit()

    def refine(records):
        for r in records:
            r["location"] = "Model guess"
        return records

    fake.refine_fn = refine
    run(path, ProcessOptions(refine={first.document_id}))

    rows = {r["record_id"]: r for r in db.get_records(first.document_id)}
    assert rows["Smith_2021_1_r1"]["location"] == "Verified cave"
    assert rows["Smith_2021_1_r2"]["location"] == "Model guess"


def test_refinement_not_run_without_opt_in(run, fake, make_pdf):
    run(make_pdf())
    assert fake.calls["refinement"] == 0


# ── Configuration ────────────────────────────────────────────────────


def test_llm_dedup_without_judge_fails_fast(db, schema, fake):
    cfg = PipelineConfig(dedup=DedupSettings(method="llm"))
    with pytest.raises(ConfigurationError):
        PipelineOrchestrator(db, schema, cfg, fake.executors())


def test_embedding_dedup_uses_embedder(db, schema, fake, make_pdf):
    cfg = PipelineConfig(dedup=DedupSettings(method="embedding", threshold=0.99))
    executors = fake.executors()
    embedded = []

    def embed(texts):
        embedded.extend(texts)
        return [[float(t.count(c)) for c in "abcdefghijklmnopqrstuvwxyz "] for t in texts]

    executors.embed = embed

    path = make_pdf()
    process_document(path, db, schema, cfg, executors)
    report = process_document(path, db, schema, cfg, executors, ProcessOptions(force_extraction="all"))
    assert report.records == 3
    assert "myotis lucifugus" in embedded
