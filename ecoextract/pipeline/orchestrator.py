"""Runs the four stages for one document: guards, forced re-runs, cascades, failures."""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Any, Callable, Optional

from ecoextract.agents import StageExecutors
from ecoextract.agents.models import StageResult
from ecoextract.agents.ocr import compute_file_hash
from ecoextract.core.config import ConfigurationError, PipelineConfig
from ecoextract.core.database import RecordDatabase
from ecoextract.core.record_schema import RecordSchema
from ecoextract.core.stages import STAGE_ORDER, Stage, StageStatus, invalidate, should_run
from ecoextract.pipeline.models import ProcessOptions, StatusReport
from ecoextract.records.dedup import deduplicate
from ecoextract.records.ids import assign_ids, is_valid_record_id, max_sequence, resolve_id_prefix

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Sequences OCR → metadata → extraction → refinement over one storage connection."""

    def __init__(
        self,
        db: RecordDatabase,
        schema: RecordSchema,
        config: PipelineConfig,
        executors: StageExecutors,
    ):
        self.db = db
        self.schema = schema
        self.config = config
        self.executors = executors
        check_dedup_collaborators(config, executors)
        self._runners: dict[Stage, Callable[[int, Path], StageStatus]] = {
            Stage.OCR: self._run_ocr,
            Stage.METADATA: self._run_metadata,
            Stage.EXTRACTION: self._run_extraction,
            Stage.REFINEMENT: self._run_refinement,
        }

    # ── Public API ───────────────────────────────────────────

    def process_document(
        self, pdf_path: str | Path, options: Optional[ProcessOptions] = None
    ) -> StatusReport:
        """Run every stage that needs running and report the outcome.

        Stage failures are reported, never raised. Only errors before a
        document row exists (unreadable file, storage unavailable) propagate;
        anything raised later is reported against the stage that was running.
        """
        pdf_path = Path(pdf_path)
        options = options or ProcessOptions()

        file_hash = compute_file_hash(pdf_path)
        doc_id = self.db.get_or_create_document(pdf_path, file_hash)
        report = StatusReport(file=str(pdf_path), document_id=doc_id)
        logger.info("Processing %s (document %d)", pdf_path.name, doc_id)

        active, step = STAGE_ORDER[0], "resetting forced stages"
        try:
            forced = options.forced_stages(doc_id)
            if forced:
                logger.info("  Forcing re-run of: %s", ", ".join(s.value for s in forced))
                self.db.reset_stages(doc_id, forced)

            blocked_by: Optional[Stage] = None
            for stage in STAGE_ORDER:
                active, step = stage, None
                if stage is Stage.REFINEMENT and not options.refinement_requested(doc_id):
                    report.set_status(stage, StageStatus.skipped())
                    continue

                if blocked_by is not None:
                    logger.info("  %s: skipped (%s failed)", stage.value, blocked_by.value)
                    report.set_status(stage, StageStatus.skipped())
                    self._persist_quietly(doc_id, stage, StageStatus.skipped())
                    continue

                current = self.db.get_stage_status(doc_id, stage)
                if not should_run(current, self.db.stage_data_exists(doc_id, stage)):
                    logger.info("  %s: already completed, skipping", stage.value)
                    report.set_status(stage, StageStatus.skipped())
                    continue
                if current.is_completed:
                    logger.warning("  %s: marked completed but data is missing, re-running", stage.value)

                outcome = self._run_stage(stage, doc_id, pdf_path)
                if outcome.is_completed:
                    # A completion that cannot be stored is not a completion.
                    self.db.set_stage_status(doc_id, stage, outcome, reset=invalidate(stage))
                    report.set_status(stage, outcome)
                    logger.info("  %s: completed", stage.value)
                else:
                    report.set_status(stage, outcome)
                    self._persist_quietly(doc_id, stage, outcome)
                    logger.error("  %s: %s", stage.value, outcome)
                    blocked_by = stage

            step = "counting records"
            report.records = self.db.count_records(doc_id)
        except Exception as exc:
            logger.exception("  %s raised for document %d", active.value, doc_id)
            reason = f"{type(exc).__name__}: {exc}"
            report.fail_from(active, f"{step}: {reason}" if step else reason)
            return report

        logger.info("Finished %s: %d records", pdf_path.name, report.records)
        return report

    # ── Stage Dispatch ───────────────────────────────────────

    def _run_stage(self, stage: Stage, doc_id: int, pdf_path: Path) -> StageStatus:
        """Run one stage; every exception becomes Failed(reason)."""
        try:
            return self._runners[stage](doc_id, pdf_path)
        except Exception as exc:
            logger.exception("  %s raised for document %d", stage.value, doc_id)
            return StageStatus.failed(str(exc) or type(exc).__name__)

    def _persist_quietly(self, doc_id: int, stage: Stage, status: StageStatus) -> None:
        """Store a failure or skip; the report already carries it if the write fails."""
        try:
            self.db.set_stage_status(doc_id, stage, status)
        except Exception as exc:
            logger.error("  Could not store %s status for document %d: %s", stage.value, doc_id, exc)

    def _call(self, executor: Callable[..., StageResult], *args: Any) -> StageResult:
        """Invoke an executor, bounded by the stage timeout when one is configured."""
        timeout = self.config.stage_timeout_seconds
        if timeout is None:
            return executor(*args)

        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(executor, *args)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            # The call keeps running in the background; its result is dropped.
            logger.error("  Executor timed out after %.1fs", timeout)
            return StageResult.failed("timeout")
        finally:
            pool.shutdown(wait=False)

    @staticmethod
    def _unsettled(result: StageResult) -> Optional[StageStatus]:
        """The failure to report, or None when the executor completed."""
        if result.status.is_completed:
            return None
        if result.status.is_failed:
            return result.status
        return StageStatus.failed(f"executor returned {result.status}")

    # ── Stages ───────────────────────────────────────────────

    def _run_ocr(self, doc_id: int, pdf_path: Path) -> StageStatus:
        result = self._call(self.executors.ocr, pdf_path)
        failure = self._unsettled(result)
        if failure is not None:
            return failure
        payload = result.payload
        if not payload.content or not payload.content.strip():
            return StageStatus.failed("OCR returned no content")
        self.db.save_content(doc_id, payload.content, payload.provider, payload.log)
        logger.info("  OCR: %d chars via %s", len(payload.content), payload.provider)
        return StageStatus.completed()

    def _run_metadata(self, doc_id: int, pdf_path: Path) -> StageStatus:
        doc = self.db.get_document(doc_id)
        result = self._call(self.executors.metadata, doc["content"])
        failure = self._unsettled(result)
        if failure is not None:
            return failure
        payload = result.payload
        audit = payload.ocr_audit.model_dump() if payload.ocr_audit else None
        self.db.save_metadata(
            doc_id, payload.metadata.model_dump(), payload.model, payload.log, ocr_audit=audit
        )
        return StageStatus.completed()

    def _run_extraction(self, doc_id: int, pdf_path: Path) -> StageStatus:
        doc = self.db.get_document(doc_id)
        context = self.db.get_records(doc_id)
        result = self._call(self.executors.extraction, doc["content"], context, doc)
        failure = self._unsettled(result)
        if failure is not None:
            return failure
        payload = result.payload

        added = self._add_new_records(doc_id, doc, payload.records, payload.model, payload.prompt_hash)
        self.db.save_reasoning(doc_id, Stage.EXTRACTION, payload.reasoning)
        self.db.set_records_extracted(doc_id, self.db.count_records(doc_id))
        logger.info("  Extraction: %d candidates, %d new", len(payload.records), added)
        return StageStatus.completed()

    def _run_refinement(self, doc_id: int, pdf_path: Path) -> StageStatus:
        doc = self.db.get_document(doc_id)
        context = self.db.get_records(doc_id)
        result = self._call(self.executors.refinement, doc["content"], context, doc)
        failure = self._unsettled(result)
        if failure is not None:
            return failure
        payload = result.payload

        stored_ids = set(self.db.get_record_ids(doc_id))
        updates, additions = [], []
        for record in payload.records:
            rid = record.get("record_id")
            if not is_valid_record_id(rid):
                additions.append(record)
            elif rid in stored_ids:
                updates.append(record)
            else:
                logger.warning("  Refinement returned unknown record id %s, ignoring", rid)

        updated = self.db.update_records(doc_id, updates, payload.model, payload.prompt_hash)
        added = self._add_new_records(doc_id, doc, additions, payload.model, payload.prompt_hash)
        self.db.save_reasoning(doc_id, Stage.REFINEMENT, payload.reasoning)
        self.db.set_records_extracted(doc_id, self.db.count_records(doc_id))
        logger.info("  Refinement: %d updated, %d new", updated, added)
        return StageStatus.completed()

    def _add_new_records(
        self,
        doc_id: int,
        doc: dict,
        candidates: list[dict],
        model: Optional[str],
        prompt_hash: Optional[str],
    ) -> int:
        """Deduplicate candidates against every stored row, assign ids, insert."""
        if not candidates:
            return 0

        # Human-deleted rows take part so a rejected record is not re-added.
        stored = self.db.get_records(doc_id, include_deleted=True)
        dedup = self.config.dedup
        result = deduplicate(
            candidates,
            stored,
            self.schema.unique_fields,
            method=dedup.method,
            threshold=dedup.threshold,
            embed=self.executors.embed,
            judge=self.executors.judge,
        )
        if not result.unique_records:
            return 0

        author, year = resolve_id_prefix(doc, result.unique_records)
        records = assign_ids(
            [{k: v for k, v in r.items() if k != "record_id"} for r in result.unique_records],
            max_sequence(self.db.get_record_ids(doc_id)),
            author,
            year,
        )
        return self.db.insert_records(doc_id, records, model, prompt_hash)


def process_document(
    pdf_path: str | Path,
    db: RecordDatabase,
    schema: RecordSchema,
    config: PipelineConfig,
    executors: StageExecutors,
    options: Optional[ProcessOptions] = None,
) -> StatusReport:
    """Run the pipeline for one document on an open connection."""
    return PipelineOrchestrator(db, schema, config, executors).process_document(pdf_path, options)


def check_dedup_collaborators(config: PipelineConfig, executors: StageExecutors) -> None:
    """Fail before any document is touched if the dedup method has nothing to call."""
    method = config.dedup.method
    if method == "embedding" and executors.embed is None:
        raise ConfigurationError("Embedding deduplication is configured but no embedder was given")
    if method == "llm" and executors.judge is None:
        raise ConfigurationError("LLM deduplication is configured but no judge was given")
