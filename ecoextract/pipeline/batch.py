"""Batch scheduler: one report per input PDF, sequential or over a bounded thread pool."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel

from ecoextract.agents import StageExecutors
from ecoextract.agents.ocr import compute_file_hash
from ecoextract.core.config import ConfigurationError, PipelineConfig
from ecoextract.core.database import RecordDatabase
from ecoextract.core.record_schema import RecordSchema
from ecoextract.core.stages import STAGE_ORDER
from ecoextract.pipeline.models import ProcessOptions, StatusReport
from ecoextract.pipeline.orchestrator import PipelineOrchestrator, check_dedup_collaborators

logger = logging.getLogger(__name__)


# ── Input Collection ─────────────────────────────────────────────────


def collect_pdf_files(paths: str | Path | Iterable[str | Path], recursive: bool = False) -> list[Path]:
    """Resolve a file, a list of files, or a directory into a sorted list of PDFs."""
    if isinstance(paths, (str, Path)):
        paths = [paths]

    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if not path.exists():
            raise ConfigurationError(f"Path does not exist: {path}")
        if path.is_dir():
            pattern = "**/*" if recursive else "*"
            found = sorted(
                p for p in path.glob(pattern) if p.is_file() and p.suffix.lower() == ".pdf"
            )
            if not found:
                raise ConfigurationError(f"No PDF files found in {path}")
            files.extend(found)
        elif path.suffix.lower() == ".pdf":
            files.append(path)
        else:
            raise ConfigurationError(f"Not a PDF file: {path}")
    return files


# ── Result ───────────────────────────────────────────────────────────


class BatchResult(BaseModel):
    """Reports in input order plus aggregate counters."""

    reports: list[StatusReport]

    @property
    def processed(self) -> int:
        return sum(1 for r in self.reports if not r.failed)

    @property
    def errored(self) -> int:
        return sum(1 for r in self.reports if r.failed)

    @property
    def total_records(self) -> int:
        return sum(r.records for r in self.reports)

    def format_table(self) -> str:
        """Plain-text success/failure breakdown, one row per file."""
        header = ["File", "OCR", "Metadata", "Extraction", "Refinement", "Records"]
        rows = [
            [Path(r.file).name, *(str(r.status(s)) for s in STAGE_ORDER), str(r.records)]
            for r in self.reports
        ]
        widths = [max(len(row[i]) for row in [header, *rows]) for i in range(len(header))]
        lines = ["  ".join(cell.ljust(w) for cell, w in zip(header, widths))]
        lines.append("  ".join("-" * w for w in widths))
        for row in rows:
            lines.append("  ".join(cell.ljust(w) for cell, w in zip(row, widths)))
        lines.append(
            f"Processed: {self.processed}  Errors: {self.errored}  "
            f"Total records: {self.total_records}"
        )
        return "\n".join(lines)


# ── Scheduler ────────────────────────────────────────────────────────


def run_batch(
    files: list[str | Path],
    db_path: str | Path,
    schema: RecordSchema,
    config: PipelineConfig,
    executors: Optional[StageExecutors] = None,
    options: Optional[ProcessOptions] = None,
    concurrency: Optional[int] = None,
) -> BatchResult:
    """Process every file; a failing document never stops the others."""
    executors = executors or StageExecutors.from_config(config, schema)
    options = options or ProcessOptions()
    workers = concurrency or config.concurrency
    check_dedup_collaborators(config, executors)

    files = [Path(f) for f in files]
    logger.info(
        "Starting batch: %d files, %d worker(s), schema %s",
        len(files),
        workers,
        schema.schema_hash()[:12],
    )

    # Tables are created once, up front, before workers start.
    db = RecordDatabase.open_path(db_path, schema)
    try:
        if workers <= 1 or len(files) <= 1:
            orchestrator = PipelineOrchestrator(db, schema, config, executors)
            reports = [_process_one(orchestrator, f, options) for f in files]
        else:
            reports = _run_parallel(files, db_path, schema, config, executors, options, workers)
    finally:
        db.close()

    result = BatchResult(reports=reports)
    logger.info(
        "Batch complete: %d processed, %d errors, %d total records",
        result.processed,
        result.errored,
        result.total_records,
    )
    return result


def _run_parallel(
    files: list[Path],
    db_path: str | Path,
    schema: RecordSchema,
    config: PipelineConfig,
    executors: StageExecutors,
    options: ProcessOptions,
    workers: int,
) -> list[StatusReport]:
    reports: list[Optional[StatusReport]] = [None] * len(files)

    def work(path: Path) -> StatusReport:
        # Each worker owns its connection for the document's lifetime.
        conn_db = RecordDatabase.open_path(db_path, schema)
        try:
            orchestrator = PipelineOrchestrator(conn_db, schema, config, executors)
            return _process_one(orchestrator, path, options)
        finally:
            conn_db.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(work, path): i for i, path in enumerate(files)}
        for future in as_completed(futures):
            i = futures[future]
            try:
                reports[i] = future.result()
            except Exception as exc:
                logger.error("Worker crashed on %s: %s", files[i].name, exc)
                reports[i] = StatusReport.crashed(str(files[i]), str(exc))
    return reports


def _process_one(
    orchestrator: PipelineOrchestrator, path: Path, options: ProcessOptions
) -> StatusReport:
    try:
        return orchestrator.process_document(path, options)
    except Exception as exc:
        logger.error("Processing %s failed: %s", path.name, exc)
        return StatusReport.crashed(
            str(path), str(exc) or type(exc).__name__, _known_document_id(orchestrator.db, path)
        )


def _known_document_id(db: RecordDatabase, path: Path) -> Optional[int]:
    """Id of the document row for this file, or None if it was never created."""
    try:
        return db.find_document_id(compute_file_hash(path))
    except Exception:
        return None
