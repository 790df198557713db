#!/usr/bin/env python3
"""Batch runner: OCR → metadata → extraction → refinement over a set of PDFs."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ecoextract.core.config import ConfigurationError, load_pipeline_config
from ecoextract.core.database import RecordDatabase
from ecoextract.core.record_schema import load_record_schema
from ecoextract.pipeline.batch import collect_pdf_files, run_batch
from ecoextract.pipeline.models import ProcessOptions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("pipeline")


def parse_selection(value: str | None):
    """`all` selects every document, `1,4,7` selects those document ids."""
    if value is None:
        return None
    if value == "all":
        return "all"
    try:
        return {int(v) for v in value.split(",") if v.strip()}
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected 'all' or comma-separated ids, got {value!r}")


# ── Pipeline ─────────────────────────────────────────────────────────


def run_pipeline(args: argparse.Namespace) -> int:
    t_start = time.time()

    # ── Pre-flight ───────────────────────────────────────────
    try:
        config = load_pipeline_config(args.config)
        if args.crossref:
            config.enrichment.crossref = True
        schema = load_record_schema(args.schema)
        files = collect_pdf_files(args.paths, recursive=args.recursive)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2
    logger.info("Schema: %d fields, unique on %s", len(schema.fields), ", ".join(schema.unique_fields))
    logger.info("Found %d PDF files", len(files))

    options = ProcessOptions(
        force_ocr=args.force_ocr,
        force_metadata=args.force_metadata,
        force_extraction=args.force_extraction,
        force_refinement=args.force_refinement,
        refine=args.refine,
    )

    try:
        result = run_batch(
            files,
            args.db,
            schema,
            config,
            options=options,
            concurrency=args.workers,
        )
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2

    # ── Final summary ────────────────────────────────────────
    elapsed = time.time() - t_start
    logger.info("=" * 60)
    logger.info("BATCH COMPLETE in %.1fs", elapsed)
    for line in result.format_table().splitlines():
        logger.info("%s", line)

    db = RecordDatabase.open_path(args.db, schema)
    try:
        logger.info("Database stats: %s", json.dumps(db.get_stats(), indent=2))
    finally:
        db.close()
    return 1 if result.errored else 0


# ── CLI ──────────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(description="Extract structured records from scientific PDFs")
    parser.add_argument("paths", nargs="+", help="PDF files and/or directories")
    parser.add_argument("--schema", required=True, help="Record schema (YAML or JSON)")
    parser.add_argument("--db", default="ecoextract_records.db", help="SQLite database path")
    parser.add_argument("--config", default=None, help="Pipeline config YAML")
    parser.add_argument("--recursive", action="store_true", help="Search directories recursively")
    parser.add_argument("--workers", type=int, default=None, help="Parallel documents")
    parser.add_argument("--crossref", action="store_true", help="Fill metadata gaps from CrossRef")
    for flag in ("force-ocr", "force-metadata", "force-extraction", "force-refinement", "refine"):
        parser.add_argument(
            f"--{flag}",
            nargs="?",
            const="all",
            default=None,
            type=parse_selection,
            help="'all' (default when given) or comma-separated document ids",
        )
    args = parser.parse_args()

    sys.exit(run_pipeline(args))


if __name__ == "__main__":
    main()
