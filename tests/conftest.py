import threading
from collections import Counter
from pathlib import Path

import pytest

from ecoextract.agents import StageExecutors
from ecoextract.agents.models import (
    MetadataPayload,
    OCRAudit,
    OCRPayload,
    PublicationMetadata,
    RecordsPayload,
    StageResult,
)
from ecoextract.core.config import DedupSettings, PipelineConfig
from ecoextract.core.database import RecordDatabase
from ecoextract.core.record_schema import parse_record_schema

SCHEMA_DOC = {
    "type": "object",
    "properties": {
        "records": {
            "type": "array",
            "items": {
                "type": "object",
                "x-unique-fields": ["species", "location", "host", "pathogen"],
                "required": ["species"],
                "properties": {
                    "species": {"type": "string", "description": "Scientific name"},
                    "location": {"type": ["string", "null"]},
                    "host": {"type": ["string", "null"]},
                    "pathogen": {"type": ["string", "null"]},
                    "sentences": {"type": "array", "items": {"type": "string"}},
                },
            },
        }
    },
}


@pytest.fixture()
def schema():
    return parse_record_schema(SCHEMA_DOC)


@pytest.fixture()
def config() -> PipelineConfig:
    return PipelineConfig(dedup=DedupSettings(method="jaccard", threshold=0.9))


@pytest.fixture()
def db(tmp_path, schema):
    rdb = RecordDatabase.open_path(tmp_path / "records.db", schema)
    yield rdb
    rdb.close()


@pytest.fixture()
def make_pdf(tmp_path):
    """Write a small file with distinct bytes; the fake OCR never parses it."""

    def _make(name: str = "paper.pdf", directory: Path | None = None) -> Path:
        path = (directory or tmp_path) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"%PDF-1.4\n% " + name.encode() + b"\n%%EOF\n")
        return path

    return _make


def bat_records() -> list[dict]:
    return [
        {"species": "Myotis lucifugus", "location": "Cave A", "sentences": ["Seen in Cave A."]},
        {"species": "Eptesicus fuscus", "location": "Barn B", "sentences": ["Roosting in Barn B."]},
        {"species": "Lasiurus borealis", "location": "Forest C", "sentences": ["Netted in Forest C."]},
    ]


# ── Fake Executors ───────────────────────────────────────────────────


class FakeStages:
    """Deterministic stand-ins for the four model-backed executors."""

    def __init__(self, records: list[dict] | None = None):
        self.records = bat_records() if records is None else records
        self.refine_fn = None
        self.fail: dict[str, str] = {}
        self.broken_files: set[str] = set()
        self.calls: Counter = Counter()
        self.contexts: dict[str, list] = {}
        self.documents: dict[str, dict] = {}
        self.ocr_audit: OCRAudit | None = None
        self._lock = threading.Lock()

    def _count(self, stage: str) -> None:
        with self._lock:
            self.calls[stage] += 1

    def ocr(self, path: Path) -> StageResult:
        self._count("ocr")
        if path.name in self.broken_files:
            raise RuntimeError(f"cannot open broken document: {path.name}")
        if "ocr" in self.fail:
            return StageResult.failed(self.fail["ocr"])
        return StageResult.completed(
            OCRPayload(content=f"--- PAGE 1 ---\nText of {path.name}", provider="fake")
        )

    def metadata(self, content: str) -> StageResult:
        self._count("metadata")
        if "metadata" in self.fail:
            return StageResult.failed(self.fail["metadata"])
        meta = PublicationMetadata(
            title="Bats of the north", first_author_lastname="Smith", publication_year=2021
        )
        return StageResult.completed(MetadataPayload(metadata=meta, model="fake", ocr_audit=self.ocr_audit))

    def extraction(self, content: str, existing: list[dict], document: dict) -> StageResult:
        self._count("extraction")
        self.contexts["extraction"] = existing
        self.documents["extraction"] = document
        if "extraction" in self.fail:
            return StageResult.failed(self.fail["extraction"])
        return StageResult.completed(
            RecordsPayload(
                records=[dict(r) for r in self.records],
                reasoning="found three bats",
                model="fake-model",
                prompt_hash="abc123",
            )
        )

    def refinement(self, content: str, existing: list[dict], document: dict) -> StageResult:
        self._count("refinement")
        self.contexts["refinement"] = existing
        if "refinement" in self.fail:
            return StageResult.failed(self.fail["refinement"])
        records = [dict(r) for r in existing]
        if self.refine_fn:
            records = self.refine_fn(records)
        return StageResult.completed(
            RecordsPayload(records=records, reasoning="checked", model="fake-model", prompt_hash="def456")
        )

    def executors(self) -> StageExecutors:
        return StageExecutors(
            ocr=self.ocr,
            metadata=self.metadata,
            extraction=self.extraction,
            refinement=self.refinement,
        )


@pytest.fixture()
def fake():
    return FakeStages()
