"""Shared data models for the stage executors."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from ecoextract.core.stages import StageStatus


class StageResult(BaseModel):
    """What an executor hands back: Completed with a payload, or Failed(reason)."""

    status: StageStatus
    payload: Any = None

    @classmethod
    def completed(cls, payload: Any) -> "StageResult":
        return cls(status=StageStatus.completed(), payload=payload)

    @classmethod
    def failed(cls, reason: str) -> "StageResult":
        return cls(status=StageStatus.failed(reason))


# ── OCR ──────────────────────────────────────────────────────────────


class OCRPayload(BaseModel):
    content: str
    provider: str
    log: Optional[str] = None


# ── Metadata ─────────────────────────────────────────────────────────


class PublicationMetadata(BaseModel):
    """Bibliographic fields read from the first pages of a paper."""

    title: Optional[str] = None
    first_author_lastname: Optional[str] = None
    authors: Optional[list[str]] = None
    publication_year: Optional[int] = None
    doi: Optional[str] = None
    journal: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None
    pages: Optional[str] = None
    issn: Optional[str] = None
    publisher: Optional[str] = None
    bibliography: Optional[list[str]] = None
    language: Optional[str] = None


class OCRAudit(BaseModel):
    """The model's review of OCR quality on the pages it read."""

    errors_found: Optional[str] = None
    tables_reconstructed: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.errors_found or self.tables_reconstructed)


class DocumentAudit(BaseModel):
    """Structured reply of the metadata stage: bibliography plus an OCR review."""

    publication_metadata: PublicationMetadata = Field(default_factory=PublicationMetadata)
    ocr_audit: OCRAudit = Field(default_factory=OCRAudit)


class MetadataPayload(BaseModel):
    metadata: PublicationMetadata
    model: str
    log: Optional[str] = None
    ocr_audit: Optional[OCRAudit] = None


# ── Extraction / Refinement ──────────────────────────────────────────


class RecordsOutput(BaseModel):
    """Structured reply from the extraction and refinement models."""

    records: list[dict] = Field(default_factory=list)
    reasoning: str = ""


class RecordsPayload(BaseModel):
    records: list[dict]
    reasoning: str = ""
    model: Optional[str] = None
    prompt_hash: Optional[str] = None
    log: Optional[str] = None


# ── Deduplication ────────────────────────────────────────────────────


class DedupVerdict(BaseModel):
    """1-based positions of the new records judged not to be duplicates."""

    unique_indices: list[int] = Field(default_factory=list)
    reasoning: str = ""
