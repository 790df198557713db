"""Publication metadata and an OCR quality review from the first pages of a paper."""

import logging
import re
from typing import Optional

from ecoextract.agents.enrichment import CrossRefEnricher
from ecoextract.agents.llm import LLMUnavailableError, StructuredLLM
from ecoextract.agents.models import DocumentAudit, MetadataPayload, StageResult
from ecoextract.core.config import PipelineConfig

logger = logging.getLogger(__name__)

_PAGE_SPLIT_RE = re.compile(r"(?=^--- PAGE \d+ ---$)", re.MULTILINE)

SYSTEM_PROMPT = (
    "You read the opening pages of a scientific publication.\n\n"
    "publication_metadata: its bibliographic metadata. Use only what is printed "
    "on the pages. Leave a field null when it is not stated. first_author_lastname "
    "is the family name of the first listed author. bibliography lists the "
    "references cited, one string per reference, if they appear on these pages.\n\n"
    "ocr_audit: the text came from OCR. In errors_found describe garbled words, "
    "misread characters, broken species names or numbers that look wrong. In "
    "tables_reconstructed describe tables whose rows or columns were scrambled "
    "and how they should read. Leave both null when the text reads cleanly."
)


def first_pages(content: str, limit: int) -> str:
    """The first `limit` pages of page-marked content; unmarked content is returned whole."""
    pages = [p for p in _PAGE_SPLIT_RE.split(content) if p.strip()]
    if len(pages) <= 1:
        return content
    return "".join(pages[:limit])


class MetadataExecutor:
    def __init__(
        self,
        config: PipelineConfig,
        llm: Optional[StructuredLLM] = None,
        enricher: Optional[CrossRefEnricher] = None,
    ):
        self.models = config.metadata_models
        self.page_limit = config.metadata_page_limit
        self.llm = llm or StructuredLLM(host=config.ollama_host)
        if enricher is None and config.enrichment.crossref:
            enricher = CrossRefEnricher(config.enrichment)
        self.enricher = enricher

    def __call__(self, content: str) -> StageResult:
        if not content or not content.strip():
            return StageResult.failed("No document content for metadata extraction")

        excerpt = first_pages(content, self.page_limit)
        try:
            response = self.llm.chat_structured(
                self.models,
                SYSTEM_PROMPT,
                f"## Publication\n\n{excerpt}",
                DocumentAudit,
            )
        except LLMUnavailableError as exc:
            logger.error("Metadata extraction failed on all models: %s", exc.error_log)
            return StageResult.failed(f"Metadata extraction failed: {exc.error_log}")

        audit: DocumentAudit = response.output
        metadata = audit.publication_metadata
        log = response.error_log
        if self.enricher is not None:
            metadata, filled = self.enricher.enrich(metadata)
            if filled:
                note = f"crossref filled: {', '.join(filled)}"
                log = f"{log}; {note}" if log else note

        logger.info(
            "Metadata: %s (%s, %s) via %s",
            (metadata.title or "untitled")[:60],
            metadata.first_author_lastname or "?",
            metadata.publication_year or "?",
            response.model,
        )
        return StageResult.completed(
            MetadataPayload(
                metadata=metadata,
                model=response.model,
                log=log,
                ocr_audit=None if audit.ocr_audit.is_empty() else audit.ocr_audit,
            )
        )
