"""Record extraction: document content in, schema-shaped domain records out."""

import hashlib
import json
import logging
from typing import Optional

from ecoextract.agents.llm import LLMUnavailableError, StructuredLLM
from ecoextract.agents.models import RecordsOutput, RecordsPayload, StageResult
from ecoextract.core.config import PipelineConfig
from ecoextract.core.record_schema import RecordSchema

logger = logging.getLogger(__name__)


# ── Prompt Builder ───────────────────────────────────────────────────


def build_field_guide(schema: RecordSchema) -> str:
    lines = []
    for f in schema.fields.values():
        required = ", required" if f.required else ""
        lines.append(f"- **{f.name}** ({f.type}{required}): {f.description}")
    return "\n".join(lines)


def build_system_prompt(schema: RecordSchema) -> str:
    return f"""You extract structured records from scientific publications.

## Record Fields
{build_field_guide(schema)}

## Instructions
- Return one record per distinct observation reported in the paper.
- Records are identified by: {", ".join(schema.unique_fields)}. Do not repeat a record
  that is already listed under "Existing Records".
- Use null for anything the paper does not state. Do not invent values.
- Where the OCR Quality Analysis flags garbled text or tables, read those passages with care.
- Put your step-by-step justification in "reasoning"."""


def prompt_hash(system_prompt: str) -> str:
    """MD5 of the system prompt, stored with each record for provenance."""
    return hashlib.md5(system_prompt.encode()).hexdigest()


def records_format(schema: RecordSchema) -> dict:
    """JSON schema for the structured reply: a list of records plus reasoning."""
    return {
        "type": "object",
        "properties": {
            "records": {"type": "array", "items": schema.record_json_schema()},
            "reasoning": {"type": "string"},
        },
        "required": ["records"],
    }


def format_records(records: list[dict], schema: RecordSchema, with_ids: bool = False) -> str:
    if not records:
        return "(none)"
    keep = (["record_id"] if with_ids else []) + schema.field_names
    return json.dumps([{k: r.get(k) for k in keep} for r in records], indent=2, default=str)


def format_metadata(document: Optional[dict]) -> str:
    document = document or {}
    parts = [
        f"Title: {document.get('title') or 'unknown'}",
        f"First author: {document.get('first_author_lastname') or 'unknown'}",
        f"Year: {document.get('publication_year') or 'unknown'}",
    ]
    return "\n".join(parts)


def format_ocr_audit(document: Optional[dict]) -> str:
    """The metadata stage's OCR review, as prompt text."""
    audit = (document or {}).get("ocr_audit") or {}
    parts = []
    if audit.get("errors_found"):
        parts.append(f"Errors found: {audit['errors_found']}")
    if audit.get("tables_reconstructed"):
        parts.append(f"Tables: {audit['tables_reconstructed']}")
    return "\n".join(parts) or "No OCR audit available."


def normalize_records(raw: list[dict], schema: RecordSchema) -> list[dict]:
    """Shape model output to the schema; records missing a required field are dropped."""
    records = []
    for i, record in enumerate(raw, 1):
        if not isinstance(record, dict):
            logger.warning("Dropping record %d: not an object", i)
            continue
        try:
            records.append(schema.normalize_record(record))
        except ValueError as exc:
            logger.warning("Dropping record %d: %s", i, exc)
    return records


# ── Executor ─────────────────────────────────────────────────────────


class ExtractionExecutor:
    def __init__(
        self,
        config: PipelineConfig,
        schema: RecordSchema,
        llm: Optional[StructuredLLM] = None,
    ):
        self.models = config.extraction_models
        self.schema = schema
        self.llm = llm or StructuredLLM(host=config.ollama_host)

    def __call__(
        self,
        content: str,
        existing_records: list[dict],
        document: Optional[dict] = None,
    ) -> StageResult:
        if not content or not content.strip():
            return StageResult.failed("No document content for extraction")

        system = build_system_prompt(self.schema)
        user = (
            f"## Publication Metadata\n{format_metadata(document)}\n\n"
            f"## OCR Quality Analysis\n{format_ocr_audit(document)}\n\n"
            f"## Existing Records\n{format_records(existing_records, self.schema)}\n\n"
            f"## Publication\n\n{content}"
        )
        try:
            response = self.llm.chat_structured(
                self.models, system, user, RecordsOutput, schema=records_format(self.schema)
            )
        except LLMUnavailableError as exc:
            logger.error("Extraction failed on all models: %s", exc.error_log)
            return StageResult.failed(f"Extraction failed: {exc.error_log}")

        output: RecordsOutput = response.output
        records = normalize_records(output.records, self.schema)
        # Ids are assigned by the pipeline, never taken from a fresh extraction.
        for record in records:
            record.pop("record_id", None)
        logger.info("Extracted %d records via %s", len(records), response.model)
        return StageResult.completed(
            RecordsPayload(
                records=records,
                reasoning=output.reasoning,
                model=response.model,
                prompt_hash=prompt_hash(system),
                log=response.error_log,
            )
        )
