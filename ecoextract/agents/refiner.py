"""Refinement: re-read the paper and correct or complete the stored records."""

import logging
from typing import Optional

from ecoextract.agents.extractor import (
    build_field_guide,
    format_metadata,
    format_ocr_audit,
    format_records,
    normalize_records,
    prompt_hash,
    records_format,
)
from ecoextract.agents.llm import LLMUnavailableError, StructuredLLM
from ecoextract.agents.models import RecordsOutput, RecordsPayload, StageResult
from ecoextract.core.config import PipelineConfig
from ecoextract.core.record_schema import RecordSchema

logger = logging.getLogger(__name__)


def build_system_prompt(schema: RecordSchema) -> str:
    return f"""You review records previously extracted from a scientific publication.

## Record Fields
{build_field_guide(schema)}

## Instructions
- Check every existing record against the paper and correct wrong or missing values.
- Return every existing record with its "record_id" exactly as given. Never change,
  invent or drop a record_id.
- Add any record the paper reports that is missing, without a record_id.
- Use null for anything the paper does not state.
- Where the OCR Quality Analysis flags garbled text or tables, read those passages with care.
- Put your justification for each change in "reasoning"."""


class RefinementExecutor:
    def __init__(
        self,
        config: PipelineConfig,
        schema: RecordSchema,
        llm: Optional[StructuredLLM] = None,
    ):
        self.models = config.refinement_models
        self.schema = schema
        self.llm = llm or StructuredLLM(host=config.ollama_host)

    def __call__(
        self,
        content: str,
        existing_records: list[dict],
        document: Optional[dict] = None,
    ) -> StageResult:
        if not content or not content.strip():
            return StageResult.failed("No document content for refinement")

        system = build_system_prompt(self.schema)
        user = (
            f"## Publication Metadata\n{format_metadata(document)}\n\n"
            f"## OCR Quality Analysis\n{format_ocr_audit(document)}\n\n"
            f"## Existing Records\n{format_records(existing_records, self.schema, with_ids=True)}\n\n"
            f"## Publication\n\n{content}"
        )
        try:
            response = self.llm.chat_structured(
                self.models, system, user, RecordsOutput, schema=_with_record_id(self.schema)
            )
        except LLMUnavailableError as exc:
            logger.error("Refinement failed on all models: %s", exc.error_log)
            return StageResult.failed(f"Refinement failed: {exc.error_log}")

        output: RecordsOutput = response.output
        records = normalize_records(output.records, self.schema)
        logger.info("Refined %d records via %s", len(records), response.model)
        return StageResult.completed(
            RecordsPayload(
                records=records,
                reasoning=output.reasoning,
                model=response.model,
                prompt_hash=prompt_hash(system),
                log=response.error_log,
            )
        )


def _with_record_id(schema: RecordSchema) -> dict:
    fmt = records_format(schema)
    items = dict(fmt["properties"]["records"]["items"])
    items["properties"] = {"record_id": {"type": ["string", "null"]}, **items.get("properties", {})}
    fmt["properties"]["records"]["items"] = items
    return fmt
