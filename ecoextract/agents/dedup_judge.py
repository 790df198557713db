"""LLM adjudicator for the `llm` deduplication strategy."""

import json
import logging
from typing import Optional

from ecoextract.agents.llm import LLMUnavailableError, StructuredLLM
from ecoextract.agents.models import DedupVerdict
from ecoextract.core.config import PipelineConfig

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You compare newly extracted records against records already stored for the "
    "same publication. A new record is a duplicate only if it describes the same "
    "observation as an existing record on the key fields, allowing for spelling, "
    "abbreviation and formatting differences. When in doubt, treat the record as "
    "unique. Return the 1-based numbers of the NEW records that are unique."
)


def _numbered(records: list[dict], fields: list[str]) -> str:
    return "\n".join(
        f"{i}. {json.dumps({f: r.get(f) for f in fields}, default=str)}"
        for i, r in enumerate(records, 1)
    )


class DuplicateJudge:
    """One batched call comparing all new records against all existing ones."""

    def __init__(self, config: PipelineConfig, llm: Optional[StructuredLLM] = None):
        self.model = config.dedup.model
        self.llm = llm or StructuredLLM(host=config.ollama_host)

    def __call__(
        self,
        new_records: list[dict],
        existing_records: list[dict],
        unique_fields: list[str],
    ) -> list[int]:
        """0-based indices of unique new records; empty when the model gives no answer."""
        user = (
            f"## Key Fields\n{', '.join(unique_fields)}\n\n"
            f"## Existing Records\n{_numbered(existing_records, unique_fields)}\n\n"
            f"## New Records\n{_numbered(new_records, unique_fields)}"
        )
        try:
            response = self.llm.chat_structured([self.model], SYSTEM_PROMPT, user, DedupVerdict)
        except LLMUnavailableError as exc:
            logger.warning("Dedup judge unavailable, keeping all records: %s", exc.error_log)
            return []

        verdict: DedupVerdict = response.output
        return [i - 1 for i in verdict.unique_indices]
