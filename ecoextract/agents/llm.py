"""Structured chat calls against Ollama with an ordered model fallback list."""

import logging
import re
from typing import Any, Optional, Type, TypeVar

import ollama
from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class LLMUnavailableError(RuntimeError):
    """Every model in the fallback list refused or failed."""

    def __init__(self, error_log: str):
        super().__init__(error_log)
        self.error_log = error_log


class LLMResponse(BaseModel):
    """Validated output plus which model produced it and what failed first."""

    model: str
    output: Any
    error_log: Optional[str] = None


class StructuredLLM:
    """Wraps one `ollama.Client`; the host comes from config, never the environment."""

    def __init__(self, host: Optional[str] = None, client: Optional[ollama.Client] = None):
        self.client = client or ollama.Client(host=host)

    def chat_structured(
        self,
        models: list[str],
        system: str,
        user: str,
        output_model: Type[T],
        schema: Optional[dict] = None,
    ) -> LLMResponse:
        """Ask each model in turn until one returns valid JSON for `output_model`.

        `schema` overrides the JSON schema sent as the response format (for
        dynamic record schemas); the reply is still validated with `output_model`.
        """
        attempts: list[str] = []
        for i, model in enumerate(models, 1):
            try:
                response = self.client.chat(
                    model=model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    format=schema or output_model.model_json_schema(),
                    options={"temperature": 0},
                    think=False,
                )
                raw = strip_thinking(response.message.content or "")
                if not raw.strip() or getattr(response, "done_reason", None) == "refusal":
                    logger.warning("Model %s refused (attempt %d/%d)", model, i, len(models))
                    attempts.append(f"{model}: refused")
                    continue
                output = output_model.model_validate_json(raw)
            except Exception as exc:
                logger.warning("Model %s failed (attempt %d/%d): %s", model, i, len(models), exc)
                attempts.append(f"{model}: {exc}")
                continue

            error_log = "; ".join(attempts) or None
            if error_log:
                logger.error("Fell back to %s after: %s", model, error_log)
            return LLMResponse(model=model, output=output, error_log=error_log)

        raise LLMUnavailableError("; ".join(attempts) or "no models configured")


def strip_thinking(content: str) -> str:
    """Drop a leading <think>...</think> block some reasoning models emit."""
    return re.sub(r"<think>.*?</think>", "", content, flags=re.DOTALL).strip()
