"""Stage executor bundle handed to the orchestrator."""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from ecoextract.agents.dedup_judge import DuplicateJudge
from ecoextract.agents.embeddings import OllamaEmbedder
from ecoextract.agents.extractor import ExtractionExecutor
from ecoextract.agents.llm import StructuredLLM
from ecoextract.agents.metadata import MetadataExecutor
from ecoextract.agents.ocr import OCRExecutor
from ecoextract.agents.refiner import RefinementExecutor
from ecoextract.core.config import PipelineConfig
from ecoextract.core.record_schema import RecordSchema


@dataclass
class StageExecutors:
    """The four stage executors plus the dedup collaborators.

    Each executor is a callable returning a `StageResult`; tests pass fakes.
    """

    ocr: Callable[..., Any]
    metadata: Callable[..., Any]
    extraction: Callable[..., Any]
    refinement: Callable[..., Any]
    embed: Optional[Callable[[list[str]], list[list[float]]]] = None
    judge: Optional[Callable[..., list[int]]] = None

    @classmethod
    def from_config(cls, config: PipelineConfig, schema: RecordSchema) -> "StageExecutors":
        """Ollama-backed executors sharing one client."""
        llm = StructuredLLM(host=config.ollama_host)
        return cls(
            ocr=OCRExecutor(config, client=llm.client),
            metadata=MetadataExecutor(config, llm=llm),
            extraction=ExtractionExecutor(config, schema, llm=llm),
            refinement=RefinementExecutor(config, schema, llm=llm),
            embed=OllamaEmbedder(config, client=llm.client),
            judge=DuplicateJudge(config, llm=llm),
        )
