"""Pipeline configuration: YAML loader and Pydantic models."""

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigurationError(ValueError):
    """Raised before any document is processed when setup is invalid."""


# ── Deduplication ────────────────────────────────────────────────────


class DedupSettings(BaseModel):
    """How new records are compared against stored ones."""

    method: Literal["llm", "jaccard", "embedding"] = "llm"
    threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    model: str = "qwen3:32b"
    embedding_model: str = "nomic-embed-text"


# ── Enrichment ───────────────────────────────────────────────────────


class EnrichmentSettings(BaseModel):
    """Optional CrossRef lookup that fills bibliographic gaps after the metadata stage."""

    crossref: bool = False
    mailto: Optional[str] = None
    timeout_seconds: float = Field(default=20.0, gt=0)


# ── Pipeline Config (top-level) ──────────────────────────────────────


class PipelineConfig(BaseModel):
    """Everything the stage executors and scheduler need, passed explicitly."""

    ollama_host: Optional[str] = None
    ocr_model: str = "minicpm-v"
    metadata_models: list[str] = Field(default_factory=lambda: ["qwen3:32b"])
    extraction_models: list[str] = Field(default_factory=lambda: ["deepseek-r1:32b"])
    refinement_models: list[str] = Field(default_factory=lambda: ["deepseek-r1:32b"])
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    concurrency: int = Field(default=1, ge=1)
    stage_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    metadata_page_limit: int = Field(default=3, ge=1)

    @field_validator("metadata_models", "extraction_models", "refinement_models")
    @classmethod
    def at_least_one_model(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("Each LLM stage needs at least one model")
        return v


def load_pipeline_config(path: str | Path | None = None) -> PipelineConfig:
    """Load a YAML pipeline config from disk, or return defaults when path is None."""
    if path is None:
        return PipelineConfig()

    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    try:
        return PipelineConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline config {path}: {exc}") from exc
