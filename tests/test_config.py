"""Tests for pipeline config loading."""

from pathlib import Path

import pytest

from ecoextract.core.config import ConfigurationError, PipelineConfig, load_pipeline_config

CONFIG_PATH = Path(__file__).parent.parent / "config" / "pipeline.yaml"


def test_defaults():
    cfg = load_pipeline_config()
    assert cfg.concurrency == 1
    assert cfg.dedup.method == "llm"
    assert cfg.dedup.threshold == 0.9
    assert cfg.stage_timeout_seconds is None
    assert cfg.extraction_models
    assert cfg.enrichment.crossref is False


def test_load_bundled_config():
    cfg = load_pipeline_config(CONFIG_PATH)
    assert cfg.ollama_host == "http://localhost:11434"
    assert cfg.extraction_models == ["deepseek-r1:32b", "qwen3:32b"]
    assert cfg.dedup.embedding_model == "nomic-embed-text"
    assert cfg.enrichment.crossref is False
    assert cfg.enrichment.timeout_seconds == 20


def test_partial_config(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("concurrency: 4\ndedup:\n  method: jaccard\n")
    cfg = load_pipeline_config(path)
    assert cfg.concurrency == 4
    assert cfg.dedup.method == "jaccard"
    assert cfg.dedup.threshold == 0.9


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("")
    assert load_pipeline_config(path) == PipelineConfig()


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_pipeline_config(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "body",
    [
        "dedup:\n  method: fuzzy\n",
        "dedup:\n  threshold: 1.5\n",
        "concurrency: 0\n",
        "extraction_models: []\n",
        "stage_timeout_seconds: -1\n",
    ],
)
def test_invalid_values(tmp_path, body):
    path = tmp_path / "cfg.yaml"
    path.write_text(body)
    with pytest.raises(ConfigurationError):
        load_pipeline_config(path)
