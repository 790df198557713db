"""Text embeddings through Ollama, used transiently by embedding deduplication."""

import logging
from typing import Optional

import ollama

from ecoextract.core.config import PipelineConfig

logger = logging.getLogger(__name__)


class OllamaEmbedder:
    def __init__(self, config: PipelineConfig, client: Optional[ollama.Client] = None):
        self.model = config.dedup.embedding_model
        self.client = client or ollama.Client(host=config.ollama_host)

    def __call__(self, texts: list[str]) -> list[list[float]]:
        return self.embed(texts)

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self.client.embed(model=self.model, input=texts)
        vectors = [list(v) for v in response.embeddings]
        if len(vectors) != len(texts):
            raise RuntimeError(
                f"Embedding model {self.model} returned {len(vectors)} vectors for {len(texts)} texts"
            )
        logger.debug("Embedded %d texts with %s", len(texts), self.model)
        return vectors
