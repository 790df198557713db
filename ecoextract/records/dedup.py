"""Deduplicate newly extracted records against records already stored."""

import json
import logging
import unicodedata
from typing import Any, Callable, Literal, Optional, Sequence

import numpy as np
from pydantic import BaseModel

from ecoextract.core.config import ConfigurationError

logger = logging.getLogger(__name__)

DedupMethod = Literal["llm", "jaccard", "embedding"]

# texts -> one vector per text
EmbedFn = Callable[[list[str]], Sequence[Sequence[float]]]
# (new, existing, key_fields) -> 0-based indices of unique new records
JudgeFn = Callable[[list[dict], list[dict], list[str]], Optional[list[int]]]

NGRAM_SIZE = 3


# ── Result Model ─────────────────────────────────────────────────────


class DedupResult(BaseModel):
    """Records that survived deduplication plus the number dropped."""

    unique_records: list[dict]
    duplicates_found: int


# ── Public API ───────────────────────────────────────────────────────


def deduplicate(
    new_records: list[dict],
    existing_records: list[dict],
    unique_fields: list[str],
    method: DedupMethod = "jaccard",
    threshold: float = 0.9,
    embed: Optional[EmbedFn] = None,
    judge: Optional[JudgeFn] = None,
) -> DedupResult:
    """Keep the new records that do not duplicate an existing one.

    jaccard/embedding compare field by field on `unique_fields`, skipping
    any field that is empty on either side. A pair is a duplicate when at
    least one field was compared and every compared field reached
    `threshold`. llm hands both sets to `judge` in a single call.
    """
    if not unique_fields:
        raise ConfigurationError("Deduplication needs at least one unique field")
    if method not in ("llm", "jaccard", "embedding"):
        raise ConfigurationError(f"Unknown deduplication method: {method}")
    if method == "embedding" and embed is None:
        raise ConfigurationError("Embedding deduplication needs an embedding function")
    if method == "llm" and judge is None:
        raise ConfigurationError("LLM deduplication needs a judge")

    if not new_records:
        return DedupResult(unique_records=[], duplicates_found=0)
    if not existing_records:
        return DedupResult(unique_records=list(new_records), duplicates_found=0)

    logger.info(
        "Deduplicating %d new against %d existing records (%s, key fields: %s)",
        len(new_records),
        len(existing_records),
        method,
        ", ".join(unique_fields),
    )

    if method == "llm":
        unique_idx = _llm_unique_indices(new_records, existing_records, unique_fields, judge)
    else:
        similarity = _jaccard_field if method == "jaccard" else _EmbeddingSimilarity(embed)
        unique_idx = []
        for i, new in enumerate(new_records, 1):
            match = _find_duplicate(new, existing_records, unique_fields, similarity, threshold)
            if match is None:
                unique_idx.append(i - 1)
                logger.info("  Record %d: unique", i)
            else:
                j, compared = match
                logger.info(
                    "  Record %d: duplicate of existing record %d (fields: %s)",
                    i, j + 1, ", ".join(compared),
                )

    unique = [new_records[i] for i in unique_idx]
    duplicates = len(new_records) - len(unique)
    logger.info("Deduplication complete: %d unique, %d duplicates", len(unique), duplicates)
    return DedupResult(unique_records=unique, duplicates_found=duplicates)


# ── Field-by-field Matching ──────────────────────────────────────────


def _find_duplicate(
    new: dict,
    existing_records: list[dict],
    unique_fields: list[str],
    similarity: Callable[[str, str], float],
    threshold: float,
) -> Optional[tuple[int, list[str]]]:
    """Index of the first existing record `new` duplicates, with the fields compared."""
    for j, existing in enumerate(existing_records):
        compared: list[str] = []
        all_match = True
        for field in unique_fields:
            a, b = new.get(field), existing.get(field)
            if not is_populated(a) or not is_populated(b):
                continue
            compared.append(field)
            if similarity(field_text(a), field_text(b)) < threshold:
                all_match = False
                break
        if compared and all_match:
            return j, compared
    return None


def _jaccard_field(a: str, b: str) -> float:
    return jaccard_similarity(a, b)


class _EmbeddingSimilarity:
    """Cosine similarity of embeddings, caching vectors within one dedup call."""

    def __init__(self, embed: EmbedFn):
        self._embed = embed
        self._cache: dict[str, np.ndarray] = {}

    def __call__(self, a: str, b: str) -> float:
        a, b = canonicalize(a), canonicalize(b)
        missing = [t for t in dict.fromkeys((a, b)) if t not in self._cache]
        if missing:
            vectors = self._embed(missing)
            for text, vec in zip(missing, vectors):
                self._cache[text] = np.asarray(vec, dtype=float)
        return cosine_similarity(self._cache[a], self._cache[b])


# ── LLM Adjudication ─────────────────────────────────────────────────


def _llm_unique_indices(
    new_records: list[dict],
    existing_records: list[dict],
    unique_fields: list[str],
    judge: JudgeFn,
) -> list[int]:
    """Indices the judge calls unique; no answer means everything is unique."""
    indices = judge(new_records, existing_records, unique_fields)
    if not indices:
        logger.info("  Judge returned no indices; keeping all %d records", len(new_records))
        return list(range(len(new_records)))

    keep = sorted({i for i in indices if 0 <= i < len(new_records)})
    for i in range(len(new_records)):
        verdict = "unique" if i in keep else "duplicate (identified by LLM)"
        logger.info("  Record %d: %s", i + 1, verdict)
    return keep


# ── Helpers ──────────────────────────────────────────────────────────


def is_populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and np.isnan(value):
        return False
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return len(str(value).strip()) > 0


def field_text(value: Any) -> str:
    """String form of a field value; lists are joined, dicts dumped as JSON."""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def canonicalize(text: str) -> str:
    """NFC-normalize, lowercase, trim."""
    return unicodedata.normalize("NFC", text).lower().strip()


def _ngrams(text: str, n: int) -> set[str]:
    return {text[i : i + n] for i in range(len(text) - n + 1)}


def jaccard_similarity(a: Optional[str], b: Optional[str], n: int = NGRAM_SIZE) -> float:
    """Character n-gram Jaccard similarity of two canonicalized strings (0.0–1.0)."""
    if a is None or b is None:
        return 0.0
    a, b = str(a), str(b)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0

    a, b = canonicalize(a), canonicalize(b)
    if a == b:
        return 1.0

    grams_a, grams_b = _ngrams(a, n), _ngrams(b, n)
    # Shorter than n on either side: only an exact match counts
    if not grams_a or not grams_b:
        return 0.0
    return len(grams_a & grams_b) / len(grams_a | grams_b)


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 if either has zero norm."""
    a = np.asarray(v1, dtype=float)
    b = np.asarray(v2, dtype=float)
    if a.shape != b.shape:
        raise ValueError("Vectors must have same length")
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)
