"""CrossRef lookups that fill bibliographic fields the metadata model left empty."""

import logging
import time
from typing import Optional
from urllib.parse import quote

import requests

from ecoextract.agents.models import PublicationMetadata
from ecoextract.core.config import EnrichmentSettings

logger = logging.getLogger(__name__)

CROSSREF_WORKS_URL = "https://api.crossref.org/works"

_MAX_RETRIES = 3
_DATE_KEYS = ("published-print", "published-online", "issued")


# ── Work → Metadata ──────────────────────────────────────────────────


def _first(values) -> Optional[str]:
    if isinstance(values, list):
        return next((v for v in values if v), None)
    return values or None


def _year(work: dict) -> Optional[int]:
    """Print date first, then online, then CrossRef's `issued`."""
    for key in _DATE_KEYS:
        parts = (work.get(key) or {}).get("date-parts") or []
        if parts and parts[0] and parts[0][0]:
            return int(parts[0][0])
    return None


def parse_work(work: dict) -> dict:
    """PublicationMetadata fields from one CrossRef work record; missing ones are None."""
    people = [a for a in work.get("author") or [] if isinstance(a, dict)]
    authors = [" ".join(p for p in (a.get("given"), a.get("family")) if p) for a in people]
    return {
        "title": _first(work.get("title")),
        "first_author_lastname": people[0].get("family") if people else None,
        "authors": [a for a in authors if a] or None,
        "publication_year": _year(work),
        "doi": work.get("DOI"),
        "journal": _first(work.get("container-title")),
        "volume": work.get("volume"),
        "issue": work.get("issue"),
        "pages": work.get("page"),
        "issn": _first(work.get("ISSN")),
        "publisher": work.get("publisher"),
    }


# ── Client ───────────────────────────────────────────────────────────


class CrossRefEnricher:
    """Looks a paper up by DOI, falling back to a title and first-author search."""

    def __init__(self, settings: EnrichmentSettings):
        self.mailto = settings.mailto
        self.timeout = settings.timeout_seconds

    def lookup(self, metadata: PublicationMetadata) -> Optional[dict]:
        if metadata.doi:
            work = self._get(f"{CROSSREF_WORKS_URL}/{quote(metadata.doi.strip(), safe='/')}")
            if work:
                return work

        if not (metadata.title and metadata.first_author_lastname):
            return None
        message = self._get(
            CROSSREF_WORKS_URL,
            {"query.bibliographic": f"{metadata.title} {metadata.first_author_lastname}", "rows": 1},
        )
        items = (message or {}).get("items") or []
        if not items:
            return None
        # A search hit by someone else is a different paper.
        found = parse_work(items[0])["first_author_lastname"] or ""
        if found.casefold() != metadata.first_author_lastname.casefold():
            logger.info(
                "CrossRef best match has first author %r, expected %r; ignoring",
                found,
                metadata.first_author_lastname,
            )
            return None
        return items[0]

    def enrich(self, metadata: PublicationMetadata) -> tuple[PublicationMetadata, list[str]]:
        """Copy of `metadata` with null fields filled from CrossRef, plus the names filled.

        Values the model read from the paper are never replaced. Any lookup
        problem leaves the metadata unchanged.
        """
        work = self.lookup(metadata)
        if work is None:
            return metadata, []

        try:
            found = parse_work(work)
            filled = [
                name for name, value in found.items()
                if value is not None and getattr(metadata, name) is None
            ]
            if not filled:
                return metadata, []
            enriched = PublicationMetadata.model_validate(
                {**metadata.model_dump(), **{name: found[name] for name in filled}}
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Unusable CrossRef record for %r: %s", metadata.title, exc)
            return metadata, []

        logger.info("CrossRef filled %s", ", ".join(filled))
        return enriched, filled

    def _get(self, url: str, params: Optional[dict] = None) -> Optional[dict]:
        """The `message` body of a CrossRef response, or None when there is none."""
        params = dict(params or {})
        if self.mailto:
            params["mailto"] = self.mailto

        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = requests.get(url, params=params, timeout=self.timeout)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json().get("message")
            except ValueError as exc:
                # requests' JSON errors are RequestExceptions too; they are not transient.
                logger.warning("CrossRef returned unreadable JSON for %s: %s", url, exc)
                return None
            except requests.HTTPError as exc:
                if exc.response is not None and exc.response.status_code < 500:
                    logger.warning("CrossRef rejected %s: %s", url, exc)
                    return None
                error = exc
            except requests.RequestException as exc:
                error = exc

            if attempt == _MAX_RETRIES:
                logger.warning("CrossRef lookup failed after %d attempts: %s", attempt, error)
                return None
            wait = 2**attempt
            logger.warning(
                "CrossRef request failed (attempt %d/%d): %s, retrying in %ds",
                attempt,
                _MAX_RETRIES,
                error,
                wait,
            )
            time.sleep(wait)
        return None
