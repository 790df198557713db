"""Record identifiers: parsing, validation, and sequential assignment."""

import logging
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

_RECORD_ID_RE = re.compile(r"^([A-Za-z]+)_([0-9]+)_([0-9]+)_r([0-9]+)$")
_SEQUENCE_RE = re.compile(r"_r([0-9]+)$")
_NON_ALPHA_RE = re.compile(r"[^A-Za-z]")
# Letters NFKD does not split into a base letter plus a combining mark.
_UNDECOMPOSABLE = str.maketrans(
    {
        "Ø": "O", "ø": "o", "Æ": "Ae", "æ": "ae", "Œ": "Oe", "œ": "oe", "ß": "ss",
        "Ł": "L", "ł": "l", "Đ": "D", "đ": "d", "Þ": "Th", "þ": "th",
    }
)

FALLBACK_AUTHOR = "Unknown"


class InvalidRecordID(ValueError):
    """Raised when a string is not a well-formed record id."""


# ── Value Object ─────────────────────────────────────────────────────


class RecordID(BaseModel):
    """`<Author>_<Year>_<Paper>_r<Seq>`, e.g. `Smith_2021_1_r3`."""

    model_config = ConfigDict(frozen=True)

    author: str = Field(pattern=r"^[A-Za-z]+$")
    year: int = Field(ge=0)
    paper: int = Field(default=1, ge=0)
    sequence: int = Field(ge=1)

    @classmethod
    def parse(cls, value: Any) -> "RecordID":
        if not isinstance(value, str):
            raise InvalidRecordID(f"Record id must be a string, got {type(value).__name__}")
        match = _RECORD_ID_RE.match(value)
        if not match:
            raise InvalidRecordID(f"Malformed record id: {value!r}")
        author, year, paper, seq = match.groups()
        if int(seq) < 1:
            raise InvalidRecordID(f"Record id sequence must start at 1: {value!r}")
        return cls(author=author, year=int(year), paper=int(paper), sequence=int(seq))

    @classmethod
    def try_parse(cls, value: Any) -> Optional["RecordID"]:
        try:
            return cls.parse(value)
        except InvalidRecordID:
            return None

    def __str__(self) -> str:
        return f"{self.author}_{self.year}_{self.paper}_r{self.sequence}"


def is_valid_record_id(value: Any) -> bool:
    return RecordID.try_parse(value) is not None


# ── Prefix Resolution ────────────────────────────────────────────────


def clean_author(name: Any) -> str:
    """ASCII letters only, accents folded (Müller -> Muller); 'Unknown' when nothing is left."""
    folded = unicodedata.normalize("NFKD", str(name or "").translate(_UNDECOMPOSABLE))
    cleaned = _NON_ALPHA_RE.sub("", folded.encode("ascii", "ignore").decode("ascii"))
    return cleaned or FALLBACK_AUTHOR


def resolve_id_prefix(
    document: Optional[dict],
    records: Iterable[dict],
) -> tuple[str, int]:
    """Author and year for new ids: document metadata, then record fields, then fallback."""
    records = list(records)
    document = document or {}

    author = document.get("first_author_lastname")
    if not author:
        author = next(
            (r["first_author_lastname"] for r in records if r.get("first_author_lastname")),
            None,
        )

    year = document.get("publication_year")
    if not year:
        year = next(
            (r["publication_year"] for r in records if r.get("publication_year")),
            None,
        )
    try:
        year = int(year) if year else None
    except (TypeError, ValueError):
        year = None

    if year is None:
        year = datetime.now(timezone.utc).year

    return clean_author(author), year


# ── Assignment ───────────────────────────────────────────────────────


def max_sequence(existing_ids: Iterable[Optional[str]]) -> int:
    """Highest `_rN` suffix among stored ids, 0 when there are none."""
    best = 0
    for rid in existing_ids:
        if not rid:
            continue
        match = _SEQUENCE_RE.search(str(rid))
        if match:
            best = max(best, int(match.group(1)))
    return best


def assign_ids(
    records: list[dict],
    existing_max_sequence: int,
    author_lastname: str,
    year: int,
    paper: int = 1,
) -> list[dict]:
    """Return copies of `records` where every invalid or missing id is replaced.

    Valid ids are kept verbatim. New ids continue from `existing_max_sequence`
    in the order the records appear, so deleted sequence numbers are never reused.
    """
    author = clean_author(author_lastname)
    out: list[dict] = []
    # Ids carried by the batch itself are taken too.
    next_seq = max(
        existing_max_sequence,
        max_sequence(r.get("record_id") for r in records if is_valid_record_id(r.get("record_id"))),
    )
    preserved = generated = 0

    for record in records:
        record = dict(record)
        if is_valid_record_id(record.get("record_id")):
            preserved += 1
        else:
            next_seq += 1
            record["record_id"] = str(
                RecordID(author=author, year=year, paper=paper, sequence=next_seq)
            )
            generated += 1
        out.append(record)

    if preserved and generated:
        logger.info("Mixed ids: %d preserved, %d generated", preserved, generated)
    elif generated:
        logger.info("Generated record ids for %d records", generated)
    elif preserved:
        logger.info("Preserved existing record ids for %d records", preserved)
    return out
