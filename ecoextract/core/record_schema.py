"""Record schema: JSON-Schema loader, Pydantic models, and schema hashing."""

import hashlib
import json
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from ecoextract.core.config import ConfigurationError

# Columns owned by the pipeline; schema fields may not reuse them.
RESERVED_COLUMNS = frozenset(
    {
        "document_id",
        "record_id",
        "extraction_timestamp",
        "llm_model_version",
        "prompt_hash",
        "fields_changed_count",
        "human_edited",
        "deleted_by_user",
        "added_by_user",
    }
)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SQL_TYPES = {
    "string": "TEXT",
    "integer": "INTEGER",
    "number": "REAL",
    "boolean": "INTEGER",
    "array": "TEXT",
    "object": "TEXT",
}


# ── Field Spec ───────────────────────────────────────────────────────


class FieldSpec(BaseModel):
    """Single domain field of an extracted record."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES.get(self.type, "TEXT")

    @property
    def is_array(self) -> bool:
        return self.type == "array"


# ── Record Schema ────────────────────────────────────────────────────


class RecordSchema(BaseModel):
    """Domain record definition plus the fields that define record identity."""

    fields: dict[str, FieldSpec]
    unique_fields: list[str] = Field(default_factory=list)
    raw: dict = Field(default_factory=dict, repr=False)

    @model_validator(mode="after")
    def check_fields(self) -> "RecordSchema":
        for name in self.fields:
            if not _IDENTIFIER_RE.match(name):
                raise ValueError(f"Field name is not a valid column name: {name!r}")
            if name in RESERVED_COLUMNS:
                raise ValueError(f"Field name collides with a pipeline column: {name!r}")

        if not self.unique_fields:
            raise ValueError(
                "Schema must declare 'x-unique-fields' at properties > records > items "
                "listing the fields that define record uniqueness"
            )
        invalid = [f for f in self.unique_fields if f not in self.fields]
        if invalid:
            raise ValueError(
                f"Invalid x-unique-fields: {', '.join(invalid)}. "
                f"Available fields: {', '.join(self.fields)}"
            )
        return self

    @property
    def field_names(self) -> list[str]:
        return list(self.fields)

    @property
    def required(self) -> list[str]:
        return [f.name for f in self.fields.values() if f.required]

    def sql_columns(self) -> list[tuple[str, str]]:
        """(column, SQLite type) pairs for the records table."""
        return [(f.name, f.sql_type) for f in self.fields.values()]

    def schema_hash(self) -> str:
        """SHA-256 of the record definition (canonical JSON)."""
        return _canonical_hash(
            {
                "fields": {k: v.model_dump() for k, v in self.fields.items()},
                "unique_fields": self.unique_fields,
            }
        )

    def record_json_schema(self) -> dict:
        """JSON schema of one record, as sent to the models for structured output."""
        return self.raw["properties"]["records"]["items"]

    def normalize_record(self, record: dict[str, Any]) -> dict[str, Any]:
        """Keep schema fields only, wrap scalars for array fields, enforce required."""
        out: dict[str, Any] = {}
        for spec in self.fields.values():
            value = record.get(spec.name)
            if _is_missing(value):
                if spec.required:
                    raise ValueError(f"Required field '{spec.name}' is missing")
                out[spec.name] = None
                continue
            if spec.is_array and not isinstance(value, list):
                value = [value]
            out[spec.name] = value
        if "record_id" in record:
            out["record_id"] = record["record_id"]
        return out


# ── Helpers ──────────────────────────────────────────────────────────


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


def _canonical_hash(data: dict) -> str:
    """Deterministic SHA-256 hash of a dict via sorted-key JSON."""
    blob = json.dumps(data, sort_keys=True, default=str).encode()
    return hashlib.sha256(blob).hexdigest()


def _field_type(spec: dict) -> str:
    field_type = spec.get("type", "string")
    # Nullable types come as ["string", "null"]
    if isinstance(field_type, list):
        non_null = [t for t in field_type if t != "null"]
        field_type = non_null[0] if non_null else "string"
    return field_type


def parse_record_schema(raw: dict) -> RecordSchema:
    """Build a RecordSchema from a parsed JSON-Schema document."""
    try:
        items = raw["properties"]["records"]["items"]
        properties = items["properties"]
    except (KeyError, TypeError):
        raise ConfigurationError(
            "Invalid schema structure: could not find properties > records > items > properties"
        )

    required: set[str] = set(items.get("required") or [])
    fields: dict[str, FieldSpec] = {}
    for name, spec in properties.items():
        spec = spec or {}
        fields[name] = FieldSpec(
            name=name,
            type=_field_type(spec),
            description=spec.get("description", ""),
            required=name in required,
        )

    try:
        return RecordSchema(
            fields=fields,
            unique_fields=list(items.get("x-unique-fields") or []),
            raw=raw,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid record schema: {exc}") from exc


def load_record_schema(path: str | Path) -> RecordSchema:
    """Load a record schema (YAML or JSON) from disk and validate it."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Schema file not found: {path}")
    with open(path) as f:
        raw: Optional[dict] = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Schema file is empty or not a mapping: {path}")
    return parse_record_schema(raw)
