"""SQLite storage: documents, per-stage status, records, and the human edit trail."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from ecoextract.core.record_schema import RecordSchema
from ecoextract.core.stages import Stage, StageStatus

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 30000

# Bibliographic columns written by the metadata stage.
METADATA_COLUMNS = (
    "title",
    "first_author_lastname",
    "authors",
    "publication_year",
    "doi",
    "journal",
    "volume",
    "issue",
    "pages",
    "issn",
    "publisher",
    "bibliography",
    "language",
)
_JSON_METADATA = {"authors", "bibliography", "ocr_audit"}

# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    document_id             INTEGER PRIMARY KEY,
    file_hash               TEXT NOT NULL UNIQUE,
    file_path               TEXT NOT NULL,
    file_name               TEXT,
    file_size               INTEGER,
    upload_time             TEXT NOT NULL,
    title                   TEXT,
    first_author_lastname   TEXT,
    authors                 TEXT,          -- JSON array
    publication_year        INTEGER,
    doi                     TEXT,
    journal                 TEXT,
    volume                  TEXT,
    issue                   TEXT,
    pages                   TEXT,
    issn                    TEXT,
    publisher               TEXT,
    bibliography            TEXT,          -- JSON array
    language                TEXT,
    content                 TEXT,
    ocr_provider            TEXT,
    ocr_log                 TEXT,
    metadata_model          TEXT,
    metadata_log            TEXT,
    ocr_audit               TEXT,          -- JSON object
    extraction_reasoning    TEXT,
    refinement_reasoning    TEXT,
    ocr_status              TEXT,
    metadata_status         TEXT,
    extraction_status       TEXT,
    refinement_status       TEXT,
    records_extracted       INTEGER NOT NULL DEFAULT 0,
    reviewed_at             TEXT
);

CREATE TABLE IF NOT EXISTS record_edits (
    id              INTEGER PRIMARY KEY,
    document_id     INTEGER NOT NULL REFERENCES documents(document_id),
    record_id       TEXT NOT NULL,
    column_name     TEXT NOT NULL,
    original_value  TEXT,
    edited_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_edits_document ON record_edits(document_id);
"""

_RECORDS_TEMPLATE = """
CREATE TABLE IF NOT EXISTS records (
    document_id             INTEGER NOT NULL REFERENCES documents(document_id),
    record_id               TEXT NOT NULL,
{domain_columns}
    extraction_timestamp    TEXT,
    llm_model_version       TEXT,
    prompt_hash             TEXT,
    fields_changed_count    INTEGER,
    human_edited            TEXT,
    deleted_by_user         TEXT,
    added_by_user           INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (document_id, record_id)
);
"""


# ── RecordDatabase ───────────────────────────────────────────────────


class RecordDatabase:
    """One SQLite connection bound to a record schema.

    Build with `open_path` or `from_connection`. A connection belongs to a
    single thread; parallel workers open their own.
    """

    def __init__(self, conn: sqlite3.Connection, schema: RecordSchema):
        self._conn = conn
        self.schema = schema
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA + self._records_ddl())
        self._conn.commit()

    @classmethod
    def open_path(cls, path: str | Path, schema: RecordSchema) -> "RecordDatabase":
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_MS / 1000)
        return cls(conn, schema)

    @classmethod
    def from_connection(cls, conn: sqlite3.Connection, schema: RecordSchema) -> "RecordDatabase":
        return cls(conn, schema)

    def _records_ddl(self) -> str:
        lines = [f"    {name:<23} {sql_type}," for name, sql_type in self.schema.sql_columns()]
        return _RECORDS_TEMPLATE.format(domain_columns="\n".join(lines))

    # ── Documents ────────────────────────────────────────────

    def get_or_create_document(self, path: str | Path, file_hash: str) -> int:
        """Document id for this content hash; the same file never gets two rows."""
        path = Path(path)
        size = path.stat().st_size if path.exists() else None
        with self._conn:
            cur = self._conn.execute(
                """INSERT OR IGNORE INTO documents
                   (file_hash, file_path, file_name, file_size, upload_time)
                   VALUES (?, ?, ?, ?, ?)""",
                (file_hash, str(path), path.name, size, _now()),
            )
        row = self._conn.execute(
            "SELECT document_id FROM documents WHERE file_hash = ?", (file_hash,)
        ).fetchone()
        if cur.rowcount:
            logger.info("Registered document %d (%s)", row["document_id"], path.name)
        return row["document_id"]

    def get_document(self, document_id: int) -> Optional[dict]:
        row = self._conn.execute(
            "SELECT * FROM documents WHERE document_id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return None
        doc = dict(row)
        for col in _JSON_METADATA:
            doc[col] = _loads(doc[col])
        return doc

    def find_document_id(self, file_hash: str) -> Optional[int]:
        row = self._conn.execute(
            "SELECT document_id FROM documents WHERE file_hash = ?", (file_hash,)
        ).fetchone()
        return row["document_id"] if row else None

    def save_content(
        self, document_id: int, content: str, provider: str, log: Optional[str] = None
    ) -> None:
        with self._conn:
            self._conn.execute(
                """UPDATE documents SET content = ?, ocr_provider = ?, ocr_log = ?
                   WHERE document_id = ?""",
                (content, provider, log, document_id),
            )

    def save_metadata(
        self,
        document_id: int,
        metadata: dict,
        model: str,
        log: Optional[str] = None,
        ocr_audit: Optional[dict] = None,
    ) -> None:
        """Write bibliographic fields; a null value never overwrites a known one.

        `metadata_model` is always set: it marks the stage's output as present
        even when the paper yielded no bibliographic values.
        `ocr_audit` describes the current content and is replaced on every run.
        """
        values = []
        for col in METADATA_COLUMNS:
            value = metadata.get(col)
            if col in _JSON_METADATA and value is not None:
                value = json.dumps(value)
            values.append(value)
        assignments = ", ".join(f"{col} = COALESCE(?, {col})" for col in METADATA_COLUMNS)
        audit = json.dumps(ocr_audit) if ocr_audit is not None else None
        with self._conn:
            self._conn.execute(
                f"""UPDATE documents SET {assignments}, ocr_audit = ?,
                        metadata_model = ?, metadata_log = ?
                    WHERE document_id = ?""",
                (*values, audit, model, log, document_id),
            )

    def save_reasoning(self, document_id: int, stage: Stage, reasoning: Optional[str]) -> None:
        if stage not in (Stage.EXTRACTION, Stage.REFINEMENT):
            raise ValueError(f"No reasoning column for stage {stage.value}")
        with self._conn:
            self._conn.execute(
                f"UPDATE documents SET {stage.value}_reasoning = ? WHERE document_id = ?",
                (reasoning, document_id),
            )

    def set_records_extracted(self, document_id: int, count: int) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE documents SET records_extracted = ? WHERE document_id = ?",
                (count, document_id),
            )

    # ── Stage Status ─────────────────────────────────────────

    def get_stage_status(self, document_id: int, stage: Stage) -> StageStatus:
        row = self._conn.execute(
            f"SELECT {stage.column} FROM documents WHERE document_id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return StageStatus.not_run()
        return StageStatus.from_db(row[0])

    def set_stage_status(
        self,
        document_id: int,
        stage: Stage,
        status: StageStatus,
        reset: Iterable[Stage] = (),
    ) -> None:
        """Write one stage status and clear `reset` stages in the same statement."""
        assignments = [f"{stage.column} = ?"]
        assignments += [f"{s.column} = NULL" for s in reset if s is not stage]
        with self._conn:
            self._conn.execute(
                f"UPDATE documents SET {', '.join(assignments)} WHERE document_id = ?",
                (status.to_db(), document_id),
            )

    def reset_stages(self, document_id: int, stages: Iterable[Stage]) -> None:
        stages = list(stages)
        if not stages:
            return
        assignments = ", ".join(f"{s.column} = NULL" for s in stages)
        with self._conn:
            self._conn.execute(
                f"UPDATE documents SET {assignments} WHERE document_id = ?", (document_id,)
            )

    def stage_data_exists(self, document_id: int, stage: Stage) -> bool:
        """Whether the payload a completed stage should have left behind is present."""
        doc = self._conn.execute(
            """SELECT content, metadata_model, records_extracted
               FROM documents WHERE document_id = ?""",
            (document_id,),
        ).fetchone()
        if doc is None:
            return False

        if stage is Stage.OCR:
            return bool(doc["content"] and doc["content"].strip())
        if stage is Stage.METADATA:
            # The stage ran even when the paper yielded no bibliographic values.
            return doc["metadata_model"] is not None
        # Extraction and refinement: rows must exist if any were reported.
        if not doc["records_extracted"]:
            return True
        rows = self._conn.execute(
            "SELECT COUNT(*) FROM records WHERE document_id = ?", (document_id,)
        ).fetchone()[0]
        return rows > 0

    # ── Records ──────────────────────────────────────────────

    def get_records(self, document_id: int, include_deleted: bool = False) -> list[dict]:
        sql = "SELECT * FROM records WHERE document_id = ?"
        if not include_deleted:
            sql += " AND deleted_by_user IS NULL"
        rows = self._conn.execute(sql + " ORDER BY rowid", (document_id,)).fetchall()
        return [self._decode_record(r) for r in rows]

    def get_record_ids(self, document_id: int) -> list[str]:
        """Every stored id for the document, deleted rows included."""
        rows = self._conn.execute(
            "SELECT record_id FROM records WHERE document_id = ?", (document_id,)
        ).fetchall()
        return [r["record_id"] for r in rows]

    def count_records(self, document_id: int) -> int:
        return self._conn.execute(
            """SELECT COUNT(*) FROM records
               WHERE document_id = ? AND deleted_by_user IS NULL""",
            (document_id,),
        ).fetchone()[0]

    def insert_records(
        self,
        document_id: int,
        records: list[dict],
        model: Optional[str] = None,
        prompt_hash: Optional[str] = None,
        added_by_user: bool = False,
    ) -> int:
        """Insert records in one transaction. Returns the number written."""
        if not records:
            return 0
        with self._conn:
            self._insert_records(document_id, records, model, prompt_hash, added_by_user)
        logger.info("Inserted %d records for document %d", len(records), document_id)
        return len(records)

    def _insert_records(
        self,
        document_id: int,
        records: list[dict],
        model: Optional[str],
        prompt_hash: Optional[str],
        added_by_user: bool,
    ) -> None:
        fields = self.schema.field_names
        columns = [
            "document_id",
            "record_id",
            *fields,
            "extraction_timestamp",
            "llm_model_version",
            "prompt_hash",
            "added_by_user",
        ]
        placeholders = ", ".join("?" for _ in columns)
        now = _now()
        for record in records:
            self._conn.execute(
                f"INSERT INTO records ({', '.join(columns)}) VALUES ({placeholders})",
                (
                    document_id,
                    record["record_id"],
                    *(self._encode(f, record.get(f)) for f in fields),
                    now,
                    model,
                    prompt_hash,
                    int(added_by_user),
                ),
            )

    def update_records(
        self,
        document_id: int,
        records: list[dict],
        model: Optional[str] = None,
        prompt_hash: Optional[str] = None,
    ) -> int:
        """Update records by id in one transaction, leaving human-touched rows alone.

        Returns the number of rows updated. `fields_changed_count` records how
        many domain fields differ from the stored row.
        """
        fields = self.schema.field_names
        assignments = ", ".join(f"{f} = ?" for f in fields)
        updated = 0
        with self._conn:
            for record in records:
                row = self._conn.execute(
                    """SELECT * FROM records
                       WHERE document_id = ? AND record_id = ?
                         AND human_edited IS NULL AND deleted_by_user IS NULL""",
                    (document_id, record["record_id"]),
                ).fetchone()
                if row is None:
                    continue
                current = self._decode_record(row)
                changed = sum(1 for f in fields if current.get(f) != record.get(f))
                self._conn.execute(
                    f"""UPDATE records SET {assignments},
                            fields_changed_count = ?, llm_model_version = ?,
                            prompt_hash = ?, extraction_timestamp = ?
                        WHERE document_id = ? AND record_id = ?
                          AND human_edited IS NULL AND deleted_by_user IS NULL""",
                    (
                        *(self._encode(f, record.get(f)) for f in fields),
                        changed,
                        model,
                        prompt_hash,
                        _now(),
                        document_id,
                        record["record_id"],
                    ),
                )
                updated += 1
        logger.info("Updated %d/%d records for document %d", updated, len(records), document_id)
        return updated

    # ── Human Review ─────────────────────────────────────────

    def apply_review(
        self,
        document_id: int,
        deleted_ids: Iterable[str] = (),
        edits: Optional[dict[str, tuple[dict, list[tuple[str, Any]]]]] = None,
        added: Iterable[dict] = (),
    ) -> None:
        """Apply one human review in a single transaction.

        `edits` maps record id to (new record, [(column, original value), ...]).
        Rows in `added` are inserted as user-added records.
        """
        now = _now()
        fields = self.schema.field_names
        assignments = ", ".join(f"{f} = ?" for f in fields)
        with self._conn:
            for record_id in deleted_ids:
                self._conn.execute(
                    """UPDATE records SET deleted_by_user = ?
                       WHERE document_id = ? AND record_id = ?""",
                    (now, document_id, record_id),
                )
            for record_id, (record, changes) in (edits or {}).items():
                for column, original in changes:
                    self._conn.execute(
                        """INSERT INTO record_edits
                           (document_id, record_id, column_name, original_value, edited_at)
                           VALUES (?, ?, ?, ?, ?)""",
                        (document_id, record_id, column, _dumps(original), now),
                    )
                self._conn.execute(
                    f"""UPDATE records SET {assignments}, human_edited = ?
                        WHERE document_id = ? AND record_id = ?""",
                    (
                        *(self._encode(f, record.get(f)) for f in fields),
                        now,
                        document_id,
                        record_id,
                    ),
                )
            added = list(added)
            if added:
                self._insert_records(document_id, added, None, None, True)
            self._conn.execute(
                "UPDATE documents SET reviewed_at = ? WHERE document_id = ?",
                (now, document_id),
            )

    def get_reviewed_documents(self) -> list[dict]:
        rows = self._conn.execute(
            "SELECT document_id FROM documents WHERE reviewed_at IS NOT NULL ORDER BY document_id"
        ).fetchall()
        return [dict(r) for r in rows]

    def get_record_edits(self, document_id: Optional[int] = None) -> list[dict]:
        sql = "SELECT * FROM record_edits"
        params: tuple = ()
        if document_id is not None:
            sql += " WHERE document_id = ?"
            params = (document_id,)
        rows = self._conn.execute(sql + " ORDER BY id", params).fetchall()
        return [dict(r) for r in rows]

    # ── Stats ────────────────────────────────────────────────

    def get_stats(self) -> dict:
        """Document and record totals plus completed counts per stage."""
        stats = {
            "total_documents": self._conn.execute(
                "SELECT COUNT(*) FROM documents"
            ).fetchone()[0],
            "total_records": self._conn.execute(
                "SELECT COUNT(*) FROM records WHERE deleted_by_user IS NULL"
            ).fetchone()[0],
            "reviewed_documents": self._conn.execute(
                "SELECT COUNT(*) FROM documents WHERE reviewed_at IS NOT NULL"
            ).fetchone()[0],
        }
        for stage in Stage:
            stats[f"{stage.value}_completed"] = self._conn.execute(
                f"SELECT COUNT(*) FROM documents WHERE {stage.column} = 'completed'"
            ).fetchone()[0]
        return stats

    # ── Encoding ─────────────────────────────────────────────

    def _encode(self, field: str, value: Any) -> Any:
        spec = self.schema.fields[field]
        if value is None:
            return None
        if spec.type in ("array", "object"):
            return json.dumps(value)
        if spec.type == "boolean":
            return int(bool(value))
        return value

    def _decode_record(self, row: sqlite3.Row) -> dict:
        record = dict(row)
        for name, spec in self.schema.fields.items():
            value = record.get(name)
            if value is None:
                continue
            if spec.type in ("array", "object"):
                record[name] = _loads(value)
            elif spec.type == "boolean":
                record[name] = bool(value)
        return record

    # ── Cleanup ──────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()


# ── Helpers ──────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loads(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _dumps(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)
