"""Human review: persist reviewer edits and measure extraction accuracy against them."""

import logging
from typing import Optional

from ecoextract.core.database import RecordDatabase
from ecoextract.records.ids import assign_ids, max_sequence, resolve_id_prefix

logger = logging.getLogger(__name__)


# ── Saving a Review ──────────────────────────────────────────────────


def save_review(
    db: RecordDatabase,
    document_id: int,
    edited_records: list[dict],
    original_records: Optional[list[dict]] = None,
) -> dict:
    """Store a reviewer's version of a document's records and mark it reviewed.

    Compared with `original_records`: missing records are flagged deleted,
    changed fields are logged to `record_edits`, and records without a known
    id are inserted as user-added. Without originals only `reviewed_at` is set.
    Returns counts of deleted, edited and added records.
    """
    summary = {"deleted": 0, "edited": 0, "added": 0}
    if original_records is None:
        db.apply_review(document_id)
        logger.info("Document %d marked reviewed", document_id)
        return summary

    fields = db.schema.field_names
    originals = {r["record_id"]: r for r in original_records if r.get("record_id")}
    kept_ids = set()
    edits: dict[str, tuple[dict, list]] = {}
    added: list[dict] = []

    for record in edited_records:
        rid = record.get("record_id")
        if rid not in originals:
            added.append({f: record.get(f) for f in fields})
            continue
        kept_ids.add(rid)
        original = originals[rid]
        changes = [(f, original.get(f)) for f in fields if record.get(f) != original.get(f)]
        if changes:
            edits[rid] = (record, changes)

    deleted = [rid for rid in originals if rid not in kept_ids]

    if added:
        doc = db.get_document(document_id)
        author, year = resolve_id_prefix(doc, added)
        added = assign_ids(added, max_sequence(db.get_record_ids(document_id)), author, year)

    db.apply_review(document_id, deleted_ids=deleted, edits=edits, added=added)

    summary.update(deleted=len(deleted), edited=len(edits), added=len(added))
    logger.info(
        "Document %d reviewed: %d edited, %d deleted, %d added",
        document_id,
        summary["edited"],
        summary["deleted"],
        summary["added"],
    )
    return summary


# ── Accuracy ─────────────────────────────────────────────────────────


def _ratio(num: float, den: float) -> Optional[float]:
    return num / den if den else None


def calculate_accuracy(db: RecordDatabase) -> dict:
    """Accuracy of the model's records over every human-reviewed document.

    A model record kept by the reviewer counts as found, a deleted one as
    hallucinated, and a reviewer-added one as missed. Field-level figures
    treat every logged column edit as one wrong field. Ratios are None
    when their denominator is zero.
    """
    fields = db.schema.field_names
    unique_fields = set(db.schema.unique_fields)
    reviewed = [d["document_id"] for d in db.get_reviewed_documents()]

    records: list[dict] = []
    edits: list[dict] = []
    for doc_id in reviewed:
        records.extend(db.get_records(doc_id, include_deleted=True))
        edits.extend(db.get_record_edits(doc_id))

    model_rows = [r for r in records if not r.get("added_by_user")]
    model_extracted = len(model_rows)
    human_added = len(records) - model_extracted
    deleted = sum(1 for r in model_rows if r.get("deleted_by_user"))
    records_found = model_extracted - deleted

    found_ids = {
        (r["document_id"], r["record_id"]) for r in model_rows if not r.get("deleted_by_user")
    }
    found_edits = [e for e in edits if (e["document_id"], e["record_id"]) in found_ids]
    column_edits = len(found_edits)
    records_with_edits = len({(e["document_id"], e["record_id"]) for e in found_edits})

    total_fields = records_found * len(fields)
    correct_fields = total_fields - column_edits
    expected_fields = total_fields + human_added * len(fields)
    field_precision = _ratio(correct_fields, total_fields)
    field_recall = _ratio(correct_fields, expected_fields)
    field_f1 = None
    if field_precision is not None and field_recall is not None:
        field_f1 = _ratio(2 * field_precision * field_recall, field_precision + field_recall)

    column_accuracy = {}
    for f in fields:
        wrong = sum(1 for e in found_edits if e["column_name"] == f)
        column_accuracy[f] = _ratio(records_found - wrong, records_found)

    major_edits = sum(1 for e in found_edits if e["column_name"] in unique_fields)

    return {
        "verified_documents": len(reviewed),
        "verified_records": len(records) - deleted,
        "model_extracted": model_extracted,
        "human_added": human_added,
        "deleted": deleted,
        "records_with_edits": records_with_edits,
        "column_edits": column_edits,
        "total_fields": total_fields,
        "correct_fields": correct_fields,
        "field_precision": field_precision,
        "field_recall": field_recall,
        "field_f1": field_f1,
        "records_found": records_found,
        "records_missed": human_added,
        "records_hallucinated": deleted,
        "detection_precision": _ratio(records_found, model_extracted),
        "detection_recall": _ratio(records_found, records_found + human_added),
        "perfect_record_rate": _ratio(records_found - records_with_edits, records_found),
        "column_accuracy": column_accuracy,
        "major_edits": major_edits,
        "minor_edits": column_edits - major_edits,
        "major_edit_rate": _ratio(major_edits, column_edits),
        "avg_edits_per_document": _ratio(column_edits, len(reviewed)),
    }
