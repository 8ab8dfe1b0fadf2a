from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from coa_app.schemas import AnalysisRecord

COA_FIELD_KEYS = ("date", "product_name", "batch_number", "pdf_link", "best_by_date")


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _extract_field_values(node: dict[str, Any]) -> dict[str, str | None]:
    """Collect metaobject field values from either query shape.

    Shopify returns ``fields: [{"key": ..., "value": ...}]`` for a generic
    query and ``{"<alias>": {"value": ...}}`` for ``field(key:)`` aliases.
    """
    values: dict[str, str | None] = {key: None for key in COA_FIELD_KEYS}

    fields = node.get("fields")
    if isinstance(fields, list):
        for entry in fields:
            if not isinstance(entry, dict):
                continue
            key = entry.get("key")
            if key in values:
                values[key] = _coerce_text(entry.get("value"))

    for key in COA_FIELD_KEYS:
        aliased = node.get(key)
        if isinstance(aliased, dict) and values[key] is None:
            values[key] = _coerce_text(aliased.get("value"))
    return values


def normalize_coa_node(node: Any) -> AnalysisRecord | None:
    if not isinstance(node, dict):
        return None
    values = _extract_field_values(node)
    record_date = values["date"]
    product = values["product_name"]
    if not record_date or not product:
        return None

    return AnalysisRecord(
        id=_coerce_text(node.get("id")) or "",
        date=record_date,
        product=product,
        batchNumber=values["batch_number"],
        pdfLink=values["pdf_link"],
        bestByDate=values["best_by_date"],
    )


def parse_record_date(value: str | None) -> date:
    if not value:
        return date.min
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    # Unpadded month or day, e.g. "2024-3-5".
    try:
        return datetime.strptime(text.split("T", 1)[0].split(" ", 1)[0], "%Y-%m-%d").date()
    except ValueError:
        return date.min


def sort_records_by_date_desc(records: Iterable[AnalysisRecord]) -> list[AnalysisRecord]:
    # Stable: records sharing a date keep the order Shopify returned them in.
    return sorted(records, key=lambda record: parse_record_date(record.date), reverse=True)
