"""CSV export of list rows restricted to the visible columns."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from entkit.canonical_json import loose_dumps
from entkit.field_path import read_path
from resource_config import FieldSpec


logger = logging.getLogger("entkit.csv_export")

BOM = "\ufeff"
DASH = "-"
MEDIA_TYPE = "text/csv; charset=utf-8"


@dataclass(frozen=True)
class CsvExport:
    filename: str
    text: str
    row_count: int

    @property
    def media_type(self) -> str:
        return MEDIA_TYPE

    def encode(self) -> bytes:
        return self.text.encode("utf-8")


def dash(value: Any) -> Any:
    if value is None:
        return DASH
    if isinstance(value, str) and not value.strip():
        return DASH
    return value


def cell_text(spec: FieldSpec, row: dict) -> str:
    """Text for one cell: custom formatter, else the raw value; objects as JSON."""
    if spec.csv is not None:
        try:
            return str(dash(spec.csv(row)))
        except Exception as exc:
            logger.info("csv_formatter_failed column=%s error=%s", spec.name, exc)
    raw = read_path(row, spec.name)
    if raw is None:
        return DASH
    if isinstance(raw, (dict, list, tuple)):
        return loose_dumps(raw)
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(dash(raw))


def rows_to_csv(columns: Sequence[FieldSpec], rows: Iterable[dict], *, bom: bool = True) -> tuple[str, int]:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([spec.title for spec in columns] if columns else [DASH])
    count = 0
    for row in rows:
        if columns:
            writer.writerow([cell_text(spec, row) for spec in columns])
        else:
            writer.writerow([DASH])
        count += 1
    text = buf.getvalue()
    return (BOM + text if bom else text), count


def export_rows(resource_key: str, columns: Sequence[FieldSpec], rows: Iterable[dict]) -> CsvExport:
    text, count = rows_to_csv(columns, rows)
    return CsvExport(filename=f"{resource_key}.csv", text=text, row_count=count)
