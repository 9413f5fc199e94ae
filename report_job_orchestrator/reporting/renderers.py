"""
Output renderers.

Renderers turn aggregated rows into the bytes of an artifact. They are
synchronous and CPU bound; the worker runs them in an executor.
"""

import csv
import io
import json
from datetime import date, datetime
from typing import Any, Dict, List, Sequence

from ..core.exceptions import ValidationError
from ..models.common import isoformat


class Renderer:
    """Base renderer."""

    format: str = ""
    extension: str = ""
    content_type: str = "application/octet-stream"

    def render(self, rows: Sequence[Dict[str, Any]], metadata: Dict[str, Any]) -> bytes:
        raise NotImplementedError


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


class CsvRenderer(Renderer):
    format = "csv"
    extension = "csv"
    content_type = "text/csv"

    def render(self, rows: Sequence[Dict[str, Any]], metadata: Dict[str, Any]) -> bytes:
        columns: List[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
        if columns:
            writer.writeheader()
        for row in rows:
            writer.writerow({key: _plain(value) for key, value in row.items()})
        return buffer.getvalue().encode("utf-8")


class JsonRenderer(Renderer):
    format = "json"
    extension = "json"
    content_type = "application/json"

    def render(self, rows: Sequence[Dict[str, Any]], metadata: Dict[str, Any]) -> bytes:
        document = {
            "metadata": metadata,
            "rowCount": len(rows),
            "rows": list(rows),
        }
        return json.dumps(document, default=_plain, ensure_ascii=False, indent=2).encode("utf-8")


RENDERERS: Dict[str, Renderer] = {
    "csv": CsvRenderer(),
    "json": JsonRenderer(),
}


def get_renderer(output_format: str) -> Renderer:
    renderer = RENDERERS.get(output_format.lower())
    if renderer is None:
        raise ValidationError("output.format", f"no renderer for format '{output_format}'", value=output_format)
    return renderer
