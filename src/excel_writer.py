"""
excel_writer.py

Builds the export workbook from completed extraction results.

Single sheet — "Results"
    S.No prepended automatically.
    One row per product: article number, product name, then one column per
    requested property (in schema order), then the sources that fed the AI.
    Frozen header row. Auto-filter.
"""

import io
import logging
from datetime import datetime
from typing import Optional, Sequence

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

from models import ExtractionResult

logger = logging.getLogger(__name__)

_FONT_HEADER = Font(bold=True)

_FIXED_HEADERS = ["S.No", "Article Number", "Product Name"]
_TRAILING_HEADERS = ["Sources", "Source URL", "PDF Files"]


def _display(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return _display(", ".join(str(v) for v in value))
    # AI values can carry control characters openpyxl refuses to write.
    text = ILLEGAL_CHARACTERS_RE.sub("", str(value)).strip()
    return text or None


def _property_columns(
    results: Sequence[ExtractionResult],
    property_names: Optional[Sequence[str]],
) -> list[str]:
    """Schema order first; properties the service added on its own go last."""
    columns = list(property_names or [])
    for result in results:
        for name in result.properties:
            if name not in columns:
                columns.append(name)
    return columns


def build_excel(
    results: Sequence[ExtractionResult],
    property_names: Optional[Sequence[str]] = None,
) -> bytes:
    """
    Build the Excel workbook (single Results sheet).

    Args:
        results:        Completed results, in the order they should appear.
        property_names: The run's property schema, fixing column order.

    Returns:
        Raw .xlsx bytes.
    """
    columns = _property_columns(results, property_names)
    headers = _FIXED_HEADERS + columns + _TRAILING_HEADERS

    wb = Workbook()
    ws = wb.active
    ws.title = "Results"

    for col_idx, header in enumerate(headers, start=1):
        cell = ws.cell(row=1, column=col_idx, value=_display(header))
        cell.font = _FONT_HEADER
        cell.alignment = Alignment(horizontal="center", vertical="center")
    ws.freeze_panes = "A2"
    ws.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    for row_idx, result in enumerate(results, start=2):
        row = [row_idx - 1, _display(result.article_number), _display(result.product_name)]
        for name in columns:
            prop = result.properties.get(name)
            row.append(_display(prop.value) if prop else None)
        row.append(_display(result.source_labels))
        row.append(_display(result.source_info.web_url))
        row.append(_display(result.source_info.pdf_files))

        for col_idx, value in enumerate(row, start=1):
            ws.cell(row=row_idx, column=col_idx, value=value)

    for col_idx, header in enumerate(headers, start=1):
        ws.column_dimensions[get_column_letter(col_idx)].width = max(len(header) + 2, 12)

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)

    logger.info(f"Excel built: {len(results)} product row(s), {len(columns)} property column(s).")
    return buffer.read()


def get_output_filename() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"product_data_{timestamp}.xlsx"
