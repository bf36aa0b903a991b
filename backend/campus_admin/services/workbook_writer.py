"""Serialize a Workbook value to xlsx bytes and derive its download filename."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Optional

from openpyxl import Workbook as XlsxWorkbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import IllegalCharacterError

from campus_admin.core.config import get_settings
from campus_admin.core.errors import ExportError
from campus_admin.services.report_builder import Workbook

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

MAX_SHEET_NAME = 31
_SHEET_NAME_UNSAFE = re.compile(r"[\[\]:*?/\\]")
_FILENAME_UNSAFE = re.compile(r'[\\/:*?"<>|\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")

HEADER_FONT = Font(bold=True)
HEADER_FILL = PatternFill(fill_type="solid", start_color="DDEBF7", end_color="DDEBF7")


def safe_sheet_name(name: str, taken: set[str]) -> str:
    base = _SHEET_NAME_UNSAFE.sub("", name or "").strip().strip("'") or "Sheet"
    base = base[:MAX_SHEET_NAME]
    candidate = base
    counter = 2
    while candidate.lower() in taken:
        suffix = f" ({counter})"
        candidate = base[: MAX_SHEET_NAME - len(suffix)] + suffix
        counter += 1
    taken.add(candidate.lower())
    return candidate


def sanitize_filename_part(value: Any) -> str:
    """Strip characters that would break a path or a header."""
    text = _FILENAME_UNSAFE.sub("", str(value if value is not None else ""))
    text = _WHITESPACE.sub(" ", text).strip()
    text = text.replace("..", "")
    return text.strip(". ")


def build_filename(
    label: str,
    descriptor: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
    *,
    extension: str = "xlsx",
) -> str:
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    parts = [sanitize_filename_part(label) or "report"]

    filter_parts = []
    for key, value in (descriptor or {}).items():
        if value is None or value == "":
            continue
        key_text = sanitize_filename_part(key)
        value_text = sanitize_filename_part(value)
        if key_text and value_text:
            filter_parts.append(f"{key_text}-{value_text}")
    if filter_parts:
        parts.append("_".join(filter_parts))

    parts.append(now.strftime(settings.report_timestamp_format))
    return f"{'_'.join(parts)}.{extension}"


def _write_sheet(ws, sheet) -> None:
    headers = sheet.headers
    if not headers:
        return
    ws.append(headers)
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(vertical="center")
    for row in sheet.rows:
        ws.append([row.get(header) for header in headers])

    for index, header in enumerate(headers, start=1):
        if index <= len(sheet.column_width_hints):
            width = sheet.column_width_hints[index - 1]
        else:
            width = max(10, min(50, len(str(header)) + 2))
        ws.column_dimensions[get_column_letter(index)].width = width
    ws.freeze_panes = "A2"


def write_xlsx(workbook: Workbook) -> bytes:
    if not workbook.sheets or not workbook.sheets[0].rows:
        raise ExportError("There is no data to export")

    book = XlsxWorkbook()
    book.remove(book.active)
    taken: set[str] = set()
    try:
        for sheet in workbook.sheets:
            ws = book.create_sheet(title=safe_sheet_name(sheet.name, taken))
            _write_sheet(ws, sheet)
        output = BytesIO()
        book.save(output)
    except (IllegalCharacterError, ValueError, TypeError) as exc:
        logger.exception("Workbook serialization failed")
        raise ExportError("The report file could not be created") from exc
    return output.getvalue()
