"""
Turn uploaded bytes into a uniform table of string cells.

The ingestor never coerces values: every row maps each header to the raw
text found in the file (missing cells are empty strings). Typing happens in
the shared transformation step.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from lims_import.core.config import settings
from lims_import.core.exceptions import FormatError
from lims_import.domain.imports.processors.csv_processor import process_csv
from lims_import.domain.imports.processors.excel_processor import process_excel
from lims_import.domain.imports.processors.json_processor import process_json
from lims_import.domain.imports.processors.xml_processor import process_xml

logger = logging.getLogger(__name__)

DELIMITED_EXTENSIONS = {".csv", ".tsv", ".txt"}
WORKBOOK_EXTENSIONS = {".xlsx", ".xls"}
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | WORKBOOK_EXTENSIONS | {".json", ".xml"}

_BINARY_SNIFF_BYTES = 1024


@dataclass
class ParsedFile:
    headers: List[str]
    rows: List[Dict[str, str]]
    detected_encoding: Optional[str] = None
    detected_separator: Optional[str] = None
    file_type: str = ""
    total_rows: int = field(init=False)

    def __post_init__(self):
        self.total_rows = len(self.rows)

    def preview(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        return self.rows[: limit if limit is not None else settings.preview_rows]


def detect_file_type(file_name: str) -> str:
    """Map a file name to one of: delimited, excel, json, xml."""
    extension = os.path.splitext(file_name or "")[1].lower()
    if extension in DELIMITED_EXTENSIONS:
        return "delimited"
    if extension in WORKBOOK_EXTENSIONS:
        return "excel"
    if extension == ".json":
        return "json"
    if extension == ".xml":
        return "xml"
    raise FormatError(
        f"Unsupported file type '{extension or file_name}'. "
        f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}",
        file_name=file_name,
    )


def _looks_binary(file_content: bytes) -> bool:
    return b"\x00" in file_content[:_BINARY_SNIFF_BYTES]


def parse_file(file_content: bytes, file_name: str) -> ParsedFile:
    """
    Parse an uploaded file.

    Raises:
        FormatError: unsupported extension, empty or binary content, missing
            header row, zero data rows, or malformed content
    """
    file_type = detect_file_type(file_name)

    if not file_content or not file_content.strip():
        raise FormatError("File is empty", file_name=file_name)

    # Workbooks are zip/OLE containers and legitimately contain NUL bytes
    if file_type != "excel" and _looks_binary(file_content):
        raise FormatError("File appears to be binary, not text", file_name=file_name)

    encoding = None
    separator = None
    if file_type == "delimited":
        preferred = "\t" if file_name.lower().endswith(".tsv") else None
        headers, rows, encoding, separator = process_csv(file_content, file_name, preferred)
    elif file_type == "excel":
        headers, rows = process_excel(file_content, file_name)
    elif file_type == "json":
        headers, rows = process_json(file_content, file_name)
    else:
        headers, rows = process_xml(file_content, file_name)

    if not headers:
        raise FormatError("File has no header row", file_name=file_name)
    if not rows:
        raise FormatError("File contains no data rows", file_name=file_name)

    logger.info("Ingested %s: %d rows, %d columns (%s)", file_name, len(rows), len(headers), file_type)
    return ParsedFile(
        headers=headers,
        rows=rows,
        detected_encoding=encoding,
        detected_separator=separator,
        file_type=file_type,
    )
