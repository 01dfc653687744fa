import csv
import logging
from collections import Counter
from io import StringIO
from typing import Dict, List, Optional, Tuple

from lims_import.core.exceptions import FormatError
from lims_import.domain.imports.processors.common import dedupe_headers

logger = logging.getLogger(__name__)

# Tried in order; iso-8859-2 and latin-1 decode any byte sequence
ENCODING_CASCADE = (
    ("utf-8-sig", "utf-8"),
    ("cp1250", "windows-1250"),
    ("iso-8859-2", "iso-8859-2"),
    ("latin-1", "latin-1"),
)
SEPARATOR_CANDIDATES = (";", ",", "\t", "|")
SNIFF_LINES = 10


def decode_text(file_content: bytes) -> Tuple[str, str]:
    """
    Decode delimited text, returning ``(text, encoding_name)``.

    UTF-8 (with or without BOM) wins when it decodes cleanly, otherwise the
    Central European code pages used by Polish legacy exports are tried.
    """
    for codec, label in ENCODING_CASCADE:
        try:
            return file_content.decode(codec), label
        except UnicodeDecodeError:
            continue
    # latin-1 never fails, kept for completeness
    return file_content.decode("latin-1", errors="replace"), "latin-1"


def detect_separator(text: str, preferred: Optional[str] = None) -> str:
    """
    Pick the field separator by counting fields in the first lines.

    The candidate that splits the sample into the most consistent multi-field
    rows wins; ties go to the earlier candidate (``;`` before ``,``).
    """
    sample_lines = [line for line in text.splitlines() if line.strip()][:SNIFF_LINES]
    if not sample_lines:
        return preferred or ","

    best_separator = preferred or ","
    best_score = (0, 0)
    candidates = SEPARATOR_CANDIDATES
    if preferred:
        candidates = (preferred,) + tuple(c for c in SEPARATOR_CANDIDATES if c != preferred)

    for candidate in candidates:
        counts = [len(row) for row in csv.reader(sample_lines, delimiter=candidate)]
        field_count, rows_agreeing = Counter(counts).most_common(1)[0]
        if field_count < 2:
            continue
        score = (rows_agreeing, field_count)
        if score > best_score:
            best_score = score
            best_separator = candidate

    return best_separator


def process_csv(file_content: bytes, file_name: str = "", preferred_separator: Optional[str] = None
                ) -> Tuple[List[str], List[Dict[str, str]], str, str]:
    """
    Parse delimited text into headers and string-valued rows.

    Returns:
        (headers, rows, detected_encoding, detected_separator)
    """
    text, encoding = decode_text(file_content)
    separator = detect_separator(text, preferred_separator)

    try:
        reader = csv.reader(StringIO(text, newline=""), delimiter=separator)
        raw_rows = [row for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as e:
        raise FormatError(f"Malformed delimited file: {e}", file_name=file_name)

    if not raw_rows:
        raise FormatError("File has no header row", file_name=file_name)

    headers = dedupe_headers(raw_rows[0])
    width = len(headers)
    rows: List[Dict[str, str]] = []
    ragged = 0
    for raw in raw_rows[1:]:
        if len(raw) != width:
            ragged += 1
            raw = (raw + [""] * width)[:width]
        rows.append(dict(zip(headers, raw)))

    if ragged:
        logger.info("Normalised %d ragged rows in %s to %d columns", ragged, file_name or "upload", width)
    logger.info("Parsed %d delimited rows (encoding=%s, separator=%r)", len(rows), encoding, separator)
    return headers, rows, encoding, separator
