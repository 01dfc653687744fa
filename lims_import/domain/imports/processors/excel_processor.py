import io
import logging
from typing import Dict, List, Tuple

import pandas as pd

from lims_import.core.exceptions import FormatError
from lims_import.domain.imports.processors.common import dedupe_headers, stringify_cell

logger = logging.getLogger(__name__)


def process_excel(file_content: bytes, file_name: str = "") -> Tuple[List[str], List[Dict[str, str]]]:
    """Read the first sheet of a workbook; the first row holds the headers."""
    try:
        df = pd.read_excel(io.BytesIO(file_content), sheet_name=0, header=None, dtype=str, engine='openpyxl')
    except Exception as e:
        # openpyxl/xlrd raise a wide range of types for corrupt or foreign workbooks
        logger.warning("Workbook %s could not be read: %s", file_name or "upload", e)
        raise FormatError(f"Workbook could not be read: {e}", file_name=file_name)

    df = df.dropna(how="all")
    if df.empty:
        raise FormatError("Workbook has no header row", file_name=file_name)

    headers = dedupe_headers(df.iloc[0].tolist())
    rows: List[Dict[str, str]] = []
    for values in df.iloc[1:].itertuples(index=False, name=None):
        rows.append({header: stringify_cell(value) for header, value in zip(headers, values)})

    logger.info("Parsed %d workbook rows from first sheet", len(rows))
    return headers, rows
