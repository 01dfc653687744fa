import json
import logging
from typing import Any, Dict, List, Tuple

from lims_import.core.exceptions import FormatError
from lims_import.domain.imports.processors.common import union_records
from lims_import.domain.imports.processors.csv_processor import decode_text

logger = logging.getLogger(__name__)

RECORD_CONTAINER_KEYS = ("data", "records")


def flatten_record(record: Dict[str, Any], parent: str = "") -> Dict[str, Any]:
    """Flatten nested objects into ``parent.child`` keys; lists are kept as JSON text."""
    flat: Dict[str, Any] = {}
    for key, value in record.items():
        name = f"{parent}.{key}" if parent else str(key)
        if isinstance(value, dict):
            flat.update(flatten_record(value, name))
        elif isinstance(value, list):
            flat[name] = json.dumps(value, ensure_ascii=False)
        else:
            flat[name] = value
    return flat


def _locate_records(data: Any) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in RECORD_CONTAINER_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
        for value in data.values():
            if isinstance(value, list):
                return value
    raise FormatError("JSON must contain an array of objects")


def process_json(file_content: bytes, file_name: str = "") -> Tuple[List[str], List[Dict[str, str]]]:
    """Process a JSON export: an array of objects, or an object wrapping one."""
    text, _ = decode_text(file_content)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise FormatError(f"Malformed JSON: {e}", file_name=file_name)

    try:
        records = _locate_records(data)
    except FormatError as e:
        e.file_name = file_name
        raise

    flattened = []
    for index, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            raise FormatError(f"JSON record {index} is not an object", file_name=file_name)
        flattened.append(flatten_record(record))

    headers, rows = union_records(flattened)
    logger.info("Parsed %d JSON records with %d distinct fields", len(rows), len(headers))
    return headers, rows
