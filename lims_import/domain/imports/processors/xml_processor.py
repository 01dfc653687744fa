import io
import logging
from typing import Dict, List, Tuple

from lxml import etree

from lims_import.core.exceptions import FormatError
from lims_import.domain.imports.processors.common import union_records

logger = logging.getLogger(__name__)


def _local_name(tag) -> str:
    return etree.QName(tag).localname


def _flatten_element(element, parent: str = "") -> Dict[str, str]:
    flat: Dict[str, str] = {}
    for attr_name, attr_value in element.attrib.items():
        key = _local_name(attr_name)
        flat[f"{parent}.{key}" if parent else key] = attr_value

    for child in element:
        if not isinstance(child.tag, str):
            continue  # comments and processing instructions
        name = _local_name(child.tag)
        key = f"{parent}.{name}" if parent else name
        if len(child) or child.attrib:
            nested = _flatten_element(child, key)
            text = (child.text or "").strip()
            if text:
                nested.setdefault(key, text)
            flat.update(nested)
        else:
            flat[key] = (child.text or "").strip()
    return flat


def _record_elements(root) -> List:
    children = [c for c in root if isinstance(c.tag, str)]
    if len(children) != 1:
        return children
    # <export><records><record/><record/></records></export>
    grandchildren = [c for c in children[0] if isinstance(c.tag, str)]
    if len(grandchildren) > 1 and len({c.tag for c in grandchildren}) == 1:
        return grandchildren
    return children


def process_xml(file_content: bytes, file_name: str = "") -> Tuple[List[str], List[Dict[str, str]]]:
    """Repeated children of the root (or of a single wrapper element) become rows."""
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.parse(io.BytesIO(file_content), parser).getroot()
    except etree.XMLSyntaxError as e:
        raise FormatError(f"Malformed XML: {e}", file_name=file_name)

    records = [_flatten_element(element) for element in _record_elements(root)]
    headers, rows = union_records(records)
    logger.info("Parsed %d XML records with %d distinct fields", len(rows), len(headers))
    return headers, rows
