"""Helpers shared by the format processors."""
from typing import Any, Dict, Iterable, List, Tuple

import pandas as pd


def dedupe_headers(raw_headers: Iterable[Any]) -> List[str]:
    """
    Make header names unique and non-blank.

    Blank headers become ``column_<position>``; repeats get a ``_<n>`` suffix
    (``Name``, ``Name_2``, ``Name_3``).
    """
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for position, raw in enumerate(raw_headers, start=1):
        name = stringify_cell(raw).strip() or f"column_{position}"
        if name in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
            while candidate in seen:
                seen[name] += 1
                candidate = f"{name}_{seen[name]}"
            name = candidate
        seen.setdefault(name, 1)
        headers.append(name)
    return headers


def stringify_cell(value: Any) -> str:
    """Render a raw cell as text without coercion; missing values become ''."""
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def union_records(records: List[Dict[str, Any]]) -> Tuple[List[str], List[Dict[str, str]]]:
    """Union record keys in first-seen order and fill gaps with ''."""
    headers: List[str] = []
    known = set()
    for record in records:
        for key in record:
            if key not in known:
                known.add(key)
                headers.append(key)
    rows = [{h: stringify_cell(record.get(h)) for h in headers} for record in records]
    return headers, rows
