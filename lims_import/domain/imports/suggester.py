"""
Suggest target fields for source column headers.

Scoring, highest first:
- exact alias or field-name match (case and diacritic insensitive): 100
- alias contained in the header or vice versa: 70-95, longer overlap scores higher
- difflib similarity against aliases and field names, kept when >= 0.6
A target field is suggested for at most one column; the highest confidence
column keeps it and the others fall back to no suggestion.
"""
from __future__ import annotations

import difflib
import logging
import re
from typing import Dict, List, Optional, Tuple

from lims_import.api.schemas.imports import ColumnMapping, MappingConfig, MappingSuggestion
from lims_import.db.models import ImportType
from lims_import.domain.imports.target_fields import TargetField, fields_for_scope, normalize_label

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6
EXACT_SCORE = 100
CONTAINS_FLOOR = 70

_CAMEL_RE = re.compile(r"(?<=[a-z])(?=[A-Z])")
_SEPARATORS_RE = re.compile(r"[\s_\-./]+")


def _normalize_header(value: str) -> str:
    value = _CAMEL_RE.sub(" ", value)
    return _SEPARATORS_RE.sub(" ", normalize_label(value)).strip()


def _candidates(target: TargetField) -> List[str]:
    names = [_normalize_header(alias) for alias in target.aliases]
    names.append(_normalize_header(target.attribute))
    names.append(_normalize_header(f"{target.entity} {target.attribute}"))
    return [n for n in names if n]


def _score(header: str, target: TargetField) -> int:
    best = 0
    for candidate in _candidates(target):
        if header == candidate:
            return EXACT_SCORE
        # Whole-word containment only, so "min" does not match "administrator"
        if f" {candidate} " in f" {header} " or f" {header} " in f" {candidate} ":
            shorter, longer = sorted((header, candidate), key=len)
            score = CONTAINS_FLOOR + int(25 * len(shorter) / len(longer))
        else:
            ratio = difflib.SequenceMatcher(None, header, candidate).ratio()
            score = int(round(ratio * 100)) if ratio >= SIMILARITY_THRESHOLD else 0
        best = max(best, score)
    return best


def suggest_column_mappings(
    headers: List[str],
    import_type: Optional[ImportType] = None,
) -> List[MappingSuggestion]:
    """
    Return one suggestion per header, in header order.

    Unknown headers yield ``target_field=None`` with confidence 0.
    """
    targets = fields_for_scope(import_type)
    ranked: List[Tuple[int, int, str]] = []
    for index, header in enumerate(headers):
        normalized = _normalize_header(header or "")
        if not normalized:
            continue
        for target in targets:
            score = _score(normalized, target)
            if score:
                ranked.append((score, index, target.name))

    # Greedy assignment, strongest pairs first
    ranked.sort(key=lambda item: (-item[0], item[1]))
    assigned: Dict[int, Tuple[str, int]] = {}
    taken = set()
    for score, index, field_name in ranked:
        if index in assigned or field_name in taken:
            continue
        assigned[index] = (field_name, score)
        taken.add(field_name)

    suggestions = []
    for index, header in enumerate(headers):
        field_name, score = assigned.get(index, (None, 0))
        suggestions.append(MappingSuggestion(source_column=header, target_field=field_name, confidence=score))

    logger.debug("Suggested %d of %d columns", len(assigned), len(headers))
    return suggestions


def build_suggested_config(
    suggestions: List[MappingSuggestion],
    import_type: Optional[ImportType] = None,
) -> Optional[MappingConfig]:
    """Turn suggestions into a draft config; None when nothing could be matched."""
    mappings = [
        ColumnMapping(source_column=s.source_column, target_field=s.target_field)
        for s in suggestions
    ]
    if not any(m.target_field for m in mappings):
        return None
    return MappingConfig(import_type=import_type or ImportType.FULL, column_mappings=mappings)
