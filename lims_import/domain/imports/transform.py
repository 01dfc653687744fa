"""
Row transformation shared by validation and execution.

A raw row (header -> text) plus the mapping configuration becomes a set of
typed candidate attributes per entity family, together with any findings the
conversion produced. Validator and executor both go through ``transform_row``
so a row that validates cleanly is written exactly as it was checked.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from lims_import.api.schemas.imports import ColumnMapping, MappingConfig
from lims_import.core.exceptions import MappingError
from lims_import.db.models import ImportType
from lims_import.domain.imports.target_fields import (
    ENUM_DEFAULTS,
    TARGET_FIELDS,
    TargetField,
    lookup_builtin_label,
    normalize_label,
)
from lims_import.utils.date import parse_date

logger = logging.getLogger(__name__)

NO_COLUMN = "-"
NIP_LENGTH = 10

# Enum fields that may not fall back to a default for the given scope
STRUCTURALLY_REQUIRED_ENUMS = {
    ImportType.PROCESSES_ONLY: {"process.processType"},
}

_WHITESPACE_RE = re.compile(r"[\s ]+")
_COMMA_THOUSANDS_RE = re.compile(r"^[-+]?\d{1,3}(,\d{3})+$")
_DOT_THOUSANDS_RE = re.compile(r"^[-+]?\d{1,3}(\.\d{3})+$")


@dataclass
class FieldIssue:
    field: Optional[str]
    column: str
    message: str
    value: Optional[str] = None
    severity: str = "error"


@dataclass
class RowCandidates:
    """Typed values for one source row, grouped by entity family."""
    row_number: int
    values: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    columns: Dict[str, str] = field(default_factory=dict)
    issues: List[FieldIssue] = field(default_factory=list)
    is_empty: bool = False

    def entity(self, name: str) -> Dict[str, Any]:
        return self.values.get(name, {})

    def get(self, target_field: str) -> Any:
        entity, attribute = target_field.split(".", 1)
        return self.values.get(entity, {}).get(attribute)

    def has_entity(self, name: str) -> bool:
        return bool(self.values.get(name))

    def column_for(self, target_field: str) -> str:
        return self.columns.get(target_field, NO_COLUMN)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    def add_issue(self, target_field: Optional[str], message: str, value: Any = None, severity: str = "error"):
        column = self.column_for(target_field) if target_field else NO_COLUMN
        self.issues.append(
            FieldIssue(
                field=target_field,
                column=column,
                message=message,
                value=None if value is None else str(value),
                severity=severity,
            )
        )


def coerce_mapping_config(raw: Union[MappingConfig, Dict[str, Any]]) -> MappingConfig:
    """Accept a config model or plain dict; structural problems raise MappingError."""
    if isinstance(raw, MappingConfig):
        return raw
    if not isinstance(raw, dict):
        raise MappingError("Mapping configuration must be an object")
    try:
        return MappingConfig.model_validate(raw)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors() if err.get("loc")})
        messages = "; ".join(err["msg"] for err in e.errors())
        raise MappingError(f"Invalid mapping configuration: {messages}", fields=fields)


def check_columns_present(config: MappingConfig, headers: List[str]) -> None:
    """Every mapped source column must exist in the parsed file."""
    known = set(headers)
    missing = [m.source_column for m in config.column_mappings if m.target_field and m.source_column not in known]
    if missing:
        raise MappingError(
            f"Mapped source columns not found in file: {', '.join(missing)}",
            fields=missing,
        )


def apply_transformation(value: str, transformation: Optional[str]) -> str:
    if transformation == "trim":
        return value.strip()
    if transformation == "uppercase":
        return value.upper()
    if transformation == "lowercase":
        return value.lower()
    if transformation == "digits_only":
        return re.sub(r"\D", "", value)
    return value


def parse_decimal(raw: str, decimal_separator: str = ".") -> Decimal:
    """
    Parse a number written with either decimal separator.

    Handles grouped thousands such as ``1 234,56``, ``1.234,56`` and
    ``1,234.56``. Raises ValueError when the text is not a finite number.
    """
    text = _WHITESPACE_RE.sub("", raw)
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        if decimal_separator == "." and _COMMA_THOUSANDS_RE.match(text):
            text = text.replace(",", "")
        else:
            text = text.replace(",", ".")
    elif decimal_separator == "," and _DOT_THOUSANDS_RE.match(text):
        text = text.replace(".", "")

    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"'{raw}' is not a number")
    if not number.is_finite():
        raise ValueError(f"'{raw}' is not a finite number")
    return number


def resolve_enum(target: TargetField, raw: str, config: MappingConfig):
    """Custom remap table first, then the built-in labels. None when unknown."""
    custom = config.enum_mappings.get(target.name) or {}
    if raw in custom:
        return target.enum(custom[raw])
    wanted = normalize_label(raw)
    for label, canonical in custom.items():
        if normalize_label(label) == wanted:
            return target.enum(canonical)
    return lookup_builtin_label(target.enum, raw)


def _raw_value(row: Dict[str, str], mapping: Optional[ColumnMapping], target_name: str,
               config: MappingConfig) -> str:
    value = ""
    if mapping is not None:
        value = row.get(mapping.source_column) or ""
        if value.strip():
            value = apply_transformation(value, mapping.transformation)
        if not value.strip() and mapping.default_value is not None:
            value = mapping.default_value
    if not value.strip():
        value = config.defaults.get(target_name, "") or ""
    return value.strip()


def is_empty_row(row: Dict[str, str], config: MappingConfig) -> bool:
    return all(not (row.get(m.source_column) or "").strip() for m in config.column_mappings if m.target_field)


def transform_row(row: Dict[str, str], config: MappingConfig, row_number: int) -> RowCandidates:
    """Convert one raw row into typed per-entity candidates."""
    candidates = RowCandidates(row_number=row_number, is_empty=is_empty_row(row, config))
    by_target = {m.target_field: m for m in config.column_mappings if m.target_field}
    candidates.columns = {name: m.source_column for name, m in by_target.items()}

    if candidates.is_empty and config.skip_empty_rows:
        return candidates

    import_type = ImportType(config.import_type)
    strict_enums = STRUCTURALLY_REQUIRED_ENUMS.get(import_type, set())

    for target_name, target in TARGET_FIELDS.items():
        mapping = by_target.get(target_name)
        if mapping is None and target_name not in config.defaults:
            continue
        raw = _raw_value(row, mapping, target_name, config)
        if not raw:
            continue

        if target.kind == "number":
            try:
                value = parse_decimal(raw, config.decimal_separator)
            except ValueError:
                candidates.add_issue(target_name, f"Invalid number '{raw}'", raw)
                continue
        elif target.kind == "date":
            value = parse_date(raw, config.date_format)
            if value is None:
                expected = f" (expected {config.date_format})" if config.date_format else ""
                candidates.add_issue(target_name, f"Invalid date '{raw}'{expected}", raw)
                continue
        elif target.kind == "enum":
            value = resolve_enum(target, raw, config)
            if value is None:
                if target_name in strict_enums:
                    candidates.add_issue(target_name, f"Unknown {target.attribute} value '{raw}'", raw)
                    continue
                value = ENUM_DEFAULTS[target.enum]
                candidates.add_issue(
                    target_name,
                    f"Unknown {target.attribute} value '{raw}', using {value.value}",
                    raw,
                    severity="warning",
                )
        elif target_name == "client.nip":
            digits = re.sub(r"\D", "", raw)
            if len(digits) != NIP_LENGTH:
                candidates.add_issue(
                    target_name,
                    f"NIP should have {NIP_LENGTH} digits, got {len(digits)}; it will not be stored",
                    raw,
                    severity="warning",
                )
                continue
            value = digits
        else:
            value = raw

        candidates.values.setdefault(target.entity, {})[target.attribute] = value

    _check_consistency(candidates)
    return candidates


def _check_consistency(candidates: RowCandidates) -> None:
    result = candidates.entity("result")
    if "value" in result and not result.get("parameterName"):
        candidates.add_issue("result.value", "Result value given without a parameter name", result["value"])
    if result.get("parameterName") and "value" not in result:
        candidates.add_issue("result.value", "Result parameter given without a value; no result will be stored",
                             result["parameterName"], severity="warning")

    min_ref = result.get("minReference")
    max_ref = result.get("maxReference")
    if min_ref is not None and max_ref is not None and min_ref > max_ref:
        candidates.add_issue(
            "result.minReference",
            f"Minimum reference {min_ref} is greater than maximum reference {max_ref}",
            min_ref,
            severity="warning",
        )

    analysis_date = candidates.get("analysis.analysisDate")
    if isinstance(analysis_date, datetime) and analysis_date > datetime.now(analysis_date.tzinfo):
        candidates.add_issue("analysis.analysisDate", "Analysis date is in the future", analysis_date.date(),
                             severity="warning")
