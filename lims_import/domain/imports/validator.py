"""
Read-only validation of mapped rows.

Produces a severity-tagged report; any ``error`` finding blocks execution.
The database is only queried for reference lookups in the scoped import
types (existing clients for SAMPLES_ONLY, existing samples for
ANALYSES_ONLY) and nothing is written.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from lims_import.api.schemas.imports import DedupStrategy, MappingConfig, ValidationFinding, ValidationReport
from lims_import.db.models import ImportType
from lims_import.domain.imports.resolver import find_client_id, find_process_id, find_sample_id
from lims_import.domain.imports.transform import (
    NO_COLUMN,
    FieldIssue,
    RowCandidates,
    coerce_mapping_config,
    transform_row,
)

logger = logging.getLogger(__name__)

# Fields whose in-file repetition is reported under create_new
REPEAT_KEYS = ("client.nip", "sample.legacyCode", "analysis.legacyCode")


def _provided(config: MappingConfig, target_field: str) -> bool:
    return target_field in config.mapped_fields() or target_field in config.defaults


def missing_required_mappings(config: MappingConfig) -> List[str]:
    """Required target fields (per import scope) that no column or default supplies."""
    import_type = ImportType(config.import_type)
    missing: List[str] = []
    if import_type in (ImportType.FULL, ImportType.CLIENTS_ONLY):
        if not _provided(config, "client.companyName"):
            missing.append("client.companyName")
    if import_type == ImportType.FULL:
        if not any(f.startswith("sample.") for f in config.mapped_fields()):
            missing.append("sample.*")
    if import_type == ImportType.PROCESSES_ONLY:
        for name in ("process.name", "process.processType"):
            if not _provided(config, name):
                missing.append(name)
    if import_type == ImportType.SAMPLES_ONLY:
        if not (_provided(config, "client.nip") or _provided(config, "client.companyName")):
            missing.append("client.nip|client.companyName")
    if import_type == ImportType.ANALYSES_ONLY:
        if not (_provided(config, "sample.legacyCode") or _provided(config, "sample.sampleCode")):
            missing.append("sample.legacyCode|sample.sampleCode")
    return missing


class _ReferenceCache:
    """Memoises read-only reference lookups for one validation pass."""

    def __init__(self, db: Optional[Session]):
        self.db = db
        self._clients: Dict[Tuple, Optional[str]] = {}
        self._samples: Dict[Tuple, Optional[str]] = {}
        self._processes: Dict[Tuple, Optional[str]] = {}

    def client(self, candidates: RowCandidates) -> Optional[str]:
        client = candidates.entity("client")
        key = (client.get("nip"), (client.get("companyName") or "").casefold())
        if key not in self._clients:
            self._clients[key] = find_client_id(self.db, candidates) if self.db is not None else None
        return self._clients[key]

    def process(self, candidates: RowCandidates, client_id: Optional[str]) -> Optional[str]:
        process = candidates.entity("process")
        key = (client_id, process.get("name"), process.get("processType"))
        if key not in self._processes:
            self._processes[key] = find_process_id(self.db, candidates, client_id) if self.db is not None else None
        return self._processes[key]

    def sample(self, candidates: RowCandidates) -> Optional[str]:
        sample = candidates.entity("sample")
        key = (sample.get("legacyCode"), sample.get("sampleCode"))
        if key not in self._samples:
            self._samples[key] = find_sample_id(self.db, candidates) if self.db is not None else None
        return self._samples[key]


def _check_required(candidates: RowCandidates, config: MappingConfig, refs: _ReferenceCache) -> None:
    import_type = ImportType(config.import_type)

    if import_type in (ImportType.FULL, ImportType.CLIENTS_ONLY):
        if not candidates.get("client.companyName"):
            candidates.add_issue("client.companyName", "Company name is required")
    if import_type == ImportType.FULL and not candidates.has_entity("sample"):
        candidates.add_issue(None, "At least one sample field is required")

    if import_type == ImportType.PROCESSES_ONLY:
        if not candidates.get("process.name"):
            candidates.add_issue("process.name", "Process name is required")
        if candidates.get("process.processType") is None and not _has_issue(candidates, "process.processType"):
            candidates.add_issue("process.processType", "Process type is required")
        if candidates.has_entity("client") and refs.client(candidates) is None:
            candidates.add_issue(
                "client.nip" if candidates.get("client.nip") else "client.companyName",
                "Client not found; the process will not be linked to a client",
                candidates.get("client.nip") or candidates.get("client.companyName"),
                severity="warning",
            )

    if import_type == ImportType.SAMPLES_ONLY:
        reference = candidates.get("client.nip") or candidates.get("client.companyName")
        field = "client.nip" if candidates.get("client.nip") else "client.companyName"
        if not reference:
            candidates.add_issue(field, "A client reference (NIP or company name) is required")
        else:
            client_id = refs.client(candidates)
            if client_id is None:
                candidates.add_issue(field, f"Client '{reference}' does not exist", reference)
            elif candidates.get("process.name") and refs.process(candidates, client_id) is None:
                candidates.add_issue(
                    "process.name",
                    "Process not found for client; the sample will not be linked to a process",
                    candidates.get("process.name"),
                    severity="warning",
                )

    if import_type == ImportType.ANALYSES_ONLY:
        reference = candidates.get("sample.legacyCode") or candidates.get("sample.sampleCode")
        field = "sample.legacyCode" if candidates.get("sample.legacyCode") else "sample.sampleCode"
        if not reference:
            candidates.add_issue(field, "A sample reference (legacy code or sample code) is required")
        elif refs.sample(candidates) is None:
            candidates.add_issue(field, f"Sample '{reference}' does not exist", reference)


def _has_issue(candidates: RowCandidates, target_field: str) -> bool:
    return any(issue.field == target_field for issue in candidates.issues)


def _check_repeats(candidates: RowCandidates, seen: Dict[str, Dict[str, int]]) -> None:
    for target_field in REPEAT_KEYS:
        value = candidates.get(target_field)
        if not value:
            continue
        first_row = seen.setdefault(target_field, {}).setdefault(str(value), candidates.row_number)
        if first_row != candidates.row_number:
            candidates.add_issue(
                target_field,
                f"Value repeats row {first_row}; create_new will create a second record",
                value,
                severity="warning",
            )


def validate_rows(
    rows: List[Dict[str, str]],
    mapping_config: Any,
    db: Optional[Session] = None,
) -> ValidationReport:
    """
    Validate every row against the mapping configuration.

    Args:
        rows: Parsed rows (header -> raw text) in file order
        mapping_config: MappingConfig or its dict form
        db: Session used for read-only reference lookups

    Raises:
        MappingError: if the configuration itself is unusable
    """
    config = coerce_mapping_config(mapping_config)
    missing_mappings = missing_required_mappings(config)
    refs = _ReferenceCache(db)
    seen_keys: Dict[str, Dict[str, int]] = {}
    check_repeats = DedupStrategy(config.dedup_strategy) == DedupStrategy.CREATE_NEW

    findings: List[ValidationFinding] = []
    ready = warning_rows = error_rows = empty_rows = 0
    error_fields: Set[str] = set()

    for row_number, row in enumerate(rows, start=1):
        candidates = transform_row(row, config, row_number)
        if candidates.is_empty and config.skip_empty_rows:
            empty_rows += 1
            continue

        for target_field in missing_mappings:
            candidates.issues.append(_missing_mapping_issue(target_field))
        if not missing_mappings:
            _check_required(candidates, config, refs)
        if check_repeats:
            _check_repeats(candidates, seen_keys)

        for issue in candidates.issues:
            findings.append(
                ValidationFinding(
                    row=row_number,
                    column=issue.column,
                    field=issue.field,
                    message=issue.message,
                    value=issue.value,
                    severity=issue.severity,
                )
            )
            if issue.severity == "error" and issue.field:
                error_fields.add(issue.field)

        if candidates.has_errors:
            error_rows += 1
        else:
            ready += 1
            if candidates.issues:
                warning_rows += 1

    error_findings = sum(1 for f in findings if f.severity == "error")
    report = ValidationReport(
        total_rows=len(rows),
        ready_count=ready,
        warning_count=warning_rows,
        error_count=error_rows,
        errors=findings,
        summary={
            "total_rows": len(rows),
            "ready_rows": ready,
            "warning_rows": warning_rows,
            "error_rows": error_rows,
            "empty_rows": empty_rows,
            "error_findings": error_findings,
            "warning_findings": len(findings) - error_findings,
        },
        can_execute=error_rows == 0 and ready > 0,
    )
    logger.info(
        "Validated %d rows: %d ready, %d with warnings, %d with errors%s",
        len(rows),
        ready,
        warning_rows,
        error_rows,
        f" (fields: {', '.join(sorted(error_fields))})" if error_fields else "",
    )
    return report


def _missing_mapping_issue(target_field: str) -> FieldIssue:
    return FieldIssue(
        field=target_field,
        column=NO_COLUMN,
        message=f"Required field {target_field} is not mapped",
        severity="error",
    )
