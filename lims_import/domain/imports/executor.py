"""
Write validated rows into the laboratory tables.

Every row runs in its own transaction: the entity chain is resolved in
``CREATION_ORDER`` and committed together, or rolled back together when any
entity fails. Connection-level database errors abort the whole job.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.orm import Session

from lims_import.api.schemas.imports import ExecutionSummary, MappingConfig, RowError
from lims_import.core.config import settings
from lims_import.core.exceptions import FatalExecutionError, RowExecutionError
from lims_import.db.models import ImportStatus, ImportType
from lims_import.db.session import get_session_local
from lims_import.domain.imports.jobs import is_cancel_requested, transition_import_job, update_import_job
from lims_import.domain.imports.resolver import (
    ENTITY_SPECS,
    Created,
    Failed,
    Matched,
    RowContext,
    find_client_id,
    find_process_id,
    find_sample_id,
    resolve_entity,
)
from lims_import.domain.imports.transform import RowCandidates, transform_row

logger = logging.getLogger(__name__)

CREATION_ORDER = ("client", "process", "sample", "analysis", "recommendation", "result")
DELETION_ORDER = tuple(reversed(CREATION_ORDER))

# Entities each scope writes; anything else in the row is only a reference
WRITTEN_ENTITIES = {
    ImportType.FULL: CREATION_ORDER,
    ImportType.CLIENTS_ONLY: ("client",),
    ImportType.PROCESSES_ONLY: ("process",),
    ImportType.SAMPLES_ONLY: ("sample",),
    ImportType.ANALYSES_ONLY: ("analysis", "recommendation", "result"),
}

FATAL_DB_ERRORS = (OperationalError, InterfaceError, DisconnectionError)
ROW_DB_ERRORS = (IntegrityError, DataError)


def _resolve_references(db: Session, ctx: RowContext, import_type: ImportType) -> None:
    candidates = ctx.candidates
    if import_type == ImportType.PROCESSES_ONLY and candidates.has_entity("client"):
        ctx.ids["client"] = find_client_id(db, candidates)

    elif import_type == ImportType.SAMPLES_ONLY:
        client_id = find_client_id(db, candidates)
        if client_id is None:
            reference = candidates.get("client.nip") or candidates.get("client.companyName")
            raise RowExecutionError(
                f"Client '{reference}' does not exist",
                entity="client",
                column=candidates.column_for("client.nip" if candidates.get("client.nip") else "client.companyName"),
            )
        ctx.ids["client"] = client_id
        if candidates.get("process.name"):
            ctx.ids["process"] = find_process_id(db, candidates, client_id)

    elif import_type == ImportType.ANALYSES_ONLY:
        sample_id = find_sample_id(db, candidates)
        if sample_id is None:
            reference = candidates.get("sample.legacyCode") or candidates.get("sample.sampleCode")
            raise RowExecutionError(
                f"Sample '{reference}' does not exist",
                entity="sample",
                column=candidates.column_for(
                    "sample.legacyCode" if candidates.get("sample.legacyCode") else "sample.sampleCode"
                ),
            )
        ctx.ids["sample"] = sample_id


def process_row(
    db: Session,
    candidates: RowCandidates,
    config: MappingConfig,
    job_id: str,
    user_id: Optional[str] = None,
) -> str:
    """
    Resolve the entity chain for one row inside the caller's transaction.

    Returns ``"imported"`` when anything was created or overwritten and
    ``"skipped"`` when every entity matched without change.

    Raises:
        RowExecutionError: when any entity of the row cannot be written
    """
    first_error = next((issue for issue in candidates.issues if issue.severity == "error"), None)
    if first_error is not None:
        raise RowExecutionError(first_error.message, entity=first_error.field, column=first_error.column)

    import_type = ImportType(config.import_type)
    ctx = RowContext(candidates=candidates, config=config, job_id=job_id, user_id=user_id)
    _resolve_references(db, ctx, import_type)

    changed = False
    written = WRITTEN_ENTITIES[import_type]
    for name in CREATION_ORDER:
        if name not in written:
            continue
        decision = resolve_entity(db, ENTITY_SPECS[name], ctx)
        if isinstance(decision, Failed):
            raise RowExecutionError(decision.reason, entity=name)
        if isinstance(decision, (Matched, Created)):
            ctx.ids[name] = decision.entity_id
        if isinstance(decision, Created) or (isinstance(decision, Matched) and decision.overwritten):
            changed = True

    return "imported" if changed else "skipped"


def _final_status(imported: int, skipped: int, errors: int, cancelled: bool) -> ImportStatus:
    succeeded = imported + skipped
    if cancelled:
        return ImportStatus.PARTIALLY_COMPLETED if succeeded else ImportStatus.FAILED
    if errors == 0:
        return ImportStatus.COMPLETED
    if succeeded:
        return ImportStatus.PARTIALLY_COMPLETED
    return ImportStatus.FAILED


def mark_job_failed(job_id: str, message: str, counters: Dict[str, Any]) -> None:
    """Record a fatal abort using a fresh session; the original one may be unusable."""
    db = get_session_local()()
    try:
        transition_import_job(
            db,
            job_id,
            [ImportStatus.IMPORTING],
            ImportStatus.FAILED,
            "fail",
            error_detail=message,
            completed_at=datetime.now(timezone.utc),
            **counters,
        )
    except Exception as e:
        # The database may still be unreachable; the original error is what gets raised
        logger.error("Could not mark import job %s as FAILED: %s", job_id, e)
    finally:
        db.close()


def execute_import_rows(
    db: Session,
    job_id: str,
    rows: List[Dict[str, str]],
    config: MappingConfig,
    user_id: Optional[str] = None,
) -> ExecutionSummary:
    """
    Execute an import for a job already in IMPORTING status.

    Progress counters are persisted every ``settings.execution_progress_every``
    rows and the cancellation flag is checked before each row.

    Raises:
        FatalExecutionError: when the database connection is lost; the job is
            marked FAILED with the counts reached so far
    """
    imported = skipped = error_count = processed = 0
    errors: List[RowError] = []
    cancelled = False
    progress_every = max(1, settings.execution_progress_every)

    def counters() -> Dict[str, Any]:
        return {
            "total_records": len(rows),
            "imported_records": imported,
            "skipped_records": skipped,
            "error_records": error_count,
            "execution_errors": [e.model_dump() for e in errors],
        }

    try:
        for row_number, row in enumerate(rows, start=1):
            if is_cancel_requested(db, job_id):
                cancelled = True
                logger.info("Import job %s cancelled before row %d", job_id, row_number)
                break

            candidates = transform_row(row, config, row_number)
            if candidates.is_empty and config.skip_empty_rows:
                skipped += 1
            else:
                try:
                    outcome = process_row(db, candidates, config, job_id, user_id)
                    db.commit()
                    if outcome == "imported":
                        imported += 1
                    else:
                        skipped += 1
                except RowExecutionError as e:
                    db.rollback()
                    error_count += 1
                    errors.append(RowError(row=row_number, entity=e.entity, column=e.column, message=e.message))
                except ROW_DB_ERRORS as e:
                    db.rollback()
                    error_count += 1
                    message = str(getattr(e, "orig", None) or e).splitlines()[0]
                    errors.append(RowError(row=row_number, message=f"Database rejected row: {message}"))
                    logger.debug("Row %d of job %s rejected: %s", row_number, job_id, e)

            processed += 1
            if processed % progress_every == 0:
                update_import_job(db, job_id, **counters())

    except FATAL_DB_ERRORS as e:
        db.rollback()
        message = f"Database connection lost after {processed} rows: {e}"
        logger.error("Import job %s aborted: %s", job_id, message)
        mark_job_failed(job_id, message, counters())
        raise FatalExecutionError(job_id, message, processed_rows=processed) from e

    status = _final_status(imported, skipped, error_count, cancelled)
    extra: Dict[str, Any] = {"completed_at": datetime.now(timezone.utc)}
    if cancelled:
        extra["error_detail"] = f"Cancelled by user after {processed} of {len(rows)} rows"

    transition_import_job(db, job_id, [ImportStatus.IMPORTING], status, "finish", **counters(), **extra)
    logger.info(
        "Import job %s finished %s: %d imported, %d skipped, %d errors of %d rows",
        job_id,
        status.value,
        imported,
        skipped,
        error_count,
        len(rows),
    )
    return ExecutionSummary(
        job_id=job_id,
        status=status.value,
        total_records=len(rows),
        imported_records=imported,
        skipped_records=skipped,
        error_records=error_count,
        errors=errors,
        cancelled=cancelled,
    )
