"""
Import pipeline operations: upload, validate, execute, rollback.

Each operation takes an optional session; when none is given a session is
opened from the shared factory and closed afterwards. Uploaded bytes are kept
in storage and re-read (hash-checked) by every validate and execute call, so
validation and execution always see exactly the uploaded file.
"""
from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from lims_import.api.schemas.imports import ExecutionSummary, MappingConfig, ValidationReport
from lims_import.core.config import settings
from lims_import.core.exceptions import FatalExecutionError, FormatError, InvalidJobState, MappingError
from lims_import.db.models import ImportJob, ImportStatus
from lims_import.db.session import get_session_local
from lims_import.domain.imports.audit import record_audit
from lims_import.domain.imports.executor import execute_import_rows, mark_job_failed
from lims_import.domain.imports.ingestor import ParsedFile, parse_file
from lims_import.domain.imports.jobs import (
    create_import_job,
    get_import_job,
    list_import_jobs,
    refresh_import_job,
    request_cancel,
    transition_import_job,
)
from lims_import.domain.imports.rollback import rollback_import_job
from lims_import.domain.imports.suggester import suggest_column_mappings
from lims_import.domain.imports.transform import check_columns_present, coerce_mapping_config
from lims_import.domain.imports.validator import validate_rows
from lims_import.integrations.storage import delete_file, download_file, upload_file

logger = logging.getLogger(__name__)

ConfigInput = Union[MappingConfig, Dict[str, Any]]

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


@contextmanager
def _session_scope(db: Optional[Session]) -> Iterator[Session]:
    if db is not None:
        yield db
        return
    session = get_session_local()()
    try:
        yield session
    finally:
        session.close()


def _storage_name(file_name: str) -> str:
    base = _UNSAFE_NAME_RE.sub("_", os.path.basename(file_name)) or "upload"
    return f"{uuid.uuid4().hex}_{base}"


def _load_parsed_file(job: ImportJob) -> ParsedFile:
    content = download_file(job.storage_path, expected_hash=job.file_hash)
    return parse_file(content, job.file_name)


def upload_import(
    file_content: bytes,
    file_name: str,
    user_id: str,
    source_system: Optional[str] = None,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Parse an uploaded file, store its bytes and open an import job.

    Raises:
        FormatError: if the file is too large or cannot be parsed
    """
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(file_content) > max_bytes:
        raise FormatError(
            f"File exceeds the {settings.upload_max_file_size_mb} MB upload limit",
            file_name=file_name,
        )

    parsed = parse_file(file_content, file_name)
    stored = upload_file(file_content, _storage_name(file_name))

    with _session_scope(db) as session:
        try:
            job = create_import_job(
                session,
                file_name=file_name,
                file_size=len(file_content),
                file_hash=stored["file_hash"],
                storage_path=stored["file_path"],
                total_rows=parsed.total_rows,
                user_id=user_id,
                source_system=source_system,
                detected_encoding=parsed.detected_encoding,
                detected_separator=parsed.detected_separator,
            )
        except Exception:
            delete_file(stored["file_path"])
            raise

    suggestions = suggest_column_mappings(parsed.headers)
    record_audit(
        "IMPORT_UPLOAD",
        "IMPORT_JOB",
        job.id,
        user_id,
        {"import_code": job.import_code, "file_name": file_name, "total_rows": parsed.total_rows},
    )
    return {
        "job_id": job.id,
        "import_code": job.import_code,
        "columns": parsed.headers,
        "preview_rows": parsed.preview(),
        "total_rows": parsed.total_rows,
        "detected_encoding": parsed.detected_encoding,
        "detected_separator": parsed.detected_separator,
        "suggestions": suggestions,
    }


def validate_import(
    job_id: str,
    mapping_config: ConfigInput,
    user_id: str,
    db: Optional[Session] = None,
) -> ValidationReport:
    """
    Validate the job's stored file against a mapping configuration.

    The report and configuration are stored on the job. A clean report
    returns the job to UPLOADED (ready to execute); otherwise it ends in
    VALIDATION_FAILED and can be validated again.
    """
    config = coerce_mapping_config(mapping_config)
    allowed = [ImportStatus.UPLOADED, ImportStatus.VALIDATION_FAILED]

    with _session_scope(db) as session:
        job = refresh_import_job(session, job_id)
        if job.status not in [s.value for s in allowed]:
            raise InvalidJobState(job_id, job.status, [s.value for s in allowed], "validate")

        parsed = _load_parsed_file(job)
        check_columns_present(config, parsed.headers)

        transition_import_job(
            session,
            job_id,
            allowed,
            ImportStatus.VALIDATING,
            "validate",
            mapping_config=config.model_dump(mode="json"),
            import_type=config.import_type.value,
            source_system=config.source_system or job.source_system,
        )
        try:
            report = validate_rows(parsed.rows, config, session)
        except Exception as e:
            session.rollback()
            transition_import_job(
                session,
                job_id,
                [ImportStatus.VALIDATING],
                ImportStatus.VALIDATION_FAILED,
                "fail validation",
                error_detail=f"Validation aborted: {e}",
            )
            raise

        final_status = ImportStatus.UPLOADED if report.can_execute else ImportStatus.VALIDATION_FAILED
        transition_import_job(
            session,
            job_id,
            [ImportStatus.VALIDATING],
            final_status,
            "finish validation",
            validation_report=report.model_dump(mode="json"),
            error_detail=None,
        )

    record_audit(
        "IMPORT_VALIDATE",
        "IMPORT_JOB",
        job_id,
        user_id,
        {"ready": report.ready_count, "warnings": report.warning_count, "errors": report.error_count},
    )
    return report


def start_execution(
    job_id: str,
    mapping_config: ConfigInput,
    db: Session,
) -> Tuple[ImportJob, List[Dict[str, str]], MappingConfig]:
    """
    Claim a validated job for execution (UPLOADED -> IMPORTING).

    The configuration must be the one the stored validation report was
    produced with.

    Raises:
        InvalidJobState: if the job is not UPLOADED with a passing report
        MappingError: if the configuration differs from the validated one
    """
    config = coerce_mapping_config(mapping_config)
    job = get_import_job(db, job_id)
    db.refresh(job)

    if job.status != ImportStatus.UPLOADED.value:
        raise InvalidJobState(job_id, job.status, [ImportStatus.UPLOADED.value], "execute")
    report = job.validation_report or {}
    if not report.get("can_execute"):
        raise InvalidJobState(
            job_id, job.status, [f"{ImportStatus.UPLOADED.value} with a passing validation"], "execute"
        )
    if job.mapping_config != config.model_dump(mode="json"):
        raise MappingError("Mapping configuration changed since validation; validate the import again")

    parsed = _load_parsed_file(job)
    job = transition_import_job(
        db,
        job_id,
        [ImportStatus.UPLOADED],
        ImportStatus.IMPORTING,
        "execute",
        started_at=datetime.now(timezone.utc),
        cancel_requested=False,
        total_records=parsed.total_rows,
        imported_records=0,
        skipped_records=0,
        error_records=0,
        execution_errors=[],
        error_detail=None,
    )
    return job, parsed.rows, config


def run_execution(
    job_id: str,
    rows: List[Dict[str, str]],
    config: MappingConfig,
    user_id: str,
    db: Optional[Session] = None,
) -> ExecutionSummary:
    """Run a claimed job to completion; used inline and as a background task."""
    with _session_scope(db) as session:
        try:
            summary = execute_import_rows(session, job_id, rows, config, user_id)
        except FatalExecutionError:
            raise
        except Exception as e:
            session.rollback()
            job = refresh_import_job(session, job_id)
            if job.status == ImportStatus.IMPORTING.value:
                mark_job_failed(job_id, f"Import aborted: {e}", {})
            raise

    record_audit(
        "IMPORT_EXECUTE",
        "IMPORT_JOB",
        job_id,
        user_id,
        {
            "status": summary.status,
            "imported": summary.imported_records,
            "skipped": summary.skipped_records,
            "errors": summary.error_records,
        },
    )
    return summary


def execute_import(
    job_id: str,
    mapping_config: ConfigInput,
    user_id: str,
    db: Optional[Session] = None,
) -> ExecutionSummary:
    """Execute a validated import inline and return its summary."""
    with _session_scope(db) as session:
        _, rows, config = start_execution(job_id, mapping_config, session)
        return run_execution(job_id, rows, config, user_id, session)


def rollback_import(job_id: str, user_id: str, db: Optional[Session] = None) -> Dict[str, Any]:
    """Delete everything the import created; see ``rollback_import_job``."""
    with _session_scope(db) as session:
        deleted_counts = rollback_import_job(session, job_id)
        job = refresh_import_job(session, job_id)

    record_audit("IMPORT_ROLLBACK", "IMPORT_JOB", job_id, user_id, {"deleted_counts": deleted_counts})
    return {"job_id": job_id, "status": job.status, "deleted_counts": deleted_counts}


def get_job(job_id: str, db: Optional[Session] = None) -> ImportJob:
    with _session_scope(db) as session:
        return refresh_import_job(session, job_id)


def list_jobs(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Optional[Session] = None,
) -> Tuple[List[ImportJob], int]:
    with _session_scope(db) as session:
        return list_import_jobs(session, status=status, limit=limit, offset=offset)


def cancel_import(job_id: str, user_id: Optional[str] = None, db: Optional[Session] = None) -> ImportJob:
    """Ask a running import to stop after the current row."""
    with _session_scope(db) as session:
        job = request_cancel(session, job_id)
    record_audit("IMPORT_CANCEL", "IMPORT_JOB", job_id, user_id, {})
    return job
