"""
Persistent tracking for import jobs and their status machine.

Status changes go through ``transition_import_job`` which issues a
conditional ``UPDATE ... WHERE status IN (:expected)``; when no row is
updated another caller got there first (or the job is in the wrong state)
and ``InvalidJobState`` is raised.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lims_import.core.exceptions import InvalidJobState, JobNotFound
from lims_import.db.models import ImportJob, ImportStatus, next_sequential_code
from lims_import.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

CODE_RETRIES = 3

# status -> statuses it may move to
ALLOWED_TRANSITIONS: Dict[ImportStatus, Tuple[ImportStatus, ...]] = {
    ImportStatus.UPLOADED: (ImportStatus.VALIDATING, ImportStatus.IMPORTING),
    ImportStatus.VALIDATING: (ImportStatus.UPLOADED, ImportStatus.VALIDATION_FAILED),
    ImportStatus.VALIDATION_FAILED: (ImportStatus.VALIDATING,),
    ImportStatus.IMPORTING: (ImportStatus.COMPLETED, ImportStatus.PARTIALLY_COMPLETED, ImportStatus.FAILED),
    ImportStatus.COMPLETED: (ImportStatus.ROLLING_BACK,),
    ImportStatus.PARTIALLY_COMPLETED: (ImportStatus.ROLLING_BACK,),
    ImportStatus.ROLLING_BACK: (ImportStatus.ROLLED_BACK, ImportStatus.ROLLING_BACK),
    ImportStatus.FAILED: (),
    ImportStatus.ROLLED_BACK: (),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_import_job(
    db: Session,
    *,
    file_name: str,
    file_size: int,
    file_hash: str,
    storage_path: str,
    total_rows: int,
    user_id: Optional[str] = None,
    source_system: Optional[str] = None,
    detected_encoding: Optional[str] = None,
    detected_separator: Optional[str] = None,
) -> ImportJob:
    """Create and persist a new import job in UPLOADED status."""
    last_error: Optional[IntegrityError] = None
    for _ in range(CODE_RETRIES):
        job = ImportJob(
            import_code=next_sequential_code(db, ImportJob.import_code, "IMP"),
            file_name=file_name,
            file_size=file_size,
            file_hash=file_hash,
            storage_path=storage_path,
            total_rows=total_rows,
            source_system=source_system,
            detected_encoding=detected_encoding,
            detected_separator=detected_separator,
            imported_by=user_id,
            status=ImportStatus.UPLOADED.value,
        )
        db.add(job)
        try:
            db.commit()
        except IntegrityError as e:
            # A concurrent upload took the same import code
            db.rollback()
            last_error = e
            continue
        logger.info("Created import job %s (%s) for %s", job.id, job.import_code, file_name)
        return job
    raise last_error


def get_import_job(db: Session, job_id: str) -> ImportJob:
    job = db.get(ImportJob, job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


def refresh_import_job(db: Session, job_id: str) -> ImportJob:
    """Reload the job row, discarding any cached state in the session."""
    job = get_import_job(db, job_id)
    db.refresh(job)
    return job


def list_import_jobs(
    db: Session,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[ImportJob], int]:
    query = select(ImportJob)
    count_query = select(func.count()).select_from(ImportJob)
    if status:
        query = query.where(ImportJob.status == status)
        count_query = count_query.where(ImportJob.status == status)

    jobs = db.execute(
        query.order_by(ImportJob.created_at.desc()).limit(limit).offset(offset)
    ).scalars().all()
    total = db.execute(count_query).scalar() or 0
    return list(jobs), total


def _prepare_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if key in ("validation_report", "execution_errors", "rollback_report", "mapping_config"):
            value = _make_json_safe(value)
        values[key] = value
    values["updated_at"] = _now()
    return values


def transition_import_job(
    db: Session,
    job_id: str,
    expected: Iterable[ImportStatus],
    new_status: ImportStatus,
    action: str,
    **fields: Any,
) -> ImportJob:
    """
    Atomically move a job from one of ``expected`` to ``new_status``.

    Extra keyword arguments are written in the same statement.

    Raises:
        JobNotFound: if the job does not exist
        InvalidJobState: if the job is not in an expected status
    """
    expected = [ImportStatus(s) for s in expected]
    illegal = [s for s in expected if new_status not in ALLOWED_TRANSITIONS[s]]
    if illegal:
        raise ValueError(f"Transition {illegal[0].value} -> {new_status.value} is not part of the status machine")

    values = _prepare_values(fields)
    values["status"] = new_status.value
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_([s.value for s in expected]))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount == 0:
        job = get_import_job(db, job_id)
        db.refresh(job)
        raise InvalidJobState(job_id, job.status, [s.value for s in expected], action)

    logger.info("Import job %s -> %s (%s)", job_id, new_status.value, action)
    return refresh_import_job(db, job_id)


def update_import_job(db: Session, job_id: str, **fields: Any) -> None:
    """Write job fields without touching the status; commits immediately."""
    db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(**_prepare_values(fields))
        .execution_options(synchronize_session=False)
    )
    db.commit()


def is_cancel_requested(db: Session, job_id: str) -> bool:
    return bool(db.execute(select(ImportJob.cancel_requested).where(ImportJob.id == job_id)).scalar())


def request_cancel(db: Session, job_id: str) -> ImportJob:
    """Flag a running import for cancellation; it stops between rows."""
    job = get_import_job(db, job_id)
    if job.status != ImportStatus.IMPORTING.value:
        raise InvalidJobState(job_id, job.status, [ImportStatus.IMPORTING.value], "cancel")
    update_import_job(db, job_id, cancel_requested=True)
    logger.info("Cancellation requested for import job %s", job_id)
    return refresh_import_job(db, job_id)
