"""
Rollback of a completed import.

This module provides the ability to:
- Find every entity created by an import (the ``import_job_id`` tag)
- Detect conflicts: tagged records that later gained untagged dependents
- Delete tagged records in dependency order, in committed chunks, so an
  interrupted rollback can be resumed from ROLLING_BACK

Records the import only matched or overwrote are never touched, and
overwritten values are not restored.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from lims_import.core.config import settings
from lims_import.core.exceptions import RollbackNotAllowed
from lims_import.db.models import (
    Analysis,
    AnalysisResult,
    Client,
    ImportStatus,
    Process,
    Recommendation,
    Sample,
)
from lims_import.domain.imports.executor import DELETION_ORDER
from lims_import.domain.imports.jobs import get_import_job, transition_import_job, update_import_job

logger = logging.getLogger(__name__)

ROLLBACK_ALLOWED = (
    ImportStatus.COMPLETED,
    ImportStatus.PARTIALLY_COMPLETED,
    ImportStatus.ROLLING_BACK,
)

ENTITY_MODELS = {
    "client": Client,
    "process": Process,
    "sample": Sample,
    "analysis": Analysis,
    "recommendation": Recommendation,
    "result": AnalysisResult,
}

# parent entity -> (dependent entity, foreign key column on the dependent)
DEPENDENTS = {
    "client": (("process", Process.client_id), ("sample", Sample.client_id)),
    "process": (("sample", Sample.process_id),),
    "sample": (("analysis", Analysis.sample_id),),
    "analysis": (("result", AnalysisResult.analysis_id), ("recommendation", Recommendation.analysis_id)),
}


def find_rollback_conflicts(db: Session, job_id: str) -> List[Dict[str, Any]]:
    """
    List every record that blocks rollback.

    A conflict is a record created by this import that is referenced by a
    record the import did not create (manual entry or another import).
    """
    conflicts: List[Dict[str, Any]] = []
    for parent_name, dependents in DEPENDENTS.items():
        parent_model = ENTITY_MODELS[parent_name]
        tagged_ids = select(parent_model.id).where(parent_model.import_job_id == job_id)
        for child_name, fk_column in dependents:
            child_model = ENTITY_MODELS[child_name]
            rows = db.execute(
                select(child_model.id, fk_column, child_model.import_job_id).where(
                    fk_column.in_(tagged_ids),
                    or_(child_model.import_job_id.is_(None), child_model.import_job_id != job_id),
                )
            ).all()
            for child_id, parent_id, child_job in rows:
                conflicts.append({
                    "entity": parent_name,
                    "entity_id": parent_id,
                    "dependent": child_name,
                    "dependent_id": child_id,
                    "dependent_import_job_id": child_job,
                })
    return conflicts


def _delete_tagged(db: Session, job_id: str, name: str, chunk_size: int,
                   deleted_counts: Dict[str, int]) -> None:
    model = ENTITY_MODELS[name]
    while True:
        ids = db.execute(
            select(model.id).where(model.import_job_id == job_id).limit(chunk_size)
        ).scalars().all()
        if not ids:
            break
        db.execute(delete(model).where(model.id.in_(ids)).execution_options(synchronize_session=False))
        db.commit()
        deleted_counts[name] = deleted_counts.get(name, 0) + len(ids)
        update_import_job(
            db,
            job_id,
            rollback_report={"deleted_counts": deleted_counts, "current_entity": name, "conflicts": []},
        )
        logger.debug("Rollback %s: deleted %d %s records", job_id, len(ids), name)


def rollback_import_job(db: Session, job_id: str, chunk_size: Optional[int] = None) -> Dict[str, int]:
    """
    Delete every entity tagged with ``job_id``.

    Returns:
        Deleted record counts per entity type (cumulative across resumes)

    Raises:
        JobNotFound: if the job does not exist
        RollbackNotAllowed: if the job is not rollbackable or has conflicts;
            nothing is deleted in that case
    """
    job = get_import_job(db, job_id)
    db.refresh(job)
    if job.status not in [s.value for s in ROLLBACK_ALLOWED]:
        raise RollbackNotAllowed(
            job_id,
            f"Import job {job.import_code} cannot be rolled back from status {job.status}",
        )

    conflicts = find_rollback_conflicts(db, job_id)
    if conflicts:
        update_import_job(
            db,
            job_id,
            rollback_report={"deleted_counts": {}, "conflicts": conflicts, "blocked_at": datetime.now(timezone.utc)},
        )
        logger.warning("Rollback of import job %s blocked by %d dependent records", job_id, len(conflicts))
        raise RollbackNotAllowed(
            job_id,
            f"Import job {job.import_code} has {len(conflicts)} dependent records created outside the import",
            conflicts=conflicts,
        )

    previous = (job.rollback_report or {}).get("deleted_counts", {}) if job.status == ImportStatus.ROLLING_BACK.value else {}
    deleted_counts: Dict[str, int] = {name: int(previous.get(name, 0)) for name in DELETION_ORDER}

    transition_import_job(
        db,
        job_id,
        [ImportStatus.COMPLETED, ImportStatus.PARTIALLY_COMPLETED, ImportStatus.ROLLING_BACK],
        ImportStatus.ROLLING_BACK,
        "roll back",
        rollback_report={"deleted_counts": deleted_counts, "conflicts": []},
    )

    chunk_size = max(1, chunk_size or settings.rollback_chunk_size)
    for name in DELETION_ORDER:
        _delete_tagged(db, job_id, name, chunk_size, deleted_counts)

    transition_import_job(
        db,
        job_id,
        [ImportStatus.ROLLING_BACK],
        ImportStatus.ROLLED_BACK,
        "finish rollback",
        rolled_back_at=datetime.now(timezone.utc),
        rollback_report={"deleted_counts": deleted_counts, "conflicts": []},
    )
    logger.info("Rolled back import job %s: %s", job_id, deleted_counts)
    return deleted_counts
