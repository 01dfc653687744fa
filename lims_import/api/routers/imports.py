"""
Lab data import endpoints: upload, mapping, validation, execution and rollback.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, Response, UploadFile
from sqlalchemy.orm import Session

from lims_import.api.dependencies import get_user_id
from lims_import.api.schemas.imports import (
    ImportJobInfo,
    ImportJobListResponse,
    MappingConfig,
    RollbackResponse,
    SuggestMappingRequest,
    SuggestMappingResponse,
    TemplateCreateRequest,
    TemplateInfo,
    UploadResponse,
    ValidationReport,
)
from lims_import.core.exceptions import (
    FatalExecutionError,
    FormatError,
    ImportPipelineError,
    InvalidJobState,
    JobNotFound,
    MappingError,
    RollbackNotAllowed,
    StorageError,
    TemplateNotFound,
)
from lims_import.db.models import ImportStatus
from lims_import.db.session import get_db
from lims_import.domain.imports import service, templates
from lims_import.domain.imports.suggester import build_suggested_config, suggest_column_mappings

router = APIRouter(prefix="/imports", tags=["imports"])

logger = logging.getLogger(__name__)


def _http_error(error: ImportPipelineError) -> HTTPException:
    """Translate a pipeline error into the matching HTTP response."""
    if isinstance(error, FormatError):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, MappingError):
        return HTTPException(status_code=422, detail={"message": error.message, "fields": error.fields})
    if isinstance(error, (JobNotFound, TemplateNotFound)):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, InvalidJobState):
        return HTTPException(
            status_code=409,
            detail={"message": error.message, "status": error.status, "expected": error.expected},
        )
    if isinstance(error, RollbackNotAllowed):
        return HTTPException(status_code=409, detail={"message": error.message, "conflicts": error.conflicts})
    if isinstance(error, FatalExecutionError):
        return HTTPException(
            status_code=500,
            detail={"message": error.message, "processed_rows": error.processed_rows},
        )
    if isinstance(error, StorageError):
        return HTTPException(status_code=500, detail=f"File storage error: {error.message}")
    return HTTPException(status_code=500, detail=error.message)


@router.post("/upload", response_model=UploadResponse)
async def upload_import_file(
    file: UploadFile = File(...),
    source_system: Optional[str] = Form(None),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """
    Upload a lab data file (CSV, Excel, JSON or XML) and open an import job.

    Returns the detected columns, a preview of the first rows and suggested
    column mappings. Nothing is written to the laboratory tables.
    """
    file_content = await file.read()
    file_name = file.filename or "upload"
    logger.info("Received import upload '%s' (%d bytes) from %s", file_name, len(file_content), user_id)
    try:
        return service.upload_import(file_content, file_name, user_id, source_system=source_system, db=db)
    except ImportPipelineError as e:
        raise _http_error(e)


@router.post("/suggest-mapping", response_model=SuggestMappingResponse)
async def suggest_mapping(request: SuggestMappingRequest):
    """Suggest target fields for a list of source column headers."""
    suggestions = suggest_column_mappings(request.headers, request.import_type)
    return SuggestMappingResponse(
        suggestions=suggestions,
        suggested_config=build_suggested_config(suggestions, request.import_type),
    )


@router.post("/{job_id}/validate", response_model=ValidationReport)
def validate_import_job(
    job_id: str,
    mapping_config: MappingConfig,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """
    Validate the uploaded file against a mapping configuration.

    The report is stored on the job; ``can_execute`` tells whether the
    import may be executed with this configuration.
    """
    try:
        return service.validate_import(job_id, mapping_config, user_id, db=db)
    except ImportPipelineError as e:
        raise _http_error(e)


@router.post("/{job_id}/execute")
def execute_import_job(
    job_id: str,
    mapping_config: MappingConfig,
    background_tasks: BackgroundTasks,
    response: Response,
    background: bool = Query(False, description="Run the import after the response is sent"),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """
    Execute a validated import.

    Inline execution returns the execution summary. With ``background=true``
    the job is claimed, 202 is returned with the job and progress is read
    from ``GET /imports/jobs/{job_id}``.
    """
    try:
        if not background:
            return service.execute_import(job_id, mapping_config, user_id, db=db)

        job, rows, config = service.start_execution(job_id, mapping_config, db)
        # The background task opens its own session; this one closes with the request
        background_tasks.add_task(service.run_execution, job_id, rows, config, user_id)
        response.status_code = 202
        return ImportJobInfo.model_validate(job)
    except ImportPipelineError as e:
        raise _http_error(e)


@router.post("/{job_id}/cancel", response_model=ImportJobInfo)
def cancel_import_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Request cancellation of a running import; it stops after the current row."""
    try:
        return service.cancel_import(job_id, user_id, db=db)
    except ImportPipelineError as e:
        raise _http_error(e)


@router.post("/{job_id}/rollback", response_model=RollbackResponse)
def rollback_import_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """
    Delete every record created by a completed import.

    Responds 409 with the list of conflicting records when other data now
    depends on something the import created.
    """
    try:
        return service.rollback_import(job_id, user_id, db=db)
    except ImportPipelineError as e:
        raise _http_error(e)


@router.get("/jobs", response_model=ImportJobListResponse)
def list_import_jobs(
    status: Optional[ImportStatus] = Query(None, description="Filter by job status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List import jobs, newest first."""
    jobs, total = service.list_jobs(status=status.value if status else None, limit=limit, offset=offset, db=db)
    return ImportJobListResponse(
        jobs=[ImportJobInfo.model_validate(job) for job in jobs],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/jobs/{job_id}", response_model=ImportJobInfo)
def get_import_job(job_id: str, db: Session = Depends(get_db)):
    """Current state of an import job, including progress counters."""
    try:
        return service.get_job(job_id, db=db)
    except ImportPipelineError as e:
        raise _http_error(e)


@router.get("/templates", response_model=List[TemplateInfo])
def list_import_templates(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return templates.list_templates(db, user_id)


@router.post("/templates", response_model=TemplateInfo, status_code=201)
def create_import_template(
    request: TemplateCreateRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Save a mapping configuration under a name for later imports."""
    try:
        return templates.create_template(
            db,
            request.name,
            request.mapping_config,
            user_id,
            description=request.description,
            source_system=request.source_system,
            is_public=request.is_public,
        )
    except ImportPipelineError as e:
        raise _http_error(e)


@router.get("/templates/{template_id}", response_model=TemplateInfo)
def get_import_template(
    template_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    try:
        return templates.get_template(db, template_id, user_id)
    except ImportPipelineError as e:
        raise _http_error(e)
