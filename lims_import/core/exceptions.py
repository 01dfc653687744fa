"""
Exception hierarchy for the import pipeline.

Format and mapping problems are raised synchronously to the caller. Row level
problems during execution are caught per row and only surface in the job's
execution report. Fatal errors abort the job after it has been marked FAILED.
"""
from typing import Any, Dict, List, Optional


class ImportPipelineError(Exception):
    """Base class for all import pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class FormatError(ImportPipelineError):
    """Raised when an uploaded file cannot be interpreted as tabular data."""

    def __init__(self, message: str, file_name: Optional[str] = None):
        self.file_name = file_name
        super().__init__(message)


class MappingError(ImportPipelineError):
    """Raised when a mapping configuration is structurally unusable."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        self.fields = fields or []
        super().__init__(message)


class RowExecutionError(ImportPipelineError):
    """A single row could not be written; the row is rolled back and counted."""

    def __init__(self, message: str, entity: Optional[str] = None, column: Optional[str] = None):
        self.entity = entity
        self.column = column
        super().__init__(message)


class FatalExecutionError(ImportPipelineError):
    """The job cannot continue (e.g. the database connection was lost)."""

    def __init__(self, job_id: str, message: str, processed_rows: int = 0):
        self.job_id = job_id
        self.processed_rows = processed_rows
        super().__init__(message)


class RollbackNotAllowed(ImportPipelineError):
    """Raised when a job is not eligible for rollback or has external dependents."""

    def __init__(self, job_id: str, message: str, conflicts: Optional[List[Dict[str, Any]]] = None):
        self.job_id = job_id
        self.conflicts = conflicts or []
        super().__init__(message)


class InvalidJobState(ImportPipelineError):
    """Raised when an operation is requested from a status that does not allow it."""

    def __init__(self, job_id: str, status: str, expected: List[str], action: str):
        self.job_id = job_id
        self.status = status
        self.expected = expected
        self.action = action
        super().__init__(
            f"Cannot {action} import job {job_id} in status {status}. "
            f"Required status: {', '.join(expected)}"
        )


class JobNotFound(ImportPipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} not found")


class TemplateNotFound(ImportPipelineError):
    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Import template {template_id} not found")


class StorageError(ImportPipelineError):
    """Raised when uploaded bytes cannot be stored, fetched or verified."""
    pass
