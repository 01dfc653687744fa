from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lims_import.db.models import ImportType
from lims_import.domain.imports.target_fields import TARGET_FIELDS


class DedupStrategy(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    CREATE_NEW = "create_new"


Transformation = Literal["trim", "uppercase", "lowercase", "digits_only"]


class ColumnMapping(BaseModel):
    """Binds one source column to a target field; ``target_field=None`` ignores the column."""
    source_column: str
    target_field: Optional[str] = None
    transformation: Optional[Transformation] = None
    default_value: Optional[str] = None

    @field_validator("target_field")
    def normalize_target_field(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class MappingConfig(BaseModel):
    """The transformation contract applied to every row of an import."""
    import_type: ImportType = ImportType.FULL
    column_mappings: List[ColumnMapping]
    date_format: Optional[str] = None  # e.g. DD.MM.YYYY; flexible parsing when omitted
    decimal_separator: Literal[".", ","] = "."
    dedup_strategy: DedupStrategy = DedupStrategy.SKIP
    defaults: Dict[str, str] = Field(default_factory=dict)
    enum_mappings: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    skip_empty_rows: bool = True
    source_system: Optional[str] = None

    @model_validator(mode="after")
    def check_target_fields(self) -> "MappingConfig":
        mapped = [m.target_field for m in self.column_mappings if m.target_field]
        if not mapped:
            raise ValueError("At least one source column must be mapped to a target field")

        unknown = sorted(
            {f for f in mapped if f not in TARGET_FIELDS}
            | {f for f in self.defaults if f not in TARGET_FIELDS}
            | {f for f in self.enum_mappings if f not in TARGET_FIELDS}
        )
        if unknown:
            raise ValueError(f"Unknown target fields: {', '.join(unknown)}")

        repeated = sorted({f for f in mapped if mapped.count(f) > 1})
        if repeated:
            raise ValueError(f"Target fields mapped more than once: {', '.join(repeated)}")

        for field_name, table in self.enum_mappings.items():
            enum_cls = TARGET_FIELDS[field_name].enum
            if enum_cls is None:
                raise ValueError(f"enum_mappings given for non-enum field {field_name}")
            allowed = {member.value for member in enum_cls}
            invalid = sorted({v for v in table.values() if v not in allowed})
            if invalid:
                raise ValueError(
                    f"enum_mappings for {field_name} use unknown values: {', '.join(invalid)}"
                )
        return self

    def mapped_fields(self) -> List[str]:
        return [m.target_field for m in self.column_mappings if m.target_field]


class MappingSuggestion(BaseModel):
    source_column: str
    target_field: Optional[str] = None
    confidence: int = 0


class SuggestMappingRequest(BaseModel):
    headers: List[str]
    import_type: Optional[ImportType] = None


class SuggestMappingResponse(BaseModel):
    suggestions: List[MappingSuggestion]
    suggested_config: Optional[MappingConfig] = None


class UploadResponse(BaseModel):
    job_id: str
    import_code: str
    columns: List[str]
    preview_rows: List[Dict[str, str]]
    total_rows: int
    detected_encoding: Optional[str] = None
    detected_separator: Optional[str] = None
    suggestions: List[MappingSuggestion]


class ValidationFinding(BaseModel):
    row: int  # 1-based data row index
    column: str  # source column or "-"
    field: Optional[str] = None
    message: str
    value: Optional[str] = None
    severity: Literal["error", "warning"]


class ValidationReport(BaseModel):
    total_rows: int
    ready_count: int
    warning_count: int
    error_count: int = 0
    errors: List[ValidationFinding] = Field(default_factory=list)
    summary: Dict[str, int] = Field(default_factory=dict)
    can_execute: bool = False


class RowError(BaseModel):
    row: int
    entity: Optional[str] = None
    column: Optional[str] = None
    message: str


class ExecutionSummary(BaseModel):
    job_id: str
    status: str
    total_records: int = 0
    imported_records: int = 0
    skipped_records: int = 0
    error_records: int = 0
    errors: List[RowError] = Field(default_factory=list)
    cancelled: bool = False


class RollbackResponse(BaseModel):
    job_id: str
    status: str
    deleted_counts: Dict[str, int]


class ImportJobInfo(BaseModel):
    """Job row as exposed to pollers."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    import_code: str
    file_name: str
    file_size: int
    source_system: Optional[str] = None
    import_type: Optional[str] = None
    status: str
    total_rows: int = 0
    total_records: int = 0
    imported_records: int = 0
    skipped_records: int = 0
    error_records: int = 0
    error_detail: Optional[str] = None
    cancel_requested: bool = False
    imported_by: Optional[str] = None
    validation_report: Optional[Dict[str, Any]] = None
    execution_errors: Optional[List[Dict[str, Any]]] = None
    rollback_report: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None


class ImportJobListResponse(BaseModel):
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    description: Optional[str] = None
    source_system: Optional[str] = None
    is_public: bool = False
    mapping_config: MappingConfig

    @field_validator("name")
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Template name must have at least 2 characters")
        return value


class TemplateInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    source_system: Optional[str] = None
    is_public: bool
    created_by: str
    mapping_config: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
