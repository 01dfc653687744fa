"""
ORM models for the laboratory entities and the import bookkeeping tables.

Every laboratory entity carries a nullable ``import_job_id``. It is set only
when the import executor creates the row and is the sole input used by the
rollback manager to decide what an import owns.
"""
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import Session

from lims_import.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportStatus(str, Enum):
    UPLOADED = "UPLOADED"
    VALIDATING = "VALIDATING"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    IMPORTING = "IMPORTING"
    COMPLETED = "COMPLETED"
    PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"
    FAILED = "FAILED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"


class ImportType(str, Enum):
    FULL = "FULL"
    CLIENTS_ONLY = "CLIENTS_ONLY"
    ANALYSES_ONLY = "ANALYSES_ONLY"
    PROCESSES_ONLY = "PROCESSES_ONLY"
    SAMPLES_ONLY = "SAMPLES_ONLY"


class ProcessType(str, Enum):
    ZINC = "ZINC"
    NICKEL = "NICKEL"
    CHROME = "CHROME"
    COPPER = "COPPER"
    TIN = "TIN"
    GOLD = "GOLD"
    SILVER = "SILVER"
    ANODIZING = "ANODIZING"
    PASSIVATION = "PASSIVATION"
    OTHER = "OTHER"


class SampleType(str, Enum):
    BATH = "BATH"
    RINSE = "RINSE"
    WASTEWATER = "WASTEWATER"
    RAW_MATERIAL = "RAW_MATERIAL"
    OTHER = "OTHER"


class SampleStatus(str, Enum):
    REGISTERED = "REGISTERED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AnalysisStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Deviation(str, Enum):
    CRITICAL_LOW = "CRITICAL_LOW"
    BELOW_MIN = "BELOW_MIN"
    WITHIN_RANGE = "WITHIN_RANGE"
    ABOVE_MAX = "ABOVE_MAX"
    CRITICAL_HIGH = "CRITICAL_HIGH"


class ImportJob(Base):
    """One upload-through-execute-through-rollback lifecycle."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    import_code = Column(String(32), unique=True, nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_hash = Column(String(64), nullable=False)
    storage_path = Column(String(1000), nullable=False)
    source_system = Column(String(255))
    detected_encoding = Column(String(50))
    detected_separator = Column(String(10))
    total_rows = Column(Integer, nullable=False, default=0)

    import_type = Column(String(32))
    mapping_config = Column(JSON)
    validation_report = Column(JSON)
    execution_errors = Column(JSON)
    rollback_report = Column(JSON)

    total_records = Column(Integer, nullable=False, default=0)
    imported_records = Column(Integer, nullable=False, default=0)
    skipped_records = Column(Integer, nullable=False, default=0)
    error_records = Column(Integer, nullable=False, default=0)

    status = Column(String(32), nullable=False, default=ImportStatus.UPLOADED.value, index=True)
    error_detail = Column(Text)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    imported_by = Column(String(255))

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    rolled_back_at = Column(DateTime(timezone=True))


class ImportTemplate(Base):
    """A named, reusable mapping configuration."""
    __tablename__ = "import_templates"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    source_system = Column(String(255))
    is_public = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(255), nullable=False, index=True)
    mapping_config = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255))
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(36))
    details = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Client(Base):
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=_new_id)
    company_name = Column(String(500), nullable=False)
    nip = Column(String(10), unique=True)
    address = Column(String(500))
    city = Column(String(255))
    postal_code = Column(String(20))
    contact_person = Column(String(255))
    email = Column(String(255))
    phone = Column(String(50))
    is_active = Column(Boolean, nullable=False, default=True)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Process(Base):
    __tablename__ = "processes"
    __table_args__ = (
        UniqueConstraint("client_id", "name", "process_type", name="uq_process_client_name_type"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(String(36), ForeignKey("clients.id"), index=True)
    name = Column(String(255), nullable=False)
    process_type = Column(String(32), nullable=False, default=ProcessType.OTHER.value)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Sample(Base):
    __tablename__ = "samples"

    id = Column(String(36), primary_key=True, default=_new_id)
    sample_code = Column(String(32), unique=True, nullable=False)
    legacy_code = Column(String(255), unique=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    process_id = Column(String(36), ForeignKey("processes.id"), index=True)
    sample_type = Column(String(32), nullable=False, default=SampleType.BATH.value)
    status = Column(String(32), nullable=False, default=SampleStatus.REGISTERED.value)
    description = Column(Text)
    collected_at = Column(DateTime(timezone=True))
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Analysis(Base):
    __tablename__ = "analyses"

    id = Column(String(36), primary_key=True, default=_new_id)
    analysis_code = Column(String(32), unique=True, nullable=False)
    legacy_code = Column(String(255), unique=True)
    sample_id = Column(String(36), ForeignKey("samples.id"), nullable=False, index=True)
    performed_by = Column(String(255))
    analysis_date = Column(DateTime(timezone=True))
    status = Column(String(32), nullable=False, default=AnalysisStatus.PENDING.value)
    notes = Column(Text)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Recommendation(Base):
    __tablename__ = "recommendations"

    id = Column(String(36), primary_key=True, default=_new_id)
    analysis_id = Column(String(36), ForeignKey("analyses.id"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    priority = Column(String(16), nullable=False, default=Priority.MEDIUM.value)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class AnalysisResult(Base):
    __tablename__ = "analysis_results"
    __table_args__ = (
        UniqueConstraint("analysis_id", "parameter_name", name="uq_result_analysis_parameter"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    analysis_id = Column(String(36), ForeignKey("analyses.id"), nullable=False, index=True)
    parameter_name = Column(String(255), nullable=False)
    unit = Column(String(50), nullable=False)
    value = Column(Numeric(18, 6), nullable=False)
    min_reference = Column(Numeric(18, 6))
    max_reference = Column(Numeric(18, 6))
    optimal_reference = Column(Numeric(18, 6))
    deviation = Column(String(16), nullable=False, default=Deviation.WITHIN_RANGE.value)
    deviation_percent = Column(Numeric(18, 6))
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


def next_sequential_code(
    db: Session,
    code_column,
    prefix: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Generate the next ``PREFIX-YYYYMM-NNNN`` code for the current month.

    The same generator backs manual CRUD creation and imports, so imported
    records are numbered in the same sequence. Unique constraints on the code
    columns reject a concurrent writer that computed the same number.
    """
    now = now or _utcnow()
    period_prefix = f"{prefix}-{now.year}{now.month:02d}-"
    # Numbers past 9999 widen the code, so order by length before value
    last_code = db.execute(
        select(code_column)
        .where(code_column.like(f"{period_prefix}%"))
        .order_by(func.length(code_column).desc(), code_column.desc())
        .limit(1)
    ).scalar()

    next_number = 1
    if last_code:
        match = re.search(r"(\d+)$", last_code)
        if match:
            next_number = int(match.group(1)) + 1
    return f"{period_prefix}{next_number:04d}"
