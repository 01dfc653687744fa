"""
Resolve-or-create for the laboratory entities.

One generic ``resolve_entity`` handles every entity type; what differs per
type (natural key, attribute mapping, parent links, creation hooks) lives in
an ``EntitySpec``. The outcome is a ``DedupDecision``:

- ``Matched(entity_id, overwritten)``: an existing record was linked, and
  under the overwrite strategy possibly updated in place
- ``Created(entity_id)``: a new record tagged with the import job
- ``Skipped(reason)``: the row carries no data for this entity
- ``Failed(reason)``: the entity cannot be written; the row must be rolled back
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from lims_import.api.schemas.imports import DedupStrategy, MappingConfig
from lims_import.core.config import settings
from lims_import.db.models import (
    Analysis,
    AnalysisResult,
    AnalysisStatus,
    Client,
    Process,
    ProcessType,
    Recommendation,
    Sample,
    SampleType,
    next_sequential_code,
)
from lims_import.domain.imports.target_fields import calculate_deviation
from lims_import.domain.imports.transform import RowCandidates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Matched:
    entity_id: str
    overwritten: bool = False


@dataclass(frozen=True)
class Created:
    entity_id: str


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    reason: str


DedupDecision = Union[Matched, Created, Skipped, Failed]


@dataclass
class RowContext:
    candidates: RowCandidates
    config: MappingConfig
    job_id: str
    user_id: Optional[str] = None
    ids: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class EntitySpec:
    name: str
    model: Any
    # candidate attribute -> model column
    attributes: Dict[str, str]
    natural_key: Callable[[RowContext, Dict[str, Any]], Optional[List[Any]]]
    # model column -> entity name whose resolved id fills it
    parents: Tuple[Tuple[str, str], ...] = ()
    required_parents: Tuple[str, ...] = ()
    required_attributes: Tuple[str, ...] = ()
    source_entity: Optional[str] = None
    wanted: Optional[Callable[[RowContext], bool]] = None
    extra_attributes: Optional[Callable[[RowContext], Dict[str, Any]]] = None
    on_create: Optional[Callable[[Session, Dict[str, Any], RowContext], None]] = None
    finalize: Optional[Callable[[Any], None]] = None

    def has_data(self, ctx: RowContext) -> bool:
        if self.wanted is not None:
            return self.wanted(ctx)
        return ctx.candidates.has_entity(self.source_entity or self.name)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _same(current: Any, new: Any) -> bool:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if isinstance(current, datetime) and isinstance(new, datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        if new.tzinfo is None:
            new = new.replace(tzinfo=timezone.utc)
    return current == new


def build_attributes(spec: EntitySpec, ctx: RowContext) -> Dict[str, Any]:
    values = ctx.candidates.entity(spec.source_entity or spec.name)
    attrs = {column: _plain(values[attr]) for attr, column in spec.attributes.items()
             if values.get(attr) not in (None, "")}
    if spec.extra_attributes is not None:
        attrs.update(spec.extra_attributes(ctx))
    for column, parent in spec.parents:
        if ctx.ids.get(parent):
            attrs[column] = ctx.ids[parent]
    return attrs


def find_existing(db: Session, spec: EntitySpec, ctx: RowContext, attrs: Dict[str, Any]):
    clauses = spec.natural_key(ctx, attrs)
    if not clauses:
        return None
    return db.execute(select(spec.model).where(*clauses).limit(1)).scalars().first()


def resolve_entity(db: Session, spec: EntitySpec, ctx: RowContext) -> DedupDecision:
    """Link to an existing record or create a new one according to the dedup strategy."""
    if not spec.has_data(ctx):
        return Skipped(f"no {spec.name} data in row")

    attrs = build_attributes(spec, ctx)
    strategy = DedupStrategy(ctx.config.dedup_strategy)

    if strategy != DedupStrategy.CREATE_NEW:
        existing = find_existing(db, spec, ctx, attrs)
        if existing is not None:
            if strategy == DedupStrategy.SKIP:
                return Matched(existing.id, overwritten=False)
            changed = False
            for column, value in attrs.items():
                if not _same(getattr(existing, column), value):
                    setattr(existing, column, value)
                    changed = True
            if changed:
                if spec.finalize is not None:
                    spec.finalize(existing)
                db.flush()
                logger.debug("Overwrote %s %s", spec.name, existing.id)
            return Matched(existing.id, overwritten=changed)

    missing_parents = [parent for column, parent in spec.parents
                       if column in spec.required_parents and column not in attrs]
    if missing_parents:
        return Failed(f"{spec.name} requires a {', '.join(missing_parents)}")
    missing = [attr for attr in spec.required_attributes if spec.attributes[attr] not in attrs]
    if missing:
        source = spec.source_entity or spec.name
        return Failed(f"{spec.name} requires {', '.join(f'{source}.{a}' for a in missing)}")

    if spec.on_create is not None:
        spec.on_create(db, attrs, ctx)
    entity = spec.model(**attrs, import_job_id=ctx.job_id)
    if spec.finalize is not None:
        spec.finalize(entity)
    db.add(entity)
    db.flush()
    return Created(entity.id)


# --- natural keys -----------------------------------------------------------

def _client_key(ctx: RowContext, attrs: Dict[str, Any]):
    if attrs.get("nip"):
        return [Client.nip == attrs["nip"]]
    if attrs.get("company_name"):
        return [func.lower(Client.company_name) == attrs["company_name"].casefold()]
    return None


def _process_key(ctx: RowContext, attrs: Dict[str, Any]):
    if not attrs.get("name"):
        return None
    client_id = attrs.get("client_id")
    return [
        Process.client_id == client_id if client_id else Process.client_id.is_(None),
        Process.name == attrs["name"],
        Process.process_type == attrs.get("process_type", ProcessType.OTHER.value),
    ]


def _sample_key(ctx: RowContext, attrs: Dict[str, Any]):
    if attrs.get("legacy_code"):
        return [Sample.legacy_code == attrs["legacy_code"]]
    return None


def _analysis_key(ctx: RowContext, attrs: Dict[str, Any]):
    if attrs.get("legacy_code"):
        return [Analysis.legacy_code == attrs["legacy_code"]]
    return None


def _recommendation_key(ctx: RowContext, attrs: Dict[str, Any]):
    if attrs.get("analysis_id") and attrs.get("description"):
        return [
            Recommendation.analysis_id == attrs["analysis_id"],
            Recommendation.description == attrs["description"],
        ]
    return None


def _result_key(ctx: RowContext, attrs: Dict[str, Any]):
    if attrs.get("analysis_id") and attrs.get("parameter_name"):
        return [
            AnalysisResult.analysis_id == attrs["analysis_id"],
            AnalysisResult.parameter_name == attrs["parameter_name"],
        ]
    return None


# --- creation hooks ---------------------------------------------------------

def _sample_extra_attributes(ctx: RowContext) -> Dict[str, Any]:
    # sampleCode carries the legacy identifier when legacyCode is not mapped
    sample = ctx.candidates.entity("sample")
    if "sample.legacyCode" in ctx.candidates.columns:
        legacy_code = sample.get("legacyCode")
    else:
        legacy_code = sample.get("legacyCode") or sample.get("sampleCode")
    return {"legacy_code": legacy_code} if legacy_code else {}


def _create_sample(db: Session, attrs: Dict[str, Any], ctx: RowContext) -> None:
    attrs["sample_code"] = next_sequential_code(db, Sample.sample_code, "PRB")
    attrs.setdefault("sample_type", SampleType.BATH.value)


def _create_analysis(db: Session, attrs: Dict[str, Any], ctx: RowContext) -> None:
    attrs["analysis_code"] = next_sequential_code(db, Analysis.analysis_code, "ANL")
    attrs.setdefault("analysis_date", datetime.now(timezone.utc))
    attrs.setdefault("status", AnalysisStatus.COMPLETED.value)
    if ctx.user_id:
        attrs.setdefault("performed_by", ctx.user_id)


def _create_result(db: Session, attrs: Dict[str, Any], ctx: RowContext) -> None:
    attrs.setdefault("unit", settings.default_result_unit)


def _compute_deviation(result: AnalysisResult) -> None:
    deviation, percent = calculate_deviation(
        result.value, result.min_reference, result.max_reference, result.optimal_reference
    )
    result.deviation = deviation.value
    result.deviation_percent = round(percent, 6)


def _wants_analysis(ctx: RowContext) -> bool:
    c = ctx.candidates
    return bool(
        c.has_entity("analysis")
        or (c.get("result.value") is not None and c.get("result.parameterName"))
    )


def _wants_result(ctx: RowContext) -> bool:
    return ctx.candidates.get("result.value") is not None and bool(ctx.candidates.get("result.parameterName"))


def _wants_recommendation(ctx: RowContext) -> bool:
    return bool(ctx.candidates.get("analysis.recommendation"))


CLIENT = EntitySpec(
    name="client",
    model=Client,
    attributes={
        "companyName": "company_name",
        "nip": "nip",
        "address": "address",
        "city": "city",
        "postalCode": "postal_code",
        "contactPerson": "contact_person",
        "email": "email",
        "phone": "phone",
    },
    natural_key=_client_key,
    required_attributes=("companyName",),
)

PROCESS = EntitySpec(
    name="process",
    model=Process,
    attributes={"name": "name", "processType": "process_type", "description": "description"},
    natural_key=_process_key,
    parents=(("client_id", "client"),),
    required_attributes=("name",),
)

SAMPLE = EntitySpec(
    name="sample",
    model=Sample,
    attributes={
        "sampleType": "sample_type",
        "description": "description",
        "collectedAt": "collected_at",
    },
    natural_key=_sample_key,
    parents=(("client_id", "client"), ("process_id", "process")),
    required_parents=("client_id",),
    extra_attributes=_sample_extra_attributes,
    on_create=_create_sample,
)

ANALYSIS = EntitySpec(
    name="analysis",
    model=Analysis,
    attributes={
        "legacyCode": "legacy_code",
        "analysisDate": "analysis_date",
        "status": "status",
        "notes": "notes",
    },
    natural_key=_analysis_key,
    parents=(("sample_id", "sample"),),
    required_parents=("sample_id",),
    wanted=_wants_analysis,
    on_create=_create_analysis,
)

RECOMMENDATION = EntitySpec(
    name="recommendation",
    model=Recommendation,
    attributes={"recommendation": "description", "recommendationPriority": "priority"},
    natural_key=_recommendation_key,
    parents=(("analysis_id", "analysis"),),
    required_parents=("analysis_id",),
    source_entity="analysis",
    wanted=_wants_recommendation,
)

RESULT = EntitySpec(
    name="result",
    model=AnalysisResult,
    attributes={
        "parameterName": "parameter_name",
        "value": "value",
        "unit": "unit",
        "minReference": "min_reference",
        "maxReference": "max_reference",
        "optimalReference": "optimal_reference",
    },
    natural_key=_result_key,
    parents=(("analysis_id", "analysis"),),
    required_parents=("analysis_id",),
    required_attributes=("parameterName", "value"),
    wanted=_wants_result,
    on_create=_create_result,
    finalize=_compute_deviation,
)

ENTITY_SPECS: Dict[str, EntitySpec] = {
    spec.name: spec for spec in (CLIENT, PROCESS, SAMPLE, ANALYSIS, RECOMMENDATION, RESULT)
}


# --- read-only reference lookups -------------------------------------------

def find_client_id(db: Session, candidates: RowCandidates) -> Optional[str]:
    """Existing client by NIP, else by case-insensitive company name."""
    client = candidates.entity("client")
    if client.get("nip"):
        found = db.execute(select(Client.id).where(Client.nip == client["nip"])).scalar()
        if found:
            return found
    if client.get("companyName"):
        return db.execute(
            select(Client.id)
            .where(func.lower(Client.company_name) == client["companyName"].casefold())
            .order_by(Client.created_at)
            .limit(1)
        ).scalar()
    return None


def find_process_id(db: Session, candidates: RowCandidates, client_id: Optional[str]) -> Optional[str]:
    process = candidates.entity("process")
    if not process.get("name"):
        return None
    query = select(Process.id).where(Process.name == process["name"])
    if client_id:
        query = query.where(Process.client_id == client_id)
    if process.get("processType"):
        query = query.where(Process.process_type == _plain(process["processType"]))
    return db.execute(query.limit(1)).scalar()


def find_sample_id(db: Session, candidates: RowCandidates) -> Optional[str]:
    """Existing sample by legacy code, else by sample code (new-style or legacy)."""
    sample = candidates.entity("sample")
    if sample.get("legacyCode"):
        found = db.execute(select(Sample.id).where(Sample.legacy_code == sample["legacyCode"])).scalar()
        if found:
            return found
    code = sample.get("sampleCode")
    if code:
        return db.execute(
            select(Sample.id).where(or_(Sample.sample_code == code, Sample.legacy_code == code)).limit(1)
        ).scalar()
    return None
