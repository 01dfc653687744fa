"""
The fixed target schema that source columns are mapped onto.

Holds the field catalogue (kind, enum, aliases used by the suggester) and the
built-in Polish/English label tables for the enum-valued fields.
"""
from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Type

from lims_import.db.models import (
    AnalysisStatus,
    Deviation,
    ImportType,
    Priority,
    ProcessType,
    SampleType,
)

ENTITY_PREFIXES = ("client", "process", "sample", "analysis", "result")


@dataclass(frozen=True)
class TargetField:
    name: str
    kind: str = "text"  # text | number | date | enum
    enum: Optional[Type] = None
    aliases: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def entity(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def attribute(self) -> str:
        return self.name.split(".", 1)[1]


_FIELDS: List[TargetField] = [
    TargetField("client.companyName", aliases=("klient", "firma", "nazwa firmy", "company", "company name",
                                               "nazwa klienta", "kontrahent")),
    TargetField("client.nip", aliases=("nip", "numer nip", "tax id", "vat id")),
    TargetField("client.address", aliases=("adres", "address", "ulica", "street")),
    TargetField("client.city", aliases=("miasto", "city", "miejscowość")),
    TargetField("client.postalCode", aliases=("kod pocztowy", "postal code", "zip", "zip code")),
    TargetField("client.contactPerson", aliases=("osoba kontaktowa", "kontakt", "contact person")),
    TargetField("client.email", aliases=("email klienta", "client email", "e-mail", "email")),
    TargetField("client.phone", aliases=("telefon", "phone", "tel")),
    TargetField("process.name", aliases=("proces", "process", "nazwa procesu", "linia", "process name")),
    TargetField("process.processType", kind="enum", enum=ProcessType,
                aliases=("typ procesu", "process type", "rodzaj procesu")),
    TargetField("process.description", aliases=("opis procesu", "process description")),
    TargetField("sample.legacyCode", aliases=("stary kod", "legacy code", "kod archiwalny", "stary numer")),
    TargetField("sample.sampleCode", aliases=("kod próbki", "sample code", "nr próbki", "numer próbki",
                                             "próbka", "sample")),
    TargetField("sample.sampleType", kind="enum", enum=SampleType,
                aliases=("typ próbki", "sample type", "rodzaj próbki")),
    TargetField("sample.description", aliases=("opis próbki", "sample description", "opis")),
    TargetField("sample.collectedAt", kind="date",
                aliases=("data pobrania", "collection date", "data pobrania próbki", "collected at")),
    TargetField("analysis.legacyCode", aliases=("stary kod analizy", "legacy analysis code", "nr analizy")),
    TargetField("analysis.analysisDate", kind="date",
                aliases=("data analizy", "analysis date", "data badania", "data")),
    TargetField("analysis.status", kind="enum", enum=AnalysisStatus,
                aliases=("status analizy", "analysis status", "status")),
    TargetField("analysis.notes", aliases=("uwagi", "notatki", "notes", "komentarz")),
    TargetField("analysis.recommendation", aliases=("zalecenie", "zalecenia", "recommendation", "rekomendacja")),
    TargetField("analysis.recommendationPriority", kind="enum", enum=Priority,
                aliases=("priorytet", "priority", "priorytet zalecenia")),
    TargetField("result.parameterName", aliases=("parametr", "parameter", "nazwa parametru", "wskaźnik",
                                                "oznaczenie")),
    TargetField("result.value", kind="number", aliases=("wynik", "wartość", "value", "result", "pomiar")),
    TargetField("result.unit", aliases=("jednostka", "unit", "jedn")),
    TargetField("result.minReference", kind="number", aliases=("min", "minimum", "dolna granica", "wartość min")),
    TargetField("result.maxReference", kind="number", aliases=("max", "maksimum", "górna granica", "wartość max")),
    TargetField("result.optimalReference", kind="number",
                aliases=("optimum", "optymalna", "wartość optymalna", "optimal")),
]

TARGET_FIELDS: Dict[str, TargetField] = {f.name: f for f in _FIELDS}

# Entity families each import scope may write or reference
SCOPE_ENTITIES: Dict[ImportType, Tuple[str, ...]] = {
    ImportType.FULL: ENTITY_PREFIXES,
    ImportType.CLIENTS_ONLY: ("client",),
    ImportType.PROCESSES_ONLY: ("client", "process"),
    ImportType.SAMPLES_ONLY: ("client", "process", "sample"),
    ImportType.ANALYSES_ONLY: ("sample", "analysis", "result"),
}


PROCESS_TYPE_LABELS: Dict[str, ProcessType] = {
    "cynkowanie": ProcessType.ZINC,
    "cynk": ProcessType.ZINC,
    "zinc": ProcessType.ZINC,
    "niklowanie": ProcessType.NICKEL,
    "nikiel": ProcessType.NICKEL,
    "nickel": ProcessType.NICKEL,
    "chromowanie": ProcessType.CHROME,
    "chrom": ProcessType.CHROME,
    "chrome": ProcessType.CHROME,
    "miedziowanie": ProcessType.COPPER,
    "miedź": ProcessType.COPPER,
    "copper": ProcessType.COPPER,
    "cynowanie": ProcessType.TIN,
    "cyna": ProcessType.TIN,
    "tin": ProcessType.TIN,
    "złocenie": ProcessType.GOLD,
    "złoto": ProcessType.GOLD,
    "gold": ProcessType.GOLD,
    "srebrzenie": ProcessType.SILVER,
    "srebro": ProcessType.SILVER,
    "silver": ProcessType.SILVER,
    "anodowanie": ProcessType.ANODIZING,
    "eloksalowanie": ProcessType.ANODIZING,
    "anodizing": ProcessType.ANODIZING,
    "pasywacja": ProcessType.PASSIVATION,
    "passivation": ProcessType.PASSIVATION,
    "inne": ProcessType.OTHER,
    "other": ProcessType.OTHER,
}

SAMPLE_TYPE_LABELS: Dict[str, SampleType] = {
    "kąpiel": SampleType.BATH,
    "roztwór": SampleType.BATH,
    "bath": SampleType.BATH,
    "płukanie": SampleType.RINSE,
    "płuczka": SampleType.RINSE,
    "rinse": SampleType.RINSE,
    "ścieki": SampleType.WASTEWATER,
    "wastewater": SampleType.WASTEWATER,
    "surowiec": SampleType.RAW_MATERIAL,
    "raw material": SampleType.RAW_MATERIAL,
    "raw_material": SampleType.RAW_MATERIAL,
    "inne": SampleType.OTHER,
    "other": SampleType.OTHER,
}

ANALYSIS_STATUS_LABELS: Dict[str, AnalysisStatus] = {
    "oczekująca": AnalysisStatus.PENDING,
    "w toku": AnalysisStatus.IN_PROGRESS,
    "zakończona": AnalysisStatus.COMPLETED,
    "zatwierdzona": AnalysisStatus.APPROVED,
    "odrzucona": AnalysisStatus.REJECTED,
}

PRIORITY_LABELS: Dict[str, Priority] = {
    "niski": Priority.LOW,
    "średni": Priority.MEDIUM,
    "wysoki": Priority.HIGH,
    "krytyczny": Priority.CRITICAL,
}

BUILTIN_LABELS = {
    ProcessType: PROCESS_TYPE_LABELS,
    SampleType: SAMPLE_TYPE_LABELS,
    AnalysisStatus: ANALYSIS_STATUS_LABELS,
    Priority: PRIORITY_LABELS,
}

# Fallback used when an enum label cannot be mapped
ENUM_DEFAULTS = {
    ProcessType: ProcessType.OTHER,
    SampleType: SampleType.OTHER,
    AnalysisStatus: AnalysisStatus.COMPLETED,
    Priority: Priority.MEDIUM,
}


def normalize_label(value: str) -> str:
    """Casefold and strip diacritics so 'Kąpiel ' and 'kapiel' compare equal."""
    value = value.replace("ł", "l").replace("Ł", "L")
    decomposed = unicodedata.normalize("NFKD", value.strip().casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


_NORMALIZED_LABELS = {
    enum_cls: {normalize_label(label): member for label, member in labels.items()}
    for enum_cls, labels in BUILTIN_LABELS.items()
}


def lookup_builtin_label(enum_cls, value: str):
    """Resolve a source label to an enum member, or None when unknown."""
    key = normalize_label(value)
    for member in enum_cls:
        if normalize_label(member.value) == key:
            return member
    return _NORMALIZED_LABELS.get(enum_cls, {}).get(key)


def is_known_field(name: str) -> bool:
    return name in TARGET_FIELDS


def fields_for_scope(import_type: Optional[ImportType]) -> List[TargetField]:
    if import_type is None:
        return list(_FIELDS)
    allowed = SCOPE_ENTITIES[ImportType(import_type)]
    return [f for f in _FIELDS if f.entity in allowed]


def calculate_deviation(
    value: Decimal,
    min_reference: Optional[Decimal],
    max_reference: Optional[Decimal],
    optimal_reference: Optional[Decimal],
) -> Tuple[Deviation, Decimal]:
    """
    Classify a measured value against its reference range.

    Returns the deviation bucket and the signed deviation in percent of the
    range. Values further outside the range than half of its width are
    critical. Values inside it are measured from the optimum, or from the
    middle of the range when no optimum is set.
    """
    if min_reference is not None and value < min_reference:
        upper = max_reference if max_reference is not None else min_reference
        span = upper - min_reference
        pct = (min_reference - value) / span * 100 if span > 0 else Decimal(0)
        bucket = Deviation.CRITICAL_LOW if pct > 50 else Deviation.BELOW_MIN
        return bucket, -pct
    if max_reference is not None and value > max_reference:
        lower = min_reference if min_reference is not None else max_reference
        span = max_reference - lower
        pct = (value - max_reference) / span * 100 if span > 0 else Decimal(0)
        bucket = Deviation.CRITICAL_HIGH if pct > 50 else Deviation.ABOVE_MAX
        return bucket, pct
    if optimal_reference is None and min_reference is not None and max_reference is not None:
        optimal_reference = (min_reference + max_reference) / 2
    if optimal_reference:
        return Deviation.WITHIN_RANGE, (value - optimal_reference) / optimal_reference * 100
    return Deviation.WITHIN_RANGE, Decimal(0)
