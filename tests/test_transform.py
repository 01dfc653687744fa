from decimal import Decimal

import pytest

from lims_import.api.schemas.imports import ColumnMapping, MappingConfig
from lims_import.core.exceptions import MappingError
from lims_import.db.models import Deviation, ImportType, ProcessType, SampleType
from lims_import.domain.imports.target_fields import calculate_deviation, lookup_builtin_label
from lims_import.domain.imports.transform import (
    check_columns_present,
    coerce_mapping_config,
    parse_decimal,
    transform_row,
)


def _config(mappings, **kwargs):
    return MappingConfig(
        column_mappings=[ColumnMapping(source_column=c, target_field=t) for c, t in mappings],
        **kwargs,
    )


@pytest.mark.parametrize(
    "raw, separator, expected",
    [
        ("12,5", ",", Decimal("12.5")),
        ("12.5", ".", Decimal("12.5")),
        ("1 234,56", ",", Decimal("1234.56")),
        ("1.234,56", ",", Decimal("1234.56")),
        ("1,234.56", ".", Decimal("1234.56")),
        ("1,234", ".", Decimal("1234")),
        ("0,05", ".", Decimal("0.05")),
        ("-3", ".", Decimal("-3")),
    ],
)
def test_parse_decimal_handles_both_separators(raw, separator, expected):
    assert parse_decimal(raw, separator) == expected


@pytest.mark.parametrize("raw", ["abc", "12,5 mg", "NaN", "Infinity"])
def test_parse_decimal_rejects_non_numbers(raw):
    with pytest.raises(ValueError):
        parse_decimal(raw)


def test_transform_row_types_values_per_entity():
    config = _config(
        [
            ("Klient", "client.companyName"),
            ("NIP", "client.nip"),
            ("Typ", "sample.sampleType"),
            ("Data", "analysis.analysisDate"),
            ("Wynik", "result.value"),
            ("Parametr", "result.parameterName"),
        ],
        date_format="DD.MM.YYYY",
        decimal_separator=",",
    )
    row = {
        "Klient": " Chromex ",
        "NIP": "521-300-00-02",
        "Typ": "Kąpiel",
        "Data": "05.03.2023",
        "Wynik": "12,5",
        "Parametr": "Zn",
    }

    candidates = transform_row(row, config, 1)

    assert candidates.issues == []
    assert candidates.get("client.companyName") == "Chromex"
    assert candidates.get("client.nip") == "5213000002"
    assert candidates.get("sample.sampleType") == SampleType.BATH
    assert candidates.get("analysis.analysisDate").year == 2023
    assert candidates.get("analysis.analysisDate").month == 3
    assert candidates.get("analysis.analysisDate").day == 5
    assert candidates.get("result.value") == Decimal("12.5")
    assert candidates.column_for("result.value") == "Wynik"


def test_invalid_number_and_date_are_errors():
    config = _config(
        [("Data", "analysis.analysisDate"), ("Wynik", "result.value"), ("Parametr", "result.parameterName")],
        date_format="DD.MM.YYYY",
    )

    candidates = transform_row({"Data": "2023/13/45", "Wynik": "dużo", "Parametr": "Ni"}, config, 7)

    errors = [i for i in candidates.issues if i.severity == "error"]
    assert {i.field for i in errors} == {"analysis.analysisDate", "result.value"}
    assert {i.column for i in errors} == {"Data", "Wynik"}
    assert candidates.has_errors


def test_unknown_enum_label_falls_back_to_default_with_warning():
    config = _config([("Proces", "process.name"), ("Typ", "process.processType")])

    candidates = transform_row({"Proces": "Linia 1", "Typ": "galwanizacja ogniowa"}, config, 1)

    assert candidates.get("process.processType") == ProcessType.OTHER
    assert [i.severity for i in candidates.issues] == ["warning"]


def test_unknown_enum_label_is_an_error_when_structurally_required():
    config = _config(
        [("Proces", "process.name"), ("Typ", "process.processType")],
        import_type=ImportType.PROCESSES_ONLY,
    )

    candidates = transform_row({"Proces": "Linia 1", "Typ": "galwanizacja ogniowa"}, config, 1)

    assert candidates.has_errors
    assert candidates.get("process.processType") is None


def test_custom_enum_mapping_wins_over_builtin_labels():
    config = _config(
        [("Proces", "process.name"), ("Typ", "process.processType")],
        enum_mappings={"process.processType": {"Zn-A": "ZINC", "chrom": "NICKEL"}},
    )

    assert transform_row({"Proces": "L1", "Typ": "zn-a"}, config, 1).get("process.processType") == ProcessType.ZINC
    assert transform_row({"Proces": "L1", "Typ": "chrom"}, config, 1).get("process.processType") == ProcessType.NICKEL
    assert transform_row({"Proces": "L1", "Typ": "Cynkowanie"}, config, 1).get("process.processType") == ProcessType.ZINC


def test_short_nip_is_dropped_with_warning():
    config = _config([("Klient", "client.companyName"), ("NIP", "client.nip")])

    candidates = transform_row({"Klient": "Chromex", "NIP": "12345"}, config, 1)

    assert candidates.get("client.nip") is None
    assert candidates.issues[0].severity == "warning"
    assert candidates.issues[0].column == "NIP"


def test_defaults_fill_empty_and_unmapped_fields():
    config = MappingConfig(
        column_mappings=[
            ColumnMapping(source_column="Klient", target_field="client.companyName"),
            ColumnMapping(source_column="Jedn", target_field="result.unit", default_value="g/l"),
        ],
        defaults={"client.city": "Kraków"},
    )

    candidates = transform_row({"Klient": "Chromex", "Jedn": ""}, config, 1)

    assert candidates.get("result.unit") == "g/l"
    assert candidates.get("client.city") == "Kraków"


def test_transformations_apply_before_typing():
    config = MappingConfig(
        column_mappings=[
            ColumnMapping(source_column="Klient", target_field="client.companyName", transformation="uppercase"),
            ColumnMapping(source_column="Tel", target_field="client.phone", transformation="digits_only"),
        ]
    )

    candidates = transform_row({"Klient": "chromex", "Tel": "+48 12 345-67-89"}, config, 1)

    assert candidates.get("client.companyName") == "CHROMEX"
    assert candidates.get("client.phone") == "48123456789"


def test_consistency_checks():
    config = _config(
        [
            ("Wynik", "result.value"),
            ("Parametr", "result.parameterName"),
            ("Min", "result.minReference"),
            ("Max", "result.maxReference"),
            ("Data", "analysis.analysisDate"),
        ],
        date_format="YYYY-MM-DD",
    )

    no_parameter = transform_row({"Wynik": "5", "Parametr": "", "Min": "", "Max": "", "Data": ""}, config, 1)
    assert no_parameter.has_errors

    inverted = transform_row({"Wynik": "5", "Parametr": "Zn", "Min": "10", "Max": "2", "Data": "2999-01-01"}, config, 2)
    assert not inverted.has_errors
    assert {i.field for i in inverted.issues} == {"result.minReference", "analysis.analysisDate"}


def test_empty_row_is_flagged():
    config = _config([("Klient", "client.companyName")])

    candidates = transform_row({"Klient": "  ", "Other": "x"}, config, 3)

    assert candidates.is_empty
    assert candidates.values == {}


def test_config_validation_rejects_structural_problems():
    with pytest.raises(MappingError):
        coerce_mapping_config({"column_mappings": [{"source_column": "A", "target_field": "client.unknown"}]})
    with pytest.raises(MappingError):
        coerce_mapping_config({"column_mappings": [{"source_column": "A", "target_field": None}]})
    with pytest.raises(MappingError):
        coerce_mapping_config({
            "column_mappings": [
                {"source_column": "A", "target_field": "client.companyName"},
                {"source_column": "B", "target_field": "client.companyName"},
            ]
        })
    with pytest.raises(MappingError):
        coerce_mapping_config({
            "column_mappings": [{"source_column": "A", "target_field": "process.processType"}],
            "enum_mappings": {"process.processType": {"x": "PLUTONIUM"}},
        })


def test_mapped_columns_must_exist_in_file():
    config = _config([("Klient", "client.companyName"), ("NIP", "client.nip")])

    with pytest.raises(MappingError) as exc_info:
        check_columns_present(config, ["Klient"])

    assert exc_info.value.fields == ["NIP"]


def test_builtin_labels_accept_canonical_values():
    assert lookup_builtin_label(ProcessType, "niklowanie") == ProcessType.NICKEL
    assert lookup_builtin_label(ProcessType, "NICKEL") == ProcessType.NICKEL
    assert lookup_builtin_label(SampleType, "ŚCIEKI") == SampleType.WASTEWATER
    assert lookup_builtin_label(SampleType, "mud") is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("5", Deviation.WITHIN_RANGE),
        ("1.5", Deviation.BELOW_MIN),
        ("-10", Deviation.CRITICAL_LOW),
        ("11", Deviation.ABOVE_MAX),
        ("20", Deviation.CRITICAL_HIGH),
    ],
)
def test_calculate_deviation(value, expected):
    deviation, _ = calculate_deviation(Decimal(value), Decimal("2"), Decimal("10"), None)
    assert deviation == expected


def test_deviation_inside_range_is_measured_from_midpoint():
    _, percent = calculate_deviation(Decimal("9"), Decimal("2"), Decimal("10"), None)
    assert percent == Decimal("50")

    _, percent = calculate_deviation(Decimal("9"), Decimal("2"), Decimal("10"), Decimal("10"))
    assert percent == Decimal("-10")
