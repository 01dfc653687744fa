from lims_import.api.schemas.imports import ColumnMapping, MappingConfig
from lims_import.db.models import Client, ImportType, Sample
from lims_import.domain.imports.validator import missing_required_mappings, validate_rows

FULL_MAPPINGS = [
    ("Klient", "client.companyName"),
    ("NIP", "client.nip"),
    ("Kod", "sample.legacyCode"),
    ("Parametr", "result.parameterName"),
    ("Wynik", "result.value"),
]


def _config(mappings=FULL_MAPPINGS, **kwargs):
    return MappingConfig(
        column_mappings=[ColumnMapping(source_column=c, target_field=t) for c, t in mappings],
        **kwargs,
    )


def _row(klient="Chromex", nip="5213000002", kod="S-1", parametr="Zn", wynik="12,5"):
    return {"Klient": klient, "NIP": nip, "Kod": kod, "Parametr": parametr, "Wynik": wynik}


def test_well_typed_rows_are_all_ready():
    rows = [_row(kod=f"S-{i}", nip=f"52130000{i:02d}") for i in range(5)]

    report = validate_rows(rows, _config(decimal_separator=","))

    assert report.total_rows == 5
    assert report.ready_count == 5
    assert report.errors == []
    assert report.can_execute is True


def test_non_numeric_value_is_reported_once_with_row_index():
    rows = [_row(kod="S-1"), _row(kod="S-2", wynik="brak"), _row(kod="S-3")]

    report = validate_rows(rows, _config(decimal_separator=","))

    errors = [f for f in report.errors if f.severity == "error"]
    assert len(errors) == 1
    assert errors[0].row == 2
    assert errors[0].column == "Wynik"
    assert errors[0].value == "brak"
    assert report.ready_count == 2
    assert report.error_count == 1
    assert report.can_execute is False


def test_missing_company_name_is_required_for_full_import():
    report = validate_rows([_row(klient="")], _config())

    assert report.error_count == 1
    assert report.errors[0].field == "client.companyName"


def test_unmapped_required_field_is_reported_per_row():
    config = _config([("Kod", "sample.legacyCode")])

    assert missing_required_mappings(config) == ["client.companyName"]

    report = validate_rows([{"Kod": "S-1"}, {"Kod": "S-2"}], config)
    assert report.error_count == 2
    assert {f.column for f in report.errors} == {"-"}


def test_warnings_do_not_block_execution():
    report = validate_rows([_row(nip="123")], _config(decimal_separator=","))

    assert report.ready_count == 1
    assert report.warning_count == 1
    assert report.errors[0].severity == "warning"
    assert report.can_execute is True


def test_empty_rows_are_ignored():
    empty = {"Klient": "", "NIP": "", "Kod": "", "Parametr": "", "Wynik": ""}

    report = validate_rows([_row(), empty], _config(decimal_separator=","))

    assert report.ready_count == 1
    assert report.summary["empty_rows"] == 1
    assert report.errors == []


def test_repeated_natural_keys_warn_only_under_create_new():
    rows = [_row(kod="S-1"), _row(kod="S-1")]

    skip_report = validate_rows(rows, _config(decimal_separator=","))
    assert skip_report.errors == []

    create_report = validate_rows(rows, _config(decimal_separator=",", dedup_strategy="create_new"))
    repeated = {f.field for f in create_report.errors}
    assert repeated == {"client.nip", "sample.legacyCode"}
    assert all(f.row == 2 and f.severity == "warning" for f in create_report.errors)


def test_samples_only_requires_existing_client(db_session):
    db_session.add(Client(company_name="Chromex", nip="5213000002"))
    db_session.commit()
    config = _config(
        [("NIP", "client.nip"), ("Kod", "sample.legacyCode")],
        import_type=ImportType.SAMPLES_ONLY,
    )

    report = validate_rows(
        [{"NIP": "5213000002", "Kod": "S-1"}, {"NIP": "9999999999", "Kod": "S-2"}],
        config,
        db_session,
    )

    assert report.ready_count == 1
    assert report.errors[0].row == 2
    assert "does not exist" in report.errors[0].message


def test_analyses_only_requires_existing_sample(db_session):
    client = Client(company_name="Chromex")
    db_session.add(client)
    db_session.flush()
    db_session.add(Sample(sample_code="PRB-202301-0001", legacy_code="OLD-1", client_id=client.id))
    db_session.commit()
    config = _config(
        [("Kod", "sample.legacyCode"), ("Parametr", "result.parameterName"), ("Wynik", "result.value")],
        import_type=ImportType.ANALYSES_ONLY,
    )

    report = validate_rows(
        [
            {"Kod": "OLD-1", "Parametr": "Zn", "Wynik": "3"},
            {"Kod": "OLD-2", "Parametr": "Zn", "Wynik": "4"},
        ],
        config,
        db_session,
    )

    assert report.ready_count == 1
    assert [f.row for f in report.errors] == [2]
    assert report.errors[0].column == "Kod"
