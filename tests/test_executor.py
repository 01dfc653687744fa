from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from lims_import.core.exceptions import FatalExecutionError, InvalidJobState, MappingError
from lims_import.db.models import (
    Analysis,
    AnalysisResult,
    Client,
    Deviation,
    ImportJob,
    ImportStatus,
    Recommendation,
    Sample,
)
from lims_import.domain.imports import executor, service

HEADERS = ["Klient", "NIP", "Kod", "Parametr", "Wynik", "Min", "Max"]

CONFIG = {
    "import_type": "FULL",
    "decimal_separator": ",",
    "column_mappings": [
        {"source_column": "Klient", "target_field": "client.companyName"},
        {"source_column": "NIP", "target_field": "client.nip"},
        {"source_column": "Kod", "target_field": "sample.legacyCode"},
        {"source_column": "Parametr", "target_field": "result.parameterName"},
        {"source_column": "Wynik", "target_field": "result.value"},
        {"source_column": "Min", "target_field": "result.minReference"},
        {"source_column": "Max", "target_field": "result.maxReference"},
    ],
}


def _count(db, model, **filters):
    query = select(func.count()).select_from(model)
    for name, value in filters.items():
        query = query.where(getattr(model, name) == value)
    return db.execute(query).scalar()


@pytest.fixture
def uploaded(csv_bytes):
    def _upload(rows, headers=HEADERS):
        result = service.upload_import(csv_bytes([headers] + rows), "wyniki.csv", "tester")
        return result["job_id"]
    return _upload


def _validate_and_execute(job_id, config=CONFIG):
    report = service.validate_import(job_id, config, "tester")
    assert report.can_execute, report.errors
    return service.execute_import(job_id, config, "tester")


def test_clean_file_imports_every_row(uploaded, db_session):
    job_id = uploaded([
        ["Chromex", "5213000002", "S-1", "Zn", "12,5", "10", "15"],
        ["Nikiel-Pol", "5213000003", "S-2", "Ni", "30", "10", "15"],
    ])

    summary = _validate_and_execute(job_id)

    assert summary.status == ImportStatus.COMPLETED.value
    assert summary.imported_records == summary.total_records == 2
    assert _count(db_session, Client, import_job_id=job_id) == 2
    assert _count(db_session, Sample, import_job_id=job_id) == 2
    assert _count(db_session, Analysis, import_job_id=job_id) == 2
    assert _count(db_session, AnalysisResult, import_job_id=job_id) == 2

    result = db_session.execute(select(AnalysisResult).where(AnalysisResult.parameter_name == "Ni")).scalar_one()
    assert result.value == Decimal("30")
    assert result.unit == "mg/l"
    assert result.deviation == Deviation.CRITICAL_HIGH.value

    sample = db_session.execute(select(Sample).where(Sample.legacy_code == "S-1")).scalar_one()
    assert sample.sample_code.startswith("PRB-")

    job = db_session.get(ImportJob, job_id)
    assert job.status == ImportStatus.COMPLETED.value
    assert job.imported_records == 2
    assert job.completed_at is not None


def test_skip_strategy_links_existing_client(csv_bytes, db_session):
    config = {
        "import_type": "CLIENTS_ONLY",
        "column_mappings": [
            {"source_column": "Klient", "target_field": "client.companyName"},
            {"source_column": "NIP", "target_field": "client.nip"},
        ],
    }
    upload = service.upload_import(
        csv_bytes([["Klient", "NIP"], ["Chromex", "5213000002"], ["Chromex S.A.", "5213000002"]]),
        "klienci.csv",
        "tester",
    )

    summary = _validate_and_execute(upload["job_id"], config)

    assert summary.imported_records == 1
    assert summary.skipped_records == 1
    assert summary.status == ImportStatus.COMPLETED.value
    client = db_session.execute(select(Client)).scalar_one()
    assert client.company_name == "Chromex"


def test_overwrite_strategy_updates_in_place(csv_bytes, db_session):
    existing = Client(company_name="Chromex", nip="5213000002", city="Kraków")
    db_session.add(existing)
    db_session.commit()
    config = {
        "import_type": "CLIENTS_ONLY",
        "dedup_strategy": "overwrite",
        "column_mappings": [
            {"source_column": "Klient", "target_field": "client.companyName"},
            {"source_column": "NIP", "target_field": "client.nip"},
            {"source_column": "Miasto", "target_field": "client.city"},
        ],
    }
    upload = service.upload_import(
        csv_bytes([["Klient", "NIP", "Miasto"], ["Chromex Sp. z o.o.", "5213000002", ""]]),
        "klienci.csv",
        "tester",
    )

    summary = _validate_and_execute(upload["job_id"], config)

    assert summary.imported_records == 1
    db_session.expire_all()
    client = db_session.get(Client, existing.id)
    assert client.company_name == "Chromex Sp. z o.o."
    # Empty cells never blank out existing values
    assert client.city == "Kraków"
    # Overwritten records keep their original provenance
    assert client.import_job_id is None


def test_clients_without_nip_match_by_name(csv_bytes, db_session):
    existing = Client(company_name="Galwanizernia Chromex")
    db_session.add(existing)
    db_session.commit()
    config = {
        "import_type": "CLIENTS_ONLY",
        "column_mappings": [{"source_column": "Klient", "target_field": "client.companyName"}],
    }
    upload = service.upload_import(
        csv_bytes([["Klient"], ["GALWANIZERNIA CHROMEX"], ["Nikiel-Pol"], ["nikiel-pol"]]),
        "klienci.csv",
        "tester",
    )

    _validate_and_execute(upload["job_id"], config)

    names = db_session.execute(select(Client.company_name).order_by(Client.company_name)).scalars().all()
    assert names == ["Galwanizernia Chromex", "Nikiel-Pol"]

def test_create_new_strategy_duplicates_entities(csv_bytes, db_session):
    config = {
        "import_type": "CLIENTS_ONLY",
        "dedup_strategy": "create_new",
        "column_mappings": [{"source_column": "Klient", "target_field": "client.companyName"}],
    }
    upload = service.upload_import(csv_bytes([["Klient"], ["Chromex"], ["Chromex"]]), "k.csv", "tester")

    summary = _validate_and_execute(upload["job_id"], config)

    assert summary.imported_records == 2
    assert _count(db_session, Client, company_name="Chromex") == 2


def test_create_new_unique_conflict_becomes_row_error(uploaded, db_session):
    config = dict(CONFIG, dedup_strategy="create_new")
    job_id = uploaded([
        ["Chromex", "5213000002", "S-1", "Zn", "12,5", "", ""],
        ["Chromex", "5213000002", "S-2", "Zn", "11", "", ""],
    ])

    summary = _validate_and_execute(job_id, config)

    assert summary.status == ImportStatus.PARTIALLY_COMPLETED.value
    assert summary.imported_records == 1
    assert summary.error_records == 1
    assert summary.errors[0].row == 2
    # The failed row left nothing behind
    assert _count(db_session, Sample, legacy_code="S-2") == 0


def test_partial_failure_counts_add_up(uploaded, db_session, monkeypatch):
    job_id = uploaded([
        ["Chromex", "5213000002", "S-1", "Zn", "12,5", "", ""],
        ["Nikiel-Pol", "5213000003", "S-2", "Ni", "7", "", ""],
        ["Chromex", "5213000002", "S-3", "Cu", "1", "", ""],
    ])
    service.validate_import(job_id, CONFIG, "tester")

    original = executor.process_row

    def flaky_process_row(db, candidates, config, job_id, user_id=None):
        if candidates.row_number == 2:
            raise executor.RowExecutionError("Instrument record is locked", entity="sample", column="Kod")
        return original(db, candidates, config, job_id, user_id)

    monkeypatch.setattr(executor, "process_row", flaky_process_row)

    summary = service.execute_import(job_id, CONFIG, "tester")

    assert summary.status == ImportStatus.PARTIALLY_COMPLETED.value
    assert summary.imported_records + summary.skipped_records + summary.error_records == summary.total_records
    assert summary.error_records == 1
    assert summary.errors[0].column == "Kod"
    assert _count(db_session, Client, import_job_id=job_id) == 1
    assert _count(db_session, Sample, import_job_id=job_id) == 2


def test_recommendation_is_created_with_analysis(csv_bytes, db_session):
    config = {
        "import_type": "FULL",
        "column_mappings": [
            {"source_column": "Klient", "target_field": "client.companyName"},
            {"source_column": "Kod", "target_field": "sample.legacyCode"},
            {"source_column": "Analiza", "target_field": "analysis.legacyCode"},
            {"source_column": "Zalecenie", "target_field": "analysis.recommendation"},
            {"source_column": "Priorytet", "target_field": "analysis.recommendationPriority"},
        ],
    }
    upload = service.upload_import(
        csv_bytes([
            ["Klient", "Kod", "Analiza", "Zalecenie", "Priorytet"],
            ["Chromex", "S-1", "A-1", "Uzupełnić kąpiel", "wysoki"],
        ]),
        "zalecenia.csv",
        "tester",
    )

    summary = _validate_and_execute(upload["job_id"], config)

    assert summary.imported_records == 1
    recommendation = db_session.execute(select(Recommendation)).scalar_one()
    assert recommendation.priority == "HIGH"
    analysis = db_session.get(Analysis, recommendation.analysis_id)
    assert analysis.legacy_code == "A-1"
    assert analysis.performed_by == "tester"


def test_execute_requires_passing_validation(uploaded):
    job_id = uploaded([["Chromex", "5213000002", "S-1", "Zn", "1", "", ""]])

    with pytest.raises(InvalidJobState):
        service.execute_import(job_id, CONFIG, "tester")


def test_execute_requires_the_validated_config(uploaded):
    job_id = uploaded([["Chromex", "5213000002", "S-1", "Zn", "1", "", ""]])
    service.validate_import(job_id, CONFIG, "tester")

    with pytest.raises(MappingError):
        service.execute_import(job_id, dict(CONFIG, dedup_strategy="overwrite"), "tester")


def test_second_execute_is_rejected(uploaded):
    job_id = uploaded([["Chromex", "5213000002", "S-1", "Zn", "1", "", ""]])
    _validate_and_execute(job_id)

    with pytest.raises(InvalidJobState):
        service.execute_import(job_id, CONFIG, "tester")


def test_cancellation_stops_between_rows(uploaded, db_session, monkeypatch):
    job_id = uploaded([
        ["Chromex", "5213000002", "S-1", "Zn", "1", "", ""],
        ["Nikiel-Pol", "5213000003", "S-2", "Ni", "2", "", ""],
        ["Miedź", "5213000004", "S-3", "Cu", "3", "", ""],
    ])
    service.validate_import(job_id, CONFIG, "tester")
    checks = iter([False, True, True])
    monkeypatch.setattr(executor, "is_cancel_requested", lambda db, job_id: next(checks))

    summary = service.execute_import(job_id, CONFIG, "tester")

    assert summary.cancelled is True
    assert summary.imported_records == 1
    assert summary.status == ImportStatus.PARTIALLY_COMPLETED.value
    job = db_session.get(ImportJob, job_id)
    assert "Cancelled" in job.error_detail


def test_cancel_request_only_for_running_jobs(uploaded):
    job_id = uploaded([["Chromex", "5213000002", "S-1", "Zn", "1", "", ""]])

    with pytest.raises(InvalidJobState):
        service.cancel_import(job_id, "tester")


def test_connection_loss_fails_the_job(uploaded, db_session, monkeypatch):
    job_id = uploaded([
        ["Chromex", "5213000002", "S-1", "Zn", "1", "", ""],
        ["Nikiel-Pol", "5213000003", "S-2", "Ni", "2", "", ""],
    ])
    service.validate_import(job_id, CONFIG, "tester")
    original = executor.process_row

    def losing_connection(db, candidates, config, job_id, user_id=None):
        if candidates.row_number == 2:
            raise OperationalError("INSERT INTO samples", {}, Exception("server closed the connection"))
        return original(db, candidates, config, job_id, user_id)

    monkeypatch.setattr(executor, "process_row", losing_connection)

    with pytest.raises(FatalExecutionError) as exc_info:
        service.execute_import(job_id, CONFIG, "tester")

    assert exc_info.value.processed_rows == 1
    db_session.expire_all()
    job = db_session.get(ImportJob, job_id)
    assert job.status == ImportStatus.FAILED.value
    assert job.imported_records == 1
    assert "connection lost" in job.error_detail
