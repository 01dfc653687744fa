"""
Pytest configuration and fixtures for the lab data import tests.

Every test gets its own SQLite database file and upload directory, so
tests can commit freely (the pipeline commits per row) without leaking
state into each other.
"""
import os

os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest

from lims_import.core.config import settings
from lims_import.db import models  # noqa: F401
from lims_import.db.session import Base, configure_engine, get_session_local


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "storage_provider", "local")
    monkeypatch.setattr(settings, "import_storage_dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "execution_progress_every", 1)

    engine = configure_engine(f"sqlite:///{tmp_path / 'lims.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session():
    session = get_session_local()()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def csv_bytes():
    """Build semicolon separated file content from a list of rows."""
    def _build(rows, separator=";", encoding="utf-8"):
        lines = [separator.join(str(cell) for cell in row) for row in rows]
        return ("\n".join(lines) + "\n").encode(encoding)
    return _build
