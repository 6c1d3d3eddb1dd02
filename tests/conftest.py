from collections.abc import Generator
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from importledger.config import Settings
from importledger.database import build_session_factory
from importledger.db_models import Student
from importledger.session import ImportSession


INSTITUTION = "school-1"
TODAY = date(2024, 6, 1)


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="importledger",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        import_batch_size=2,
        max_error_messages=10,
        statement_timeout_seconds=5,
        ledger_max_retries=1,
        retry_backoff_seconds=0,
        currency="KES",
        receipt_prefix="RCP",
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> Generator[sessionmaker[Session], None, None]:
    factory = build_session_factory(test_settings.database_url, test_settings.statement_timeout_seconds)
    with factory() as db:
        db.add_all(
            [
                Student(institution_id=INSTITUTION, admission_number="STU001", full_name="Amina W", class_id="form-1"),
                Student(institution_id=INSTITUTION, admission_number="STU002", full_name="Brian K", class_id="form-1"),
                Student(institution_id=INSTITUTION, admission_number="STU010", full_name="Cheru N", class_id=None),
                Student(institution_id="school-2", admission_number="STU777", full_name="Dan O", class_id="form-2"),
            ]
        )
        db.commit()
    yield factory


@pytest.fixture()
def make_session(test_settings: Settings, session_factory: sessionmaker[Session]):
    def _make(import_type: str, **kwargs) -> ImportSession:
        kwargs.setdefault("institution_id", INSTITUTION)
        kwargs.setdefault("today", TODAY)
        return ImportSession(test_settings, session_factory, import_type=import_type, **kwargs)

    return _make
