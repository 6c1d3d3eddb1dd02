from datetime import date
from decimal import Decimal
import json
from pathlib import Path

import pytest
from sqlalchemy import func, select

from importledger.commit import CancelToken
from importledger.db_models import AttendanceRecord, ImportBatch, ReconciliationRecord, Student, StudentPayment
from importledger.definitions import IMPORT_DEFINITIONS
from importledger.errors import MissingRequiredFieldError, ParseError, StageError
from importledger.ledger import list_row_issues
from importledger.session import ImportStage
from importledger.templates import build_template
from importledger.writers import AttendanceWriter


PAYMENTS_CSV = b"admission_number,amount,payment_date,payment_method\nSTU001,15000,2024-01-15,mpesa\nSTU999,5000,2024-01-16,bank\n"
STATEMENT_CSV = b"Date,Amount,Reference,Narration\n2024-02-01,\"KES 1,500.00\",TRX1,fees\n2024-02-01,1500,TRX1,fees again\n2024-02-02,700,,cash deposit\n"


def _conserved(result) -> bool:
    return result.imported_rows + result.failed_rows + result.duplicate_rows + result.invalid_rows == result.total_rows


def test_payment_import_reports_unknown_student(make_session, session_factory, temp_workspace: Path) -> None:
    session = make_session("payments")

    result = session.run("fees.csv", PAYMENTS_CSV)

    assert result.status == "completed"
    assert result.total_rows == 2
    assert result.valid_rows == 1
    assert result.imported_rows == 1
    assert result.invalid_rows == 1
    assert result.error_summary.messages == ["Row 3: admission_number - Student not found (STU999)"]
    assert _conserved(result)

    with session_factory() as db:
        payment = db.execute(select(StudentPayment)).scalar_one()
        assert payment.receipt_number == "RCP-000001"
        assert payment.amount == 15000
        assert payment.notes == "Bulk import"
        assert payment.import_batch_id == result.run_id

        run = db.get(ImportBatch, result.run_id)
        assert run.status == "completed"
        assert run.imported_ids == [payment.id]
        assert run.imported_at is not None

        [issue] = list_row_issues(db, result.run_id)
        assert (issue.row, issue.field, issue.kind, issue.message) == (3, "admission_number", "validation", "Student not found")

    report = json.loads(Path(result.report_path).read_text(encoding="utf-8"))
    assert report["imported_rows"] == 1
    rejected = temp_workspace / "outputs" / "rejected" / f"payments-{result.run_id}.jsonl"
    assert len(rejected.read_text(encoding="utf-8").splitlines()) == 1


def test_receipts_continue_from_existing_count(make_session, session_factory) -> None:
    make_session("payments").run("first.csv", PAYMENTS_CSV)
    second = make_session("payments").run(
        "second.csv",
        b"admission_number,amount,payment_date,payment_method\nSTU002,800,2024-01-20,cash\n",
    )

    assert second.imported_rows == 1
    with session_factory() as db:
        receipts = db.execute(select(StudentPayment.receipt_number).order_by(StudentPayment.id)).scalars().all()
    assert receipts == ["RCP-000001", "RCP-000002"]


def test_preview_totals_valid_amounts(make_session) -> None:
    session = make_session("payments")
    session.load("fees.csv", PAYMENTS_CSV)
    session.confirm_mapping()

    preview = session.validate()

    assert preview.total_rows == 2
    assert preview.valid_rows == 1
    assert preview.invalid_rows == 1
    assert preview.total_amount == Decimal("15000")


def test_statement_import_parses_amounts_and_suppresses_duplicates(make_session, session_factory) -> None:
    result = make_session("bank_statement").run("statement.csv", STATEMENT_CSV)

    assert result.imported_rows == 2
    assert result.duplicate_rows == 1
    assert _conserved(result)

    with session_factory() as db:
        records = db.execute(select(ReconciliationRecord).order_by(ReconciliationRecord.id)).scalars().all()
        assert [record.external_reference for record in records] == ["TRX1", "2024-02-02-700"]
        assert records[0].external_amount == 1500
        assert all(record.status == "unmatched" for record in records)
        assert all(record.batch_id == result.run_id for record in records)

        [duplicate] = list_row_issues(db, result.run_id, kind="duplicate")
        assert duplicate.row == 3


def test_reimporting_a_statement_adds_nothing(make_session, session_factory) -> None:
    first = make_session("bank_statement").run("statement.csv", STATEMENT_CSV)
    second = make_session("bank_statement").run("statement.csv", STATEMENT_CSV)

    assert first.imported_rows == 2
    assert second.imported_rows == 0
    assert second.duplicate_rows == 3
    assert second.status == "completed"

    with session_factory() as db:
        unmatched = db.execute(
            select(func.count()).select_from(ReconciliationRecord).where(ReconciliationRecord.status == "unmatched")
        ).scalar_one()
    assert unmatched == 2


def test_headers_only_file_completes_with_nothing_imported(make_session) -> None:
    seen: list[int] = []

    result = make_session("payments").run(
        "empty.csv",
        b"admission_number,amount,payment_date,payment_method\n",
        on_progress=seen.append,
    )

    assert result.status == "completed"
    assert result.total_rows == 0
    assert result.imported_rows == 0
    assert seen == [100]


def test_empty_file_is_fatal(make_session) -> None:
    with pytest.raises(ParseError):
        make_session("payments").run("empty.csv", b"")


@pytest.mark.parametrize("import_type", sorted(IMPORT_DEFINITIONS))
def test_unmodified_template_imports_nothing(make_session, import_type: str) -> None:
    session = make_session(import_type)
    template = build_template(IMPORT_DEFINITIONS[import_type])

    session.load(f"{import_type}_template.csv", template.encode("utf-8"))
    session.confirm_mapping()
    preview = session.validate()

    assert preview.total_rows == 0
    assert preview.valid_rows == 0
    assert preview.skipped_rows == len(IMPORT_DEFINITIONS[import_type].example_rows)


def test_explicit_mapping_and_missing_required_field(make_session) -> None:
    csv_bytes = b"When,How Much,Ref\n2024-03-01,250,ABC\n"
    session = make_session("bank_statement", source="mpesa")
    session.load("mpesa.csv", csv_bytes)

    with pytest.raises(MissingRequiredFieldError):
        session.confirm_mapping({"date": "When"})

    session.confirm_mapping({"date": "When", "amount": "How Much", "reference": "Ref"})
    session.validate()
    result = session.commit()

    assert result.imported_rows == 1


def test_commit_requires_validation(make_session) -> None:
    session = make_session("payments")
    session.load("fees.csv", PAYMENTS_CSV)

    with pytest.raises(StageError):
        session.commit()

    session.confirm_mapping()
    with pytest.raises(StageError):
        session.commit()


def test_attendance_rows_without_class_fail_individually(make_session, session_factory) -> None:
    csv_bytes = (
        b"admission_number,date,status\n"
        b"STU001,2024-02-05,present\n"
        b"STU010,2024-02-05,absent\n"
        b"STU002,2024-02-05,late\n"
        b"STU002,05-02-2024,present\n"
    )

    result = make_session("historical_attendance").run("attendance.csv", csv_bytes)

    assert result.imported_rows == 2
    assert result.failed_rows == 1
    assert result.invalid_rows == 1
    assert _conserved(result)

    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(AttendanceRecord)).scalar_one() == 2
        [failure] = list_row_issues(db, result.run_id, kind="commit")
        assert failure.row == 3
        assert "no class assigned" in failure.message


def test_historical_payments_keep_source_receipts(make_session, session_factory) -> None:
    csv_bytes = (
        b"admission_number,payment_date,amount,receipt_number\n"
        b"STU001,2024-02-15,2500,OLD-77\n"
        b"STU002,2024-02-16,1200,\n"
    )

    result = make_session("historical_payments").run("history.csv", csv_bytes)

    assert result.imported_rows == 2
    with session_factory() as db:
        payments = db.execute(select(StudentPayment).order_by(StudentPayment.id)).scalars().all()
        assert payments[0].receipt_number == "HIST-OLD-77"
        assert payments[0].source_receipt_number == "OLD-77"
        assert payments[1].receipt_number.startswith("HIST-RCP-")
        assert payments[1].receipt_number.endswith(f"-{result.run_id}-00003")
        assert all(payment.is_historical for payment in payments)
        assert payments[1].payment_method == "other"


def test_cancelled_commit_is_recorded(make_session, session_factory) -> None:
    token = CancelToken()
    token.cancel()

    result = make_session("payments").run("fees.csv", PAYMENTS_CSV, cancel_token=token)

    assert result.status == "cancelled"
    assert result.imported_rows == 0
    with session_factory() as db:
        assert db.get(ImportBatch, result.run_id).status == "cancelled"


def test_unexpected_commit_error_marks_run_failed(make_session, session_factory, monkeypatch) -> None:
    def explode(self, record):
        raise RuntimeError("writer crashed")

    monkeypatch.setattr(AttendanceWriter, "build", explode)

    session = make_session("historical_attendance")
    result = session.run("attendance.csv", b"admission_number,date,status\nSTU001,2024-02-05,present\n")

    assert result.status == "failed"
    assert session.stage == "failed"
    assert "writer crashed" in result.error_summary.messages[-1]
    with session_factory() as db:
        run = db.get(ImportBatch, result.run_id)
        assert run.status == "failed"
        assert run.error == "writer crashed"


def test_taken_receipt_number_fails_only_its_own_row(make_session, session_factory) -> None:
    with session_factory() as db:
        student = db.execute(select(Student).where(Student.admission_number == "STU001")).scalar_one()
        db.add(
            StudentPayment(
                institution_id="school-1",
                student_id=student.id,
                receipt_number="RCP-000002",
                amount=100,
                payment_method="cash",
                payment_date=date(2024, 1, 2),
            )
        )
        db.commit()
    csv_bytes = (
        b"admission_number,amount,payment_date,payment_method\n"
        b"STU001,300,2024-02-01,cash\n"
        b"STU002,400,2024-02-02,bank\n"
        b"STU001,500,2024-02-03,mpesa\n"
    )

    result = make_session("payments").run("fees.csv", csv_bytes)

    assert result.imported_rows == 2
    assert result.failed_rows == 1
    assert _conserved(result)
    with session_factory() as db:
        [failure] = list_row_issues(db, result.run_id, kind="commit")
        assert failure.row == 2
        receipts = db.execute(
            select(StudentPayment.receipt_number).where(StudentPayment.import_batch_id == result.run_id)
        ).scalars().all()
    assert sorted(receipts) == ["RCP-000003", "RCP-000004"]


def test_confirm_mapping_without_a_loaded_file(make_session) -> None:
    session = make_session("payments")
    session.stage = ImportStage.MAPPING

    with pytest.raises(StageError):
        session.confirm_mapping()
