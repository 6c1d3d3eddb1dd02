"""Turn validated records into rows for their target table."""

from datetime import UTC, datetime
from decimal import Decimal

from importledger.config import Settings
from importledger.duplicates import natural_key
from importledger.errors import CommitError
from importledger.rules import to_stored_amount
from importledger.schemas import StudentRef, ValidatedRecord
from importledger.stores import PersistenceSink


class RowWriter:
    table: str = ""
    # Per-row writers insert and commit one record at a time, in file order.
    per_row: bool = False

    def __init__(self, *, institution_id: str, batch_id: int | None, settings: Settings) -> None:
        self.institution_id = institution_id
        self.batch_id = batch_id
        self.settings = settings

    def prepare(self, sink: PersistenceSink) -> None:
        pass

    def build(self, record: ValidatedRecord) -> dict[str, object]:
        raise NotImplementedError

    def natural_key(self, record: ValidatedRecord) -> str | None:
        return None

    def duplicate_values(self, record: ValidatedRecord) -> dict[str, object] | None:
        return None

    def on_success(self, record: ValidatedRecord, persisted_id: int) -> None:
        pass


def _student(record: ValidatedRecord) -> StudentRef:
    student = record.values.get("admission_number")
    if not isinstance(student, StudentRef):
        raise CommitError(f"row {record.row} has no resolved student")
    return student


def _amount(record: ValidatedRecord, name: str = "amount") -> int:
    amount = record.values.get(name)
    if not isinstance(amount, Decimal):
        raise CommitError(f"row {record.row} has no parsed amount")
    return to_stored_amount(amount)


class PaymentWriter(RowWriter):
    table = "student_payments"
    per_row = True

    def __init__(self, *, institution_id: str, batch_id: int | None, settings: Settings) -> None:
        super().__init__(institution_id=institution_id, batch_id=batch_id, settings=settings)
        self.next_receipt = 1

    def prepare(self, sink: PersistenceSink) -> None:
        # Read once; a concurrent import for the same tenant can race this counter.
        self.next_receipt = sink.count(self.table, {"institution_id": self.institution_id}) + 1

    def receipt_number(self) -> str:
        return f"{self.settings.receipt_prefix}-{self.next_receipt:06d}"

    def build(self, record: ValidatedRecord) -> dict[str, object]:
        values = record.values
        student = _student(record)
        amount = _amount(record)
        # Every attempt consumes a number, so a taken receipt costs only its own row.
        receipt = self.receipt_number()
        self.next_receipt += 1
        return {
            "institution_id": self.institution_id,
            "student_id": student.id,
            "receipt_number": receipt,
            "amount": amount,
            "currency": self.settings.currency,
            "payment_method": values["payment_method"],
            "payment_date": values["payment_date"],
            "transaction_reference": values.get("transaction_reference") or None,
            "notes": values.get("notes") or "Bulk import",
            "status": "confirmed",
            "is_historical": False,
            "import_batch_id": self.batch_id,
        }


class HistoricalPaymentWriter(RowWriter):
    table = "student_payments"

    def __init__(self, *, institution_id: str, batch_id: int | None, settings: Settings) -> None:
        super().__init__(institution_id=institution_id, batch_id=batch_id, settings=settings)
        self.period = datetime.now(UTC).strftime("%Y%m")

    def receipt_number(self, record: ValidatedRecord) -> str:
        source = record.values.get("receipt_number")
        if source:
            return f"HIST-{source}"
        # Batch id keeps generated numbers unique across runs in the same month.
        return f"HIST-{self.settings.receipt_prefix}-{self.period}-{self.batch_id or 0}-{record.row:05d}"

    def build(self, record: ValidatedRecord) -> dict[str, object]:
        values = record.values
        return {
            "institution_id": self.institution_id,
            "student_id": _student(record).id,
            "receipt_number": self.receipt_number(record),
            "source_receipt_number": values.get("receipt_number") or None,
            "amount": _amount(record),
            "currency": self.settings.currency,
            "payment_method": values.get("payment_method") or "other",
            "payment_date": values["payment_date"],
            "transaction_reference": values.get("transaction_reference") or None,
            "notes": values.get("notes") or "Historical payment import",
            "status": "completed",
            "is_historical": True,
            "import_batch_id": self.batch_id,
        }


class AttendanceWriter(RowWriter):
    table = "attendance_records"

    def build(self, record: ValidatedRecord) -> dict[str, object]:
        student = _student(record)
        if not student.class_id:
            raise CommitError(f"student {student.admission_number} has no class assigned")
        return {
            "institution_id": self.institution_id,
            "student_id": student.id,
            "class_id": student.class_id,
            "date": record.values["date"],
            "status": record.values["status"],
            "notes": record.values.get("notes") or None,
            "is_historical": True,
            "import_batch_id": self.batch_id,
        }


class StatementWriter(RowWriter):
    table = "reconciliation_records"
    per_row = True

    def __init__(
        self,
        *,
        institution_id: str,
        batch_id: int | None,
        settings: Settings,
        source: str = "bank",
    ) -> None:
        super().__init__(institution_id=institution_id, batch_id=batch_id, settings=settings)
        self.source = source

    def natural_key(self, record: ValidatedRecord) -> str | None:
        return natural_key(record.values.get("reference"), record.values.get("date"), _amount(record))

    def _values(self, record: ValidatedRecord, status: str) -> dict[str, object]:
        external_date = record.values["date"]
        return {
            "institution_id": self.institution_id,
            "source": self.source,
            "external_reference": self.natural_key(record),
            "external_date": external_date,
            "reconciliation_date": external_date,
            "external_amount": _amount(record),
            "external_description": record.values.get("description") or None,
            "status": status,
            "batch_id": self.batch_id,
        }

    def build(self, record: ValidatedRecord) -> dict[str, object]:
        return self._values(record, "unmatched")

    def duplicate_values(self, record: ValidatedRecord) -> dict[str, object] | None:
        if not self.settings.record_duplicate_rows:
            return None
        return self._values(record, "duplicate")


WRITERS: dict[str, type[RowWriter]] = {
    "payments": PaymentWriter,
    "historical_payments": HistoricalPaymentWriter,
    "historical_attendance": AttendanceWriter,
    "bank_statement": StatementWriter,
}
