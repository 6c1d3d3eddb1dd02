from dataclasses import dataclass

from importledger.rules import (
    Rule,
    flexible_date,
    free_text,
    one_of,
    positive_amount,
    statement_amount,
    student_lookup,
)


PAYMENT_METHODS = ("cash", "mpesa", "bank", "cheque")
HISTORICAL_PAYMENT_METHODS = ("cash", "bank_transfer", "mpesa", "cheque", "card", "other")
ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")
RECONCILIATION_SOURCES = ("bank", "mpesa", "cash", "cheque", "other")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    required: bool
    rules: tuple[Rule, ...] = ()
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class UniqueKey:
    fields: tuple[str, ...]
    field: str
    message: str


@dataclass(frozen=True)
class ImportDefinition:
    import_type: str
    title: str
    target_table: str
    fields: tuple[FieldSpec, ...]
    example_rows: tuple[dict[str, str], ...] = ()
    example_key_columns: tuple[str, ...] = ()
    unique_key: UniqueKey | None = None
    amount_field: str | None = None
    lookup_field: str | None = None

    @property
    def field_names(self) -> list[str]:
        return [spec.name for spec in self.fields]

    @property
    def required_fields(self) -> list[str]:
        return [spec.name for spec in self.fields if spec.required]


PAYMENTS = ImportDefinition(
    import_type="payments",
    title="Payments",
    target_table="student_payments",
    fields=(
        FieldSpec("admission_number", "Admission number", True, (student_lookup,), ("admission", "adm", "student")),
        FieldSpec("amount", "Amount", True, (positive_amount,), ("amount", "paid")),
        FieldSpec("payment_date", "Payment date", True, (flexible_date(),), ("date",)),
        FieldSpec("payment_method", "Payment method", True, (one_of(PAYMENT_METHODS),), ("method", "mode", "channel")),
        FieldSpec("transaction_reference", "Transaction reference", False, (free_text(128),), ("ref", "trans", "code")),
        FieldSpec("notes", "Notes", False, (free_text(1000),), ("note", "remark", "comment")),
    ),
    example_rows=(
        {
            "admission_number": "STU001",
            "amount": "15000",
            "payment_date": "2024-01-15",
            "payment_method": "mpesa",
            "transaction_reference": "QWE123XYZ",
            "notes": "Term 1 fees",
        },
        {
            "admission_number": "STU002",
            "amount": "25000",
            "payment_date": "2024-01-16",
            "payment_method": "bank",
            "transaction_reference": "TRF-456789",
            "notes": "Full payment",
        },
        {
            "admission_number": "STU003",
            "amount": "10000",
            "payment_date": "2024-01-17",
            "payment_method": "cash",
            "transaction_reference": "",
            "notes": "Partial payment",
        },
    ),
    example_key_columns=("admission_number", "amount", "payment_date", "transaction_reference"),
    amount_field="amount",
    lookup_field="admission_number",
)


HISTORICAL_PAYMENTS = ImportDefinition(
    import_type="historical_payments",
    title="Historical Payments",
    target_table="student_payments",
    fields=(
        FieldSpec("admission_number", "Admission number", True, (student_lookup,), ("admission", "adm", "student")),
        FieldSpec("payment_date", "Payment date", True, (flexible_date(allow_future=False),), ("date",)),
        FieldSpec("amount", "Amount", True, (positive_amount,), ("amount", "paid")),
        FieldSpec("receipt_number", "Receipt number", False, (free_text(48),), ("receipt", "rcp")),
        FieldSpec(
            "payment_method",
            "Payment method",
            False,
            (one_of(HISTORICAL_PAYMENT_METHODS),),
            ("method", "mode", "channel"),
        ),
        FieldSpec("transaction_reference", "Transaction reference", False, (free_text(128),), ("ref", "trans", "code")),
        FieldSpec("notes", "Notes", False, (free_text(1000),), ("note", "remark", "comment")),
    ),
    example_rows=(
        {
            "admission_number": "STU001",
            "payment_date": "2024-02-15",
            "amount": "25000",
            "receipt_number": "RCP-2024-0001",
            "payment_method": "bank_transfer",
            "transaction_reference": "TRX123456",
            "notes": "Term 1 tuition fees",
        },
        {
            "admission_number": "STU001",
            "payment_date": "2024-03-20",
            "amount": "5000",
            "receipt_number": "RCP-2024-0045",
            "payment_method": "mpesa",
            "transaction_reference": "MPESA789012",
            "notes": "Activity fees",
        },
        {
            "admission_number": "STU002",
            "payment_date": "2024-02-18",
            "amount": "25000",
            "receipt_number": "RCP-2024-0003",
            "payment_method": "cash",
            "transaction_reference": "",
            "notes": "Term 1 fees",
        },
    ),
    example_key_columns=("admission_number", "amount", "receipt_number"),
    amount_field="amount",
    lookup_field="admission_number",
)


HISTORICAL_ATTENDANCE = ImportDefinition(
    import_type="historical_attendance",
    title="Historical Attendance",
    target_table="attendance_records",
    fields=(
        FieldSpec("admission_number", "Admission number", True, (student_lookup,), ("admission", "adm", "student")),
        FieldSpec("date", "Date", True, (flexible_date(allow_future=False),), ("date", "day")),
        FieldSpec("status", "Status", True, (one_of(ATTENDANCE_STATUSES),), ("status", "attendance")),
        FieldSpec("notes", "Notes", False, (free_text(1000),), ("note", "remark", "reason")),
    ),
    example_rows=(
        {"admission_number": "STU001", "date": "2024-01-15", "status": "present", "notes": ""},
        {"admission_number": "STU001", "date": "2024-01-16", "status": "absent", "notes": "Sick leave - parent notified"},
        {"admission_number": "STU002", "date": "2024-01-15", "status": "late", "notes": "Arrived 15 minutes late"},
        {"admission_number": "STU003", "date": "2024-01-15", "status": "excused", "notes": "Medical appointment"},
    ),
    example_key_columns=("admission_number", "date"),
    unique_key=UniqueKey(
        fields=("admission_number", "date"),
        field="admission_number",
        message="Duplicate attendance record for this date",
    ),
    lookup_field="admission_number",
)


BANK_STATEMENT = ImportDefinition(
    import_type="bank_statement",
    title="Bank Statement",
    target_table="reconciliation_records",
    fields=(
        FieldSpec("date", "Date", True, (flexible_date(),), ("date", "time")),
        FieldSpec("amount", "Amount", True, (statement_amount,), ("amount", "value", "credit")),
        FieldSpec("reference", "Reference", False, (free_text(128),), ("ref", "receipt", "trans")),
        FieldSpec("description", "Description", False, (free_text(2000),), ("desc", "narration", "detail")),
    ),
    example_rows=(
        {"date": "2024-01-15", "amount": "15000", "reference": "TRF123456", "description": "School fees payment"},
        {"date": "2024-01-16", "amount": "25000", "reference": "CHQ789012", "description": "Fees - John Doe"},
        {"date": "2024-01-17", "amount": "10000", "reference": "MPESA-ABC", "description": "Mobile payment"},
    ),
    example_key_columns=("date", "amount", "reference"),
    amount_field="amount",
)


IMPORT_DEFINITIONS: dict[str, ImportDefinition] = {
    definition.import_type: definition
    for definition in (PAYMENTS, HISTORICAL_PAYMENTS, HISTORICAL_ATTENDANCE, BANK_STATEMENT)
}


def get_definition(import_type: str) -> ImportDefinition:
    try:
        return IMPORT_DEFINITIONS[import_type]
    except KeyError:
        raise ValueError(
            f"unknown import type '{import_type}', expected one of: {', '.join(IMPORT_DEFINITIONS)}"
        ) from None
