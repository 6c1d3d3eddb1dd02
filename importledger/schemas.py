from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


ColumnMapping = dict[str, str | None]


@dataclass(frozen=True)
class RawRow:
    row: int
    cells: dict[str, str]


@dataclass(frozen=True)
class ParsedTable:
    headers: list[str]
    rows: list[RawRow]


@dataclass(frozen=True)
class MappedRow:
    row: int
    values: dict[str, str]


@dataclass(frozen=True)
class ValidationError:
    row: int
    field: str
    message: str
    value: str | None = None

    def describe(self) -> str:
        text = f"Row {self.row}: {self.field} - {self.message}"
        if self.value:
            text += f" ({self.value})"
        return text


@dataclass
class ValidatedRecord:
    row: int
    raw: dict[str, str]
    values: dict[str, object]
    errors: list[ValidationError] = field(default_factory=list)
    is_duplicate: bool = False

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def mark_duplicate(self) -> None:
        self.is_duplicate = True


@dataclass(frozen=True)
class StudentRef:
    id: int
    admission_number: str
    class_id: str | None


@dataclass(frozen=True)
class ErrorSummary:
    total: int
    messages: list[str]
    remaining: int

    def lines(self) -> list[str]:
        if self.remaining:
            return [*self.messages, f"...and {self.remaining} more"]
        return list(self.messages)


@dataclass(frozen=True)
class RowIssue:
    row: int
    kind: str
    message: str
    field: str | None = None
    value: str | None = None


@dataclass(frozen=True)
class RowResult:
    ok: bool
    id: int | None = None
    error: str | None = None


@dataclass
class CommitResult:
    success_count: int = 0
    failed_count: int = 0
    duplicate_count: int = 0
    persisted_ids: list[int] = field(default_factory=list)
    issues: list[RowIssue] = field(default_factory=list)
    processed: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class CommitProgress:
    processed: int
    total: int
    success_count: int
    failed_count: int
    duplicate_count: int
    persisted_ids: list[int]


@dataclass(frozen=True)
class ImportPreview:
    total_rows: int
    valid_rows: int
    invalid_rows: int
    skipped_rows: int
    total_amount: Decimal
    error_summary: ErrorSummary


@dataclass(frozen=True)
class ImportResult:
    run_id: int | None
    import_type: str
    file_name: str
    status: str
    total_rows: int
    valid_rows: int
    invalid_rows: int
    duplicate_rows: int
    imported_rows: int
    failed_rows: int
    skipped_rows: int
    imported_ids: list[int]
    error_summary: ErrorSummary
    report_path: str | None
    imported_at: datetime | None = None
