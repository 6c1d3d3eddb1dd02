from collections.abc import Callable
from dataclasses import replace
from datetime import date
from decimal import Decimal
from enum import StrEnum
import logging
from typing import TypeVar

from sqlalchemy.orm import Session, sessionmaker

from importledger.commit import BatchCommitter, CancelToken, ProgressCallback
from importledger.config import Settings
from importledger.db_models import ImportBatch
from importledger.definitions import RECONCILIATION_SOURCES, ImportDefinition, get_definition
from importledger.duplicates import DuplicateDetector
from importledger.errors import MappingError, StageError
from importledger.ledger import checkpoint_run, create_run, finish_run, mark_run_importing, store_row_issues
from importledger.mapping import apply_mapping, auto_detect, validate_mapping
from importledger.parsing import filter_example_rows, parse_table
from importledger.reports import publish_run_report
from importledger.retry import run_with_retries
from importledger.rules import ValidationContext
from importledger.schemas import (
    ColumnMapping,
    CommitProgress,
    CommitResult,
    ImportPreview,
    ImportResult,
    MappedRow,
    ParsedTable,
    RowIssue,
    ValidatedRecord,
)
from importledger.stores import SqlLookupStore, SqlPersistenceSink
from importledger.validation import collect_errors, summarize_errors, validate_records
from importledger.writers import WRITERS, RowWriter, StatementWriter


logger = logging.getLogger(__name__)
T = TypeVar("T")


class ImportStage(StrEnum):
    UPLOAD = "upload"
    MAPPING = "mapping"
    PREVIEW = "preview"
    IMPORTING = "importing"
    COMPLETE = "complete"
    FAILED = "failed"


class ImportSession:
    """One file moving through upload, mapping, preview and commit."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        import_type: str,
        institution_id: str,
        source: str = "bank",
        today: date | None = None,
    ) -> None:
        if source not in RECONCILIATION_SOURCES:
            raise ValueError(f"unknown statement source '{source}', expected one of: {', '.join(RECONCILIATION_SOURCES)}")
        self.settings = settings
        self.session_factory = session_factory
        self.definition: ImportDefinition = get_definition(import_type)
        self.institution_id = institution_id
        self.source = source
        self.today = today or date.today()

        self.stage = ImportStage.UPLOAD
        self.file_name = ""
        self.table: ParsedTable | None = None
        self.suggested_mapping: ColumnMapping = {}
        self.mapping: ColumnMapping | None = None
        self.rows: list[MappedRow] = []
        self.skipped_rows = 0
        self.records: list[ValidatedRecord] | None = None

    def _require(self, *stages: ImportStage) -> None:
        if self.stage not in stages:
            expected = " or ".join(stage.value for stage in stages)
            raise StageError(f"import session is in stage '{self.stage.value}', expected {expected}")

    def load(self, file_name: str, contents: bytes, *, has_header: bool = True) -> ColumnMapping:
        self._require(ImportStage.UPLOAD, ImportStage.MAPPING)
        self.table = parse_table(contents, has_header=has_header)
        self.file_name = file_name
        self.suggested_mapping = auto_detect(self.table.headers, self.definition.fields)
        self.mapping = None
        self.records = None
        self.stage = ImportStage.MAPPING

        logger.info(
            "import file loaded",
            extra={
                "import_type": self.definition.import_type,
                "file_name": file_name,
                "rows": len(self.table.rows),
                "suggested": {name: column for name, column in self.suggested_mapping.items() if column},
            },
        )
        return dict(self.suggested_mapping)

    def confirm_mapping(self, mapping: ColumnMapping | None = None) -> ColumnMapping:
        self._require(ImportStage.MAPPING, ImportStage.PREVIEW)
        if self.table is None:
            raise StageError("no file has been loaded")

        chosen = dict(self.suggested_mapping if mapping is None else mapping)
        unknown = sorted(set(chosen) - set(self.definition.field_names))
        if unknown:
            raise MappingError(f"unknown fields for {self.definition.import_type}: {', '.join(unknown)}")
        confirmed: ColumnMapping = {name: chosen.get(name) or None for name in self.definition.field_names}
        validate_mapping(confirmed, self.definition.required_fields, self.table.headers)

        mapped = apply_mapping(confirmed, self.table.rows, self.definition.required_fields)
        kept, examples = filter_example_rows(
            mapped,
            self.definition.example_key_columns,
            self.definition.example_rows,
        )
        self.mapping = confirmed
        self.rows = kept
        self.skipped_rows = (len(self.table.rows) - len(mapped)) + examples
        self.records = None
        self.stage = ImportStage.PREVIEW

        if examples:
            logger.info("skipped template example rows", extra={"file_name": self.file_name, "example_rows": examples})
        return dict(confirmed)

    def _context(self, db: Session) -> ValidationContext:
        lookup_field = self.definition.lookup_field
        if not lookup_field:
            return ValidationContext(today=self.today)
        codes = [row.values.get(lookup_field, "") for row in self.rows]
        students = SqlLookupStore(db).find_entities_by_codes(self.institution_id, codes)
        return ValidationContext(students=students, today=self.today)

    def validate(self) -> ImportPreview:
        self._require(ImportStage.PREVIEW)
        with self.session_factory() as db:
            context = self._context(db)
        self.records = validate_records(self.rows, self.definition, context)
        return self.preview()

    def preview(self) -> ImportPreview:
        if self.records is None:
            raise StageError("import rows have not been validated")
        valid = [record for record in self.records if record.is_valid]
        messages = [error.describe() for error in collect_errors(self.records)]

        total_amount = Decimal("0")
        if self.definition.amount_field:
            for record in valid:
                amount = record.values.get(self.definition.amount_field)
                if isinstance(amount, Decimal):
                    total_amount += amount

        return ImportPreview(
            total_rows=len(self.records),
            valid_rows=len(valid),
            invalid_rows=len(self.records) - len(valid),
            skipped_rows=self.skipped_rows,
            total_amount=total_amount,
            error_summary=summarize_errors(messages, self.settings.max_error_messages),
        )

    def _ledger(self, db: Session, label: str, fn: Callable[[], T]) -> T:
        return run_with_retries(
            fn,
            label=label,
            max_retries=self.settings.ledger_max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            before_retry=db.rollback,
        )

    def _writer(self, batch_id: int) -> RowWriter:
        writer_cls = WRITERS[self.definition.import_type]
        if issubclass(writer_cls, StatementWriter):
            return writer_cls(
                institution_id=self.institution_id,
                batch_id=batch_id,
                settings=self.settings,
                source=self.source,
            )
        return writer_cls(institution_id=self.institution_id, batch_id=batch_id, settings=self.settings)

    def commit(
        self,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ImportResult:
        if self.stage != ImportStage.PREVIEW or self.records is None:
            raise StageError("mapping must be confirmed and rows validated before committing")

        records = self.records
        valid = [record for record in records if record.is_valid]
        validation_issues = [
            RowIssue(row=error.row, kind="validation", message=error.message, field=error.field, value=error.value)
            for error in collect_errors(records)
        ]
        self.stage = ImportStage.IMPORTING

        with self.session_factory() as db:
            run = self._ledger(
                db,
                "create import run",
                lambda: create_run(
                    db,
                    institution_id=self.institution_id,
                    import_type=self.definition.import_type,
                    file_name=self.file_name,
                    total_rows=len(records),
                    valid_rows=len(valid),
                ),
            )
            self._ledger(db, "mark import run importing", lambda: mark_run_importing(db, run))
            logger.info(
                "import commit started",
                extra={"run_id": run.id, "import_type": run.import_type, "valid_rows": len(valid)},
            )

            def checkpoint(progress: CommitProgress) -> None:
                self._ledger(db, "checkpoint import run", lambda: checkpoint_run(db, run.id, progress))

            detector = None
            if self.definition.import_type == "bank_statement":
                detector = DuplicateDetector(SqlLookupStore(db), self.institution_id)
            committer = BatchCommitter(
                SqlPersistenceSink(db),
                self._writer(run.id),
                batch_size=self.settings.import_batch_size,
                on_progress=on_progress,
                cancel_token=cancel_token,
                detector=detector,
                checkpoint=checkpoint,
            )

            try:
                outcome = committer.commit(valid)
            except Exception as exc:
                db.rollback()
                # Rows committed before the failure are reflected by the last checkpoint.
                self._ledger(
                    db,
                    "finish import run",
                    lambda: finish_run(
                        db,
                        run,
                        status="failed",
                        imported_rows=run.imported_rows,
                        failed_rows=run.failed_rows,
                        duplicate_rows=run.duplicate_rows,
                        imported_ids=run.imported_ids or [],
                        error=str(exc),
                    ),
                )
                self._ledger(db, "store row issues", lambda: store_row_issues(db, run_id=run.id, issues=validation_issues))
                logger.exception("import commit failed", extra={"run_id": run.id})
                self.stage = ImportStage.FAILED
                return self._finish(run, validation_issues, CommitResult())

            status = "cancelled" if outcome.cancelled else "completed"
            self._ledger(
                db,
                "finish import run",
                lambda: finish_run(
                    db,
                    run,
                    status=status,
                    imported_rows=outcome.success_count,
                    failed_rows=outcome.failed_count,
                    duplicate_rows=outcome.duplicate_count,
                    imported_ids=outcome.persisted_ids,
                ),
            )
            issues = validation_issues + outcome.issues
            self._ledger(db, "store row issues", lambda: store_row_issues(db, run_id=run.id, issues=issues))
            self.stage = ImportStage.COMPLETE
            return self._finish(run, issues, outcome)

    def _finish(self, run: ImportBatch, issues: list[RowIssue], outcome: CommitResult) -> ImportResult:
        records = self.records or []
        messages = [error.describe() for error in collect_errors(records)]
        messages += [f"Row {issue.row}: {issue.message}" for issue in outcome.issues if issue.kind == "commit"]
        if run.error:
            messages.append(run.error)

        result = ImportResult(
            run_id=run.id,
            import_type=run.import_type,
            file_name=run.file_name,
            status=run.status,
            total_rows=run.total_rows,
            valid_rows=run.valid_rows,
            invalid_rows=run.total_rows - run.valid_rows,
            duplicate_rows=run.duplicate_rows,
            imported_rows=run.imported_rows,
            failed_rows=run.failed_rows,
            skipped_rows=self.skipped_rows,
            imported_ids=list(run.imported_ids or []),
            error_summary=summarize_errors(messages, self.settings.max_error_messages),
            report_path=None,
            imported_at=run.imported_at,
        )
        report_path = publish_run_report(
            self.settings.output_dir,
            f"{run.import_type}-{run.id}",
            result,
            issues,
        )
        logger.info(
            "import run finished",
            extra={
                "run_id": run.id,
                "status": run.status,
                "imported": run.imported_rows,
                "failed": run.failed_rows,
                "duplicates": run.duplicate_rows,
                "invalid": result.invalid_rows,
            },
        )
        return replace(result, report_path=str(report_path))

    def run(
        self,
        file_name: str,
        contents: bytes,
        *,
        mapping: ColumnMapping | None = None,
        has_header: bool = True,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ImportResult:
        self.load(file_name, contents, has_header=has_header)
        self.confirm_mapping(mapping)
        self.validate()
        return self.commit(on_progress=on_progress, cancel_token=cancel_token)
