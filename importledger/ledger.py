"""Durable import-run records (the import ledger)."""

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from importledger.db_models import ImportBatch, ImportRowIssue, utc_now
from importledger.errors import RecordNotFoundError
from importledger.schemas import CommitProgress, RowIssue


RUN_STATUSES = ("pending", "importing", "completed", "failed", "cancelled")


def get_run(db: Session, run_id: int) -> ImportBatch:
    run = db.get(ImportBatch, run_id)
    if run is None:
        raise RecordNotFoundError(f"import run {run_id} not found")
    return run


def create_run(
    db: Session,
    *,
    institution_id: str,
    import_type: str,
    file_name: str,
    total_rows: int,
    valid_rows: int,
) -> ImportBatch:
    run = ImportBatch(
        institution_id=institution_id,
        import_type=import_type,
        file_name=file_name,
        total_rows=total_rows,
        valid_rows=valid_rows,
        status="pending",
        imported_ids=[],
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def mark_run_importing(db: Session, run: ImportBatch) -> None:
    run.status = "importing"
    db.commit()


def checkpoint_run(db: Session, run_id: int, progress: CommitProgress) -> None:
    # Absolute counts keyed by run id, so replaying a checkpoint is harmless.
    run = get_run(db, run_id)
    run.imported_rows = progress.success_count
    run.failed_rows = progress.failed_count
    run.duplicate_rows = progress.duplicate_count
    run.imported_ids = list(progress.persisted_ids)
    run.updated_at = utc_now()
    db.commit()


def finish_run(
    db: Session,
    run: ImportBatch,
    *,
    status: str,
    imported_rows: int,
    failed_rows: int,
    duplicate_rows: int,
    imported_ids: Sequence[int],
    error: str | None = None,
) -> None:
    """Record the final outcome of a run.

    Besides pending, importing, completed and failed, a run can end as
    cancelled: rows committed before the cancel stay committed and counted.
    """
    if status not in RUN_STATUSES:
        raise ValueError(f"unknown import run status '{status}'")
    run.status = status
    run.imported_rows = imported_rows
    run.failed_rows = failed_rows
    run.duplicate_rows = duplicate_rows
    run.imported_ids = list(imported_ids)
    run.error = error
    run.imported_at = utc_now()
    db.commit()


def store_row_issues(db: Session, *, run_id: int, issues: Sequence[RowIssue]) -> None:
    for issue in issues:
        db.add(
            ImportRowIssue(
                batch_id=run_id,
                row=issue.row,
                field=issue.field,
                kind=issue.kind,
                message=issue.message,
                value=issue.value,
            )
        )
    db.commit()


def list_row_issues(db: Session, run_id: int, kind: str | None = None) -> list[ImportRowIssue]:
    stmt = select(ImportRowIssue).where(ImportRowIssue.batch_id == run_id)
    if kind:
        stmt = stmt.where(ImportRowIssue.kind == kind)
    return list(db.execute(stmt.order_by(ImportRowIssue.row, ImportRowIssue.id)).scalars().all())
