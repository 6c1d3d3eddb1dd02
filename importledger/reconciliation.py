"""Staff triage of imported statement lines."""

from dataclasses import dataclass
from datetime import date
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from importledger.db_models import ReconciliationRecord, StudentPayment, utc_now
from importledger.errors import InvalidTransitionError, RecordNotFoundError


logger = logging.getLogger(__name__)

RECONCILIATION_STATUSES = ("unmatched", "matched", "exception", "duplicate", "ignored")
LIST_LIMIT = 500

_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "unmatched": ("matched", "exception", "ignored"),
}


@dataclass(frozen=True)
class ReconciliationSummary:
    total: int
    matched: int
    unmatched: int
    exceptions: int
    duplicates: int
    ignored: int
    total_external_amount: int
    total_matched_amount: int
    variance: int

    @property
    def match_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(self.matched * 100 / self.total, 2)


def get_record(db: Session, record_id: int) -> ReconciliationRecord:
    record = db.get(ReconciliationRecord, record_id)
    if record is None:
        raise RecordNotFoundError(f"reconciliation record {record_id} not found")
    return record


def _transition(record: ReconciliationRecord, target: str, reconciled_by: str | None) -> None:
    if target not in _TRANSITIONS.get(record.status, ()):
        raise InvalidTransitionError(record.status, target)
    record.status = target
    record.reconciled_by = reconciled_by
    record.reconciled_at = utc_now()


def match_record(
    db: Session,
    record_id: int,
    payment_id: int,
    *,
    reconciled_by: str | None = None,
) -> ReconciliationRecord:
    record = get_record(db, record_id)
    payment = db.get(StudentPayment, payment_id)
    if payment is None or payment.institution_id != record.institution_id:
        raise RecordNotFoundError(f"payment {payment_id} not found for institution {record.institution_id}")

    _transition(record, "matched", reconciled_by)
    record.matched_payment_id = payment.id
    db.commit()
    logger.info("reconciliation record matched", extra={"record_id": record.id, "payment_id": payment.id})
    return record


def flag_exception(
    db: Session,
    record_id: int,
    exception_type: str,
    *,
    notes: str | None = None,
    reconciled_by: str | None = None,
) -> ReconciliationRecord:
    if not exception_type.strip():
        raise ValueError("exception_type is required")
    record = get_record(db, record_id)
    _transition(record, "exception", reconciled_by)
    record.exception_type = exception_type.strip()
    record.exception_notes = notes
    db.commit()
    logger.info(
        "reconciliation record flagged",
        extra={"record_id": record.id, "exception_type": record.exception_type},
    )
    return record


def ignore_record(db: Session, record_id: int, *, reconciled_by: str | None = None) -> ReconciliationRecord:
    record = get_record(db, record_id)
    _transition(record, "ignored", reconciled_by)
    db.commit()
    logger.info("reconciliation record ignored", extra={"record_id": record.id})
    return record


def list_records(
    db: Session,
    institution_id: str,
    *,
    status: str | None = None,
    source: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = LIST_LIMIT,
) -> list[ReconciliationRecord]:
    stmt = select(ReconciliationRecord).where(ReconciliationRecord.institution_id == institution_id)
    if status:
        stmt = stmt.where(ReconciliationRecord.status == status)
    if source:
        stmt = stmt.where(ReconciliationRecord.source == source)
    if date_from:
        stmt = stmt.where(ReconciliationRecord.reconciliation_date >= date_from)
    if date_to:
        stmt = stmt.where(ReconciliationRecord.reconciliation_date <= date_to)
    stmt = stmt.order_by(ReconciliationRecord.reconciliation_date.desc(), ReconciliationRecord.id.desc())
    return list(db.execute(stmt.limit(min(limit, LIST_LIMIT))).scalars().all())


def summarize(db: Session, institution_id: str, on_date: date | None = None) -> ReconciliationSummary:
    stmt = (
        select(
            ReconciliationRecord.status,
            func.count(ReconciliationRecord.id),
            func.coalesce(func.sum(ReconciliationRecord.external_amount), 0),
        )
        .where(ReconciliationRecord.institution_id == institution_id)
        .group_by(ReconciliationRecord.status)
    )
    if on_date:
        stmt = stmt.where(ReconciliationRecord.reconciliation_date == on_date)

    counts = {name: 0 for name in RECONCILIATION_STATUSES}
    amounts = {name: 0 for name in RECONCILIATION_STATUSES}
    for status, count, amount in db.execute(stmt).all():
        counts[status] = int(count)
        amounts[status] = int(amount)

    total_amount = sum(amounts.values())
    return ReconciliationSummary(
        total=sum(counts.values()),
        matched=counts["matched"],
        unmatched=counts["unmatched"],
        exceptions=counts["exception"],
        duplicates=counts["duplicate"],
        ignored=counts["ignored"],
        total_external_amount=total_amount,
        total_matched_amount=amounts["matched"],
        variance=total_amount - amounts["matched"],
    )
