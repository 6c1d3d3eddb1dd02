from datetime import date

import pytest
from sqlalchemy import select

from importledger.db_models import ReconciliationRecord, StudentPayment
from importledger.errors import InvalidTransitionError, RecordNotFoundError
from importledger.reconciliation import flag_exception, ignore_record, list_records, match_record, summarize


STATEMENT_CSV = (
    b"date,amount,reference,description\n"
    b"2024-03-01,1000,A-1,fees\n"
    b"2024-03-01,2000,A-2,fees\n"
    b"2024-03-02,3000,A-3,fees\n"
    b"2024-03-03,4000,A-4,fees\n"
)
PAYMENT_CSV = b"admission_number,amount,payment_date,payment_method\nSTU001,1000,2024-03-01,bank\n"


@pytest.fixture()
def imported(make_session, session_factory):
    make_session("bank_statement").run("statement.csv", STATEMENT_CSV)
    make_session("payments").run("payments.csv", PAYMENT_CSV)
    with session_factory() as db:
        records = {
            record.external_reference: record.id
            for record in db.execute(select(ReconciliationRecord)).scalars()
        }
        payment_id = db.execute(select(StudentPayment.id)).scalar_one()
    return records, payment_id


def test_match_links_payment_and_stamps_reviewer(imported, session_factory) -> None:
    records, payment_id = imported
    with session_factory() as db:
        record = match_record(db, records["A-1"], payment_id, reconciled_by="bursar")

        assert record.status == "matched"
        assert record.matched_payment_id == payment_id
        assert record.reconciled_by == "bursar"
        assert record.reconciled_at is not None
        assert record.matched_payment.amount == 1000


def test_only_unmatched_records_can_move(imported, session_factory) -> None:
    records, payment_id = imported
    with session_factory() as db:
        ignore_record(db, records["A-2"])

        with pytest.raises(InvalidTransitionError) as excinfo:
            match_record(db, records["A-2"], payment_id)
        assert excinfo.value.current == "ignored"

        with pytest.raises(InvalidTransitionError):
            flag_exception(db, records["A-2"], "amount_mismatch")


def test_exception_keeps_type_and_notes(imported, session_factory) -> None:
    records, _ = imported
    with session_factory() as db:
        record = flag_exception(db, records["A-3"], "amount_mismatch", notes="short by 500", reconciled_by="clerk")

        assert record.status == "exception"
        assert record.exception_type == "amount_mismatch"
        assert record.exception_notes == "short by 500"


def test_missing_records_and_foreign_payments_are_rejected(imported, session_factory) -> None:
    records, payment_id = imported
    with session_factory() as db:
        with pytest.raises(RecordNotFoundError):
            ignore_record(db, 9999)
        with pytest.raises(RecordNotFoundError):
            match_record(db, records["A-1"], payment_id + 100)

        foreign = db.get(ReconciliationRecord, records["A-4"])
        foreign.institution_id = "school-2"
        db.commit()
        with pytest.raises(RecordNotFoundError):
            match_record(db, records["A-4"], payment_id)


def test_list_records_filters_and_orders_newest_first(imported, session_factory) -> None:
    records, _ = imported
    with session_factory() as db:
        ignore_record(db, records["A-2"])

        everything = list_records(db, "school-1")
        unmatched = list_records(db, "school-1", status="unmatched")
        first_day = list_records(db, "school-1", date_from=date(2024, 3, 1), date_to=date(2024, 3, 1))

        assert [record.external_reference for record in everything] == ["A-4", "A-3", "A-2", "A-1"]
        assert {record.external_reference for record in unmatched} == {"A-1", "A-3", "A-4"}
        assert {record.external_reference for record in first_day} == {"A-1", "A-2"}
        assert list_records(db, "school-1", source="mpesa") == []
        assert list_records(db, "school-2") == []


def test_summary_derives_counts_amounts_and_rate(imported, session_factory) -> None:
    records, payment_id = imported
    with session_factory() as db:
        match_record(db, records["A-1"], payment_id)
        ignore_record(db, records["A-2"])
        flag_exception(db, records["A-3"], "unknown_payer")

        summary = summarize(db, "school-1")
        first_day = summarize(db, "school-1", on_date=date(2024, 3, 1))

    assert summary.total == 4
    assert (summary.matched, summary.unmatched, summary.exceptions, summary.ignored) == (1, 1, 1, 1)
    assert summary.duplicates == 0
    assert summary.total_external_amount == 10000
    assert summary.total_matched_amount == 1000
    assert summary.variance == 9000
    assert summary.match_rate == 25.0
    assert first_day.total == 2


def test_summary_of_empty_tenant(session_factory) -> None:
    with session_factory() as db:
        summary = summarize(db, "nobody")

    assert summary.total == 0
    assert summary.match_rate == 0.0
