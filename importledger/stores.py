"""Tenant-scoped lookups and the persistence sink used by the committer."""

from collections.abc import Iterable, Mapping, Sequence
import logging
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from importledger.db_models import AttendanceRecord, Base, ReconciliationRecord, Student, StudentPayment
from importledger.errors import CommitError, CommitTimeoutError
from importledger.schemas import RowResult, StudentRef


logger = logging.getLogger(__name__)

TABLES: dict[str, type[Base]] = {
    "student_payments": StudentPayment,
    "attendance_records": AttendanceRecord,
    "reconciliation_records": ReconciliationRecord,
}

KEY_CHUNK_SIZE = 500

_TIMEOUT_MARKERS = ("database is locked", "statement timeout", "canceling statement", "timeout expired")


class LookupStore(Protocol):
    def find_by_natural_key(self, institution_id: str, keys: Iterable[str]) -> set[str]: ...

    def find_entity_by_code(self, institution_id: str, code: str) -> StudentRef | None: ...

    def find_entities_by_codes(self, institution_id: str, codes: Iterable[str]) -> dict[str, StudentRef]: ...


class PersistenceSink(Protocol):
    def insert(self, table: str, values: Mapping[str, object]) -> int: ...

    def insert_many(self, table: str, rows: Sequence[Mapping[str, object]]) -> list[RowResult]: ...

    def count(self, table: str, filters: Mapping[str, object]) -> int: ...

    def commit(self) -> None: ...


def _student_ref(student: Student) -> StudentRef:
    return StudentRef(id=student.id, admission_number=student.admission_number, class_id=student.class_id)


class SqlLookupStore:
    def __init__(self, db: Session, chunk_size: int = KEY_CHUNK_SIZE) -> None:
        self.db = db
        self.chunk_size = chunk_size

    def find_by_natural_key(self, institution_id: str, keys: Iterable[str]) -> set[str]:
        wanted = sorted({key for key in keys if key})
        found: set[str] = set()
        # Bounded IN lists keep large statements under the driver's bind-parameter limit.
        for start in range(0, len(wanted), self.chunk_size):
            stmt = select(ReconciliationRecord.external_reference).where(
                ReconciliationRecord.institution_id == institution_id,
                ReconciliationRecord.external_reference.in_(wanted[start : start + self.chunk_size]),
            )
            found.update(self.db.execute(stmt).scalars().all())
        return found

    def find_entity_by_code(self, institution_id: str, code: str) -> StudentRef | None:
        stmt = select(Student).where(
            Student.institution_id == institution_id,
            func.upper(Student.admission_number) == code.strip().upper(),
        )
        student = self.db.execute(stmt).scalars().first()
        return _student_ref(student) if student else None

    def find_entities_by_codes(self, institution_id: str, codes: Iterable[str]) -> dict[str, StudentRef]:
        wanted = sorted({code.strip().upper() for code in codes if code and code.strip()})
        found: dict[str, StudentRef] = {}
        for start in range(0, len(wanted), self.chunk_size):
            stmt = select(Student).where(
                Student.institution_id == institution_id,
                func.upper(Student.admission_number).in_(wanted[start : start + self.chunk_size]),
            )
            for student in self.db.execute(stmt).scalars():
                found[student.admission_number.upper()] = _student_ref(student)
        return found


class SqlPersistenceSink:
    """Writes one row per savepoint so a rejected row never poisons its neighbours."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _model(self, table: str) -> type[Base]:
        try:
            return TABLES[table]
        except KeyError:
            raise CommitError(f"unknown table '{table}'") from None

    def insert(self, table: str, values: Mapping[str, object]) -> int:
        model = self._model(table)
        instance = model(**values)
        try:
            with self.db.begin_nested():
                self.db.add(instance)
                self.db.flush()
        except OperationalError as exc:
            message = str(exc.orig or exc)
            if any(marker in message.lower() for marker in _TIMEOUT_MARKERS):
                raise CommitTimeoutError(f"insert into {table} timed out: {message}") from exc
            raise CommitError(f"insert into {table} failed: {message}") from exc
        except SQLAlchemyError as exc:
            message = str(getattr(exc, "orig", None) or exc)
            raise CommitError(f"insert into {table} failed: {message}") from exc
        return instance.id

    def insert_many(self, table: str, rows: Sequence[Mapping[str, object]]) -> list[RowResult]:
        results: list[RowResult] = []
        for values in rows:
            try:
                results.append(RowResult(ok=True, id=self.insert(table, values)))
            except CommitError as exc:
                results.append(RowResult(ok=False, error=str(exc)))
        return results

    def count(self, table: str, filters: Mapping[str, object]) -> int:
        model = self._model(table)
        stmt = select(func.count()).select_from(model).filter_by(**filters)
        return int(self.db.execute(stmt).scalar_one())

    def commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise CommitError(f"commit failed: {getattr(exc, 'orig', None) or exc}") from exc
