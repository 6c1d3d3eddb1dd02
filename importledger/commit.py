from collections.abc import Callable, Sequence
import logging
import threading

from importledger.duplicates import DuplicateDetector
from importledger.errors import CommitError
from importledger.schemas import CommitProgress, CommitResult, RowIssue, RowResult, ValidatedRecord
from importledger.stores import PersistenceSink
from importledger.writers import RowWriter


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
CheckpointCallback = Callable[[CommitProgress], None]


class CancelToken:
    """Checked between rows; rows committed before cancellation stay committed."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def percent_complete(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, (processed * 100 + total // 2) // total)


class BatchCommitter:
    def __init__(
        self,
        sink: PersistenceSink,
        writer: RowWriter,
        *,
        batch_size: int = 50,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
        detector: DuplicateDetector | None = None,
        checkpoint: CheckpointCallback | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sink = sink
        self.writer = writer
        self.batch_size = batch_size
        self.on_progress = on_progress
        self.cancel_token = cancel_token
        self.detector = detector
        self.checkpoint = checkpoint

    def commit(self, records: Sequence[ValidatedRecord]) -> CommitResult:
        result = CommitResult()
        self.writer.prepare(self.sink)

        if self.writer.per_row:
            self._commit_per_row(records, result)
        else:
            self._commit_chunked(records, result)

        if not result.cancelled:
            if not records:
                self._report(0, 0)
            self._checkpoint(result, len(records))

        logger.info(
            "commit finished",
            extra={
                "table": self.writer.table,
                "processed": result.processed,
                "succeeded": result.success_count,
                "failed": result.failed_count,
                "duplicates": result.duplicate_count,
                "cancelled": result.cancelled,
            },
        )
        return result

    def _is_cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    def _report(self, processed: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(percent_complete(processed, total))

    def _checkpoint(self, result: CommitResult, total: int) -> None:
        if not self.checkpoint:
            return
        self.checkpoint(
            CommitProgress(
                processed=result.processed,
                total=total,
                success_count=result.success_count,
                failed_count=result.failed_count,
                duplicate_count=result.duplicate_count,
                persisted_ids=list(result.persisted_ids),
            )
        )

    def _record_failure(self, record: ValidatedRecord, result: CommitResult, error: str) -> None:
        result.failed_count += 1
        result.issues.append(RowIssue(row=record.row, kind="commit", message=error))
        logger.warning("row insert failed", extra={"table": self.writer.table, "row": record.row, "error": error})

    def _record_success(self, record: ValidatedRecord, result: CommitResult, persisted_id: int) -> None:
        result.success_count += 1
        result.persisted_ids.append(persisted_id)
        self.writer.on_success(record, persisted_id)

    def _commit_per_row(self, records: Sequence[ValidatedRecord], result: CommitResult) -> None:
        total = len(records)
        if self.detector is not None:
            self.detector.prime(key for key in map(self.writer.natural_key, records) if key)

        for record in records:
            if self._is_cancelled():
                result.cancelled = True
                logger.info("commit cancelled", extra={"processed": result.processed, "total": total})
                break

            self._commit_one(record, result)
            result.processed += 1
            self._report(result.processed, total)
            if result.processed % self.batch_size == 0:
                self._checkpoint(result, total)

    def _commit_one(self, record: ValidatedRecord, result: CommitResult) -> None:
        key = self.writer.natural_key(record)
        if key is not None and self.detector is not None and self.detector.is_duplicate(key):
            self._skip_duplicate(record, key, result)
            return

        try:
            persisted_id = self.sink.insert(self.writer.table, self.writer.build(record))
            self.sink.commit()
        except CommitError as exc:
            self._record_failure(record, result, str(exc))
            return

        self._record_success(record, result, persisted_id)
        if key is not None and self.detector is not None:
            self.detector.remember(key)

    def _skip_duplicate(self, record: ValidatedRecord, key: str, result: CommitResult) -> None:
        record.mark_duplicate()
        result.duplicate_count += 1
        result.issues.append(RowIssue(row=record.row, kind="duplicate", message="Already imported", value=key))

        values = self.writer.duplicate_values(record)
        if values is None:
            return
        try:
            self.sink.insert(self.writer.table, values)
            self.sink.commit()
        except CommitError as exc:
            logger.warning(
                "could not record duplicate row",
                extra={"table": self.writer.table, "row": record.row, "error": str(exc)},
            )

    def _commit_chunked(self, records: Sequence[ValidatedRecord], result: CommitResult) -> None:
        total = len(records)
        for start in range(0, total, self.batch_size):
            chunk = records[start : start + self.batch_size]
            built: list[ValidatedRecord] = []
            payloads: list[dict[str, object]] = []
            outcomes: list[tuple[ValidatedRecord, str | None]] = []

            for record in chunk:
                if self._is_cancelled():
                    result.cancelled = True
                    break
                try:
                    payloads.append(self.writer.build(record))
                    built.append(record)
                except CommitError as exc:
                    outcomes.append((record, str(exc)))

            row_results = self.sink.insert_many(self.writer.table, payloads) if payloads else []
            try:
                self.sink.commit()
            except CommitError as exc:
                row_results = [RowResult(ok=False, error=str(exc)) for _ in row_results]

            successes: dict[int, int] = {}
            for record, row_result in zip(built, row_results):
                if row_result.ok and row_result.id is not None:
                    successes[record.row] = row_result.id
                else:
                    outcomes.append((record, row_result.error or "insert failed"))
            failures = {record.row: error for record, error in outcomes}

            for record in chunk:
                if record.row in successes:
                    self._record_success(record, result, successes[record.row])
                elif record.row in failures:
                    self._record_failure(record, result, failures[record.row] or "insert failed")
                else:
                    continue
                result.processed += 1
                self._report(result.processed, total)

            if result.cancelled:
                logger.info("commit cancelled", extra={"processed": result.processed, "total": total})
                break
            self._checkpoint(result, total)
