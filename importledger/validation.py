from collections.abc import Sequence
from datetime import date
import logging

from importledger.definitions import ImportDefinition
from importledger.rules import ValidationContext
from importledger.schemas import ErrorSummary, MappedRow, StudentRef, ValidatedRecord, ValidationError


logger = logging.getLogger(__name__)


def validate_record(row: MappedRow, definition: ImportDefinition, context: ValidationContext) -> ValidatedRecord:
    values: dict[str, object] = {}
    errors: list[ValidationError] = []

    for spec in definition.fields:
        raw = row.values.get(spec.name, "").strip()
        if not raw:
            if spec.required:
                errors.append(ValidationError(row.row, spec.name, f"{spec.label} is required"))
            values[spec.name] = None
            continue

        value: object = raw
        for rule in spec.rules:
            result = rule(value, context)
            if result.message is not None:
                errors.append(ValidationError(row.row, spec.name, result.message, raw))
                value = None
                break
            value = result.value
        values[spec.name] = value

    return ValidatedRecord(row=row.row, raw=dict(row.values), values=values, errors=errors)


def _key_part(record: ValidatedRecord, name: str) -> str:
    value = record.values.get(name)
    if isinstance(value, StudentRef):
        return value.admission_number.upper()
    if isinstance(value, date):
        return value.isoformat()
    return record.raw.get(name, "").strip().upper()


def _flag_repeated_keys(records: Sequence[ValidatedRecord], definition: ImportDefinition) -> None:
    unique_key = definition.unique_key
    if unique_key is None:
        return

    seen: set[tuple[str, ...]] = set()
    for record in records:
        parts = tuple(_key_part(record, name) for name in unique_key.fields)
        if not all(parts):
            continue
        if parts in seen:
            record.errors.append(
                ValidationError(
                    record.row,
                    unique_key.field,
                    unique_key.message,
                    " / ".join(record.raw.get(name, "") for name in unique_key.fields),
                )
            )
            continue
        seen.add(parts)


def validate_records(
    rows: Sequence[MappedRow],
    definition: ImportDefinition,
    context: ValidationContext,
) -> list[ValidatedRecord]:
    records = [validate_record(row, definition, context) for row in rows]
    _flag_repeated_keys(records, definition)

    invalid = sum(1 for record in records if not record.is_valid)
    logger.info(
        "validated import rows",
        extra={"import_type": definition.import_type, "rows": len(records), "invalid_rows": invalid},
    )
    return records


def collect_errors(records: Sequence[ValidatedRecord]) -> list[ValidationError]:
    return [error for record in records for error in record.errors]


def summarize_errors(messages: Sequence[str], limit: int = 10) -> ErrorSummary:
    shown = list(messages[:limit])
    return ErrorSummary(total=len(messages), messages=shown, remaining=len(messages) - len(shown))
