from collections.abc import Sequence
import re

from importledger.definitions import FieldSpec
from importledger.errors import MappingError, MissingRequiredFieldError
from importledger.schemas import ColumnMapping, MappedRow, RawRow


def normalize_header(header: str) -> str:
    return re.sub(r"\s+", "_", header.strip().lower())


def auto_detect(headers: Sequence[str], fields: Sequence[FieldSpec]) -> ColumnMapping:
    """Suggest a source column for each logical field.

    A header equal to the field name (after normalisation) wins outright.
    Remaining fields take the first still-unclaimed header, in file order,
    that contains one of their keywords. The result is only a suggestion
    and must be confirmed before anything is committed.
    """
    mapping: ColumnMapping = {spec.name: None for spec in fields}
    claimed: set[str] = set()

    normalized = {header: normalize_header(header) for header in headers}
    for spec in fields:
        for header in headers:
            if header not in claimed and normalized[header] == spec.name:
                mapping[spec.name] = header
                claimed.add(header)
                break

    for spec in fields:
        if mapping[spec.name] is not None:
            continue
        for header in headers:
            if header in claimed:
                continue
            lowered = header.lower()
            if any(keyword in lowered for keyword in spec.keywords):
                mapping[spec.name] = header
                claimed.add(header)
                break

    return mapping


def validate_mapping(
    mapping: ColumnMapping,
    required_fields: Sequence[str],
    headers: Sequence[str] | None = None,
) -> None:
    missing = [name for name in required_fields if not mapping.get(name)]
    if missing:
        raise MissingRequiredFieldError(missing)

    if headers is not None:
        unknown = sorted({column for column in mapping.values() if column and column not in headers})
        if unknown:
            raise MappingError(f"mapped columns are not in the file: {', '.join(unknown)}")


def apply_mapping(
    mapping: ColumnMapping,
    rows: Sequence[RawRow],
    required_fields: Sequence[str],
) -> list[MappedRow]:
    mapped_rows: list[MappedRow] = []
    for row in rows:
        values = {
            name: (row.cells.get(column, "") if column else "").strip()
            for name, column in mapping.items()
        }
        # Blank trailing lines survive CSV parsing but carry nothing to import.
        if all(not values.get(name) for name in required_fields if mapping.get(name)):
            continue
        mapped_rows.append(MappedRow(row=row.row, values=values))
    return mapped_rows
