import csv
import io
from collections.abc import Iterable, Sequence

from importledger.errors import ParseError
from importledger.schemas import MappedRow, ParsedTable, RawRow


def _decode(contents: bytes) -> str:
    try:
        return contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(f"file is not valid UTF-8 text: {exc}") from exc


def _is_blank(cells: Sequence[str]) -> bool:
    return all(not cell.strip() for cell in cells)


def parse_table(contents: bytes, *, has_header: bool = True) -> ParsedTable:
    text = _decode(contents)
    if not text.strip():
        raise ParseError("file is empty")

    # Row 1 is the first non-blank record; blank lines after it keep their slot.
    try:
        lines = [
            (number, cells)
            for number, cells in enumerate(csv.reader(io.StringIO(text)), start=1)
            if not _is_blank(cells)
        ]
    except csv.Error as exc:
        raise ParseError(f"file could not be read as delimited text: {exc}") from exc

    if not lines:
        raise ParseError("file is empty")

    if has_header:
        headers = [cell.strip() for cell in lines[0][1]]
        body = lines[1:]
    else:
        width = max(len(cells) for _, cells in lines)
        headers = [f"column_{index}" for index in range(1, width + 1)]
        body = lines

    first = lines[0][0]
    rows: list[RawRow] = []
    for number, cells in body:
        # Missing trailing cells read as empty; extra cells are dropped.
        padded = list(cells[: len(headers)]) + [""] * (len(headers) - len(cells))
        rows.append(RawRow(row=number - first + 1, cells=dict(zip(headers, padded))))
    return ParsedTable(headers=headers, rows=rows)


def _key(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(value.strip().lower() for value in values)


def is_example_row(row: MappedRow, key_columns: Sequence[str], examples: Iterable[dict[str, str]]) -> bool:
    candidate = _key(row.values.get(column, "") for column in key_columns)
    if not any(candidate):
        return False
    return any(candidate == _key(sample.get(column, "") for column in key_columns) for sample in examples)


def filter_example_rows(
    rows: Sequence[MappedRow],
    key_columns: Sequence[str],
    examples: Sequence[dict[str, str]],
) -> tuple[list[MappedRow], int]:
    """Drop rows copied verbatim from the downloadable template's sample data."""
    if not key_columns or not examples:
        return list(rows), 0

    kept = [row for row in rows if not is_example_row(row, key_columns, examples)]
    return kept, len(rows) - len(kept)
