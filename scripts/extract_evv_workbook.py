#!/usr/bin/env python3
"""Read the first sheet of an EVV export workbook into a projected frame."""

from __future__ import annotations

import argparse
import io
import logging
from pathlib import Path
from typing import BinaryIO, Union
from zipfile import BadZipFile

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger(__name__)

WorkbookSource = Union[bytes, bytearray, str, Path, BinaryIO]

BLANK = ""


class MalformedInput(ValueError):
    """The workbook cannot be read, or its first sheet holds no rows."""


def _open_source(source: WorkbookSource) -> BinaryIO:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(bytes(source))
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Input not found: {path}")
        return io.BytesIO(path.read_bytes())
    return source


def _is_blank_cell(value: object) -> bool:
    return value is None or (isinstance(value, str) and value == BLANK)


def _header_text(value: object) -> str:
    if _is_blank_cell(value):
        return BLANK
    return str(value).strip()


def read_workbook_rows(source: WorkbookSource) -> list[list[object]]:
    """Return the first sheet as a cell matrix.

    Row one is always kept as the header row. Data rows whose cells are all
    empty are dropped. Empty cells come back as ``""``; text such as
    ``"NA"`` or ``"NULL"`` is returned as written.
    """
    buffer = _open_source(source)
    try:
        workbook = load_workbook(buffer, data_only=True)
    except (BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as exc:
        raise MalformedInput(f"Unreadable workbook: {exc}") from exc

    try:
        if not workbook.worksheets:
            raise MalformedInput("No worksheet found in the file")
        worksheet = workbook.worksheets[0]
        if len(workbook.worksheets) > 1:
            logger.info(
                "Workbook has %s sheets; only '%s' is read",
                len(workbook.worksheets),
                worksheet.title,
            )
        cells = worksheet.iter_rows(min_row=1, min_col=1, values_only=True)
        rows = [list(row) for row in cells]
    finally:
        workbook.close()

    if not rows or all(_is_blank_cell(cell) for row in rows for cell in row):
        raise MalformedInput(f"Worksheet '{worksheet.title}' has no rows")

    header, body = rows[0], rows[1:]
    body = [row for row in body if not all(_is_blank_cell(cell) for cell in row)]
    return [[BLANK if cell is None else cell for cell in row] for row in [header, *body]]


def extract_columns(
    source: WorkbookSource, columns: list[str] | None = None
) -> pd.DataFrame:
    """Project the first sheet onto ``columns``.

    The first row is the header row. Requested names are matched exactly
    against the stripped header text; a requested column the file does not
    carry comes back as ``""`` in every row. With no columns requested the
    file's own headers are used in file order.
    """
    matrix = read_workbook_rows(source)
    header_cells, body = matrix[0], matrix[1:]

    column_index: dict[str, int] = {}
    for position, cell in enumerate(header_cells):
        name = _header_text(cell)
        if name:
            column_index[name] = position

    if columns:
        targets = list(columns)
    else:
        targets = list(dict.fromkeys(_header_text(c) for c in header_cells if _header_text(c)))

    missing = [name for name in targets if name not in column_index]
    if missing:
        logger.info("Columns absent from workbook, filled blank: %s", ", ".join(missing))

    records = [
        [row[column_index[name]] if name in column_index else BLANK for name in targets]
        for row in body
    ]

    frame = pd.DataFrame(records, columns=targets, dtype=object)
    logger.debug("Extracted %s rows x %s columns", len(frame), len(targets))
    return frame


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Print the projected rows of an EVV export workbook as CSV."
    )
    parser.add_argument("input", type=Path, help="Path to source xlsx file.")
    parser.add_argument(
        "--column",
        action="append",
        default=[],
        help="Column to keep (repeatable). Defaults to every column.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    frame = extract_columns(args.input, args.column)
    print(frame.to_csv(index=False), end="")


if __name__ == "__main__":
    main()
