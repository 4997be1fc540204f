"""Assemble the browsable tabs, including the grouped investigation report."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Union

import pandas as pd

from evv_settings import CONFIRMED_COLUMN, INVESTIGATION_COLUMNS, TAB_TITLES
from reconcile_evv_visits import FLAG_REVIEW, canonical_text, sort_rows, to_units

logger = logging.getLogger(__name__)

BLANK = ""
PAYER = "payer"
MEDICAID = "medicaid"
GROUP_HEADER_KINDS = (PAYER, MEDICAID)

INVESTIGATION_SORT = [
    ("Payer Name", "nocase"),
    ("Medicaid ID", "string"),
]


@dataclass(frozen=True)
class DataRow:
    cells: tuple

    row_type = "data"

    def to_cells(self, width: int) -> list:
        return list(self.cells)


@dataclass(frozen=True)
class GroupHeader:
    """Marks the start of a payer or Medicaid ID block. Carries no data."""

    kind: str
    label: str

    def __post_init__(self) -> None:
        if self.kind not in GROUP_HEADER_KINDS:
            raise ValueError(f"Unknown group header kind: {self.kind!r}")

    @property
    def row_type(self) -> str:
        return self.kind

    def to_cells(self, width: int) -> list:
        return [self.label] + [BLANK] * max(width - 1, 0)


ReportLine = Union[DataRow, GroupHeader]


def _json_cell(value: object) -> object:
    if isinstance(value, (datetime, date)):
        return canonical_text(value)
    if isinstance(value, float) and pd.isna(value):
        return BLANK
    return value


@dataclass(frozen=True)
class Tab:
    id: str
    title: str
    headers: list[str]
    rows: list[ReportLine] = field(default_factory=list)

    @classmethod
    def from_frame(cls, tab_id: str, frame: pd.DataFrame) -> "Tab":
        rows = [DataRow(tuple(record)) for record in frame.itertuples(index=False, name=None)]
        return cls(id=tab_id, title=TAB_TITLES[tab_id], headers=list(frame.columns), rows=rows)

    @property
    def data_rows(self) -> list[DataRow]:
        return [row for row in self.rows if isinstance(row, DataRow)]

    def to_frame(self) -> pd.DataFrame:
        """Flatten to a cell matrix; header lines keep only their label."""
        width = len(self.headers)
        return pd.DataFrame(
            [row.to_cells(width) for row in self.rows], columns=self.headers, dtype=object
        )

    def to_records(self) -> list[dict]:
        records = []
        for row in self.rows:
            if isinstance(row, GroupHeader):
                records.append({"row_type": row.kind, "label": row.label})
            else:
                records.append(
                    {"row_type": row.row_type, "cells": [_json_cell(c) for c in row.cells]}
                )
        return records

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "headers": list(self.headers),
            "rows": self.to_records(),
        }


def select_investigation_rows(
    annotated: pd.DataFrame, admin_columns: list[str] | None = None
) -> pd.DataFrame:
    """Rows flagged for review with non-zero billable units, admin columns blank."""
    admin_columns = INVESTIGATION_COLUMNS if admin_columns is None else admin_columns

    flagged = annotated[CONFIRMED_COLUMN].eq(FLAG_REVIEW)
    billed = to_units(annotated["Billable Units"]).ne(0)
    scope = annotated[flagged & billed].copy()
    for column in admin_columns:
        scope[column] = BLANK
    return scope.reset_index(drop=True)


def payer_label(payer: str) -> str:
    return payer or "(No Payer Name)"


def medicaid_label(medicaid_id: str, first_name: str, last_name: str) -> str:
    label = f"Medicaid ID: {medicaid_id or '(blank)'}"
    member = " ".join(part for part in (first_name, last_name) if part)
    if member:
        label = f"{label} - {member}"
    return label


def build_investigation_lines(scope: pd.DataFrame) -> list[ReportLine]:
    """Interleave payer and Medicaid ID headers with the sorted data rows."""
    ordered = sort_rows(scope, INVESTIGATION_SORT)
    columns = list(ordered.columns)
    payer_at = columns.index("Payer Name")
    medicaid_at = columns.index("Medicaid ID")
    first_at = columns.index("Member First Name") if "Member First Name" in columns else None
    last_at = columns.index("Member Last Name") if "Member Last Name" in columns else None

    lines: list[ReportLine] = []
    current_payer = None
    current_medicaid = None
    for record in ordered.itertuples(index=False, name=None):
        payer = canonical_text(record[payer_at])
        medicaid_id = canonical_text(record[medicaid_at])

        if payer != current_payer:
            lines.append(GroupHeader(PAYER, payer_label(payer)))
            current_payer = payer
            current_medicaid = None

        if medicaid_id != current_medicaid:
            first = canonical_text(record[first_at]) if first_at is not None else BLANK
            last = canonical_text(record[last_at]) if last_at is not None else BLANK
            lines.append(GroupHeader(MEDICAID, medicaid_label(medicaid_id, first, last)))
            current_medicaid = medicaid_id

        lines.append(DataRow(tuple(record)))
    return lines


def build_investigation_tab(
    annotated: pd.DataFrame, admin_columns: list[str] | None = None
) -> Tab:
    scope = select_investigation_rows(annotated, admin_columns)
    lines = build_investigation_lines(scope)
    logger.info(
        "Investigation report: %s rows under %s group headers",
        len(scope),
        len(lines) - len(scope),
    )
    return Tab(
        id="investigation",
        title=TAB_TITLES["investigation"],
        headers=list(scope.columns),
        rows=lines,
    )
