"""Sort, group and cross-reference accepted EVV visits against prior claims.

The accepted-visits frame is ordered by payer, Medicaid ID and visit date,
then partitioned into billing-unit groups (same member, procedure, modifiers
and visit date). Each group's billable units are totalled onto its last row,
prior claim units are looked up by Visit ID, and the two sums decide whether
the group may have been billed already.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from types import MappingProxyType
from typing import Mapping

import pandas as pd

from evv_settings import (
    CONFIRMED_COLUMN,
    GROUP_KEY_COLUMNS,
    OTHER_COLUMN,
    POSSIBLE_COLUMN,
    PRIOR_CLAIM_COLUMN,
    TOTAL_COLUMN,
)

logger = logging.getLogger(__name__)

BLANK = ""
KEY_SEPARATOR = "\x1f"
EXCEL_EPOCH = pd.Timestamp("1899-12-30")

SORT_KINDS = ("nocase", "string", "date")
CANONICAL_SORT = [
    ("Payer Name", "nocase"),
    ("Medicaid ID", "string"),
    ("Visit Date", "date"),
]

FLAG_NO = "NO"
FLAG_YES = "YES"
FLAG_REVIEW = "Review"


def _is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == BLANK
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def canonical_text(value: object) -> str:
    """Text form of a cell used for keys and lookups."""
    if _is_blank(value):
        return BLANK
    if isinstance(value, datetime):
        if (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0):
            return value.strftime("%Y-%m-%d")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def display_number(value: float) -> int | float:
    if float(value).is_integer():
        return int(value)
    return float(value)


def to_units(series: pd.Series) -> pd.Series:
    """Numeric units per cell; blanks and unparseable text count as zero."""
    text = series.map(canonical_text).astype(str).str.replace(",", "", regex=False)
    numeric = pd.to_numeric(text.where(text.ne(BLANK)), errors="coerce")
    return numeric.fillna(0.0).astype(float)


def parse_visit_date(value: object) -> pd.Timestamp:
    """Parse a date cell; returns NaT when the cell is blank or unparseable.

    Date-typed cells keep their instant. Numbers are read as Excel serial
    days. Text goes through the pandas parser.
    """
    if _is_blank(value):
        return pd.NaT
    try:
        if isinstance(value, (datetime, date)):
            stamp = pd.Timestamp(value)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            stamp = EXCEL_EPOCH + pd.to_timedelta(value, unit="D")
        else:
            stamp = pd.Timestamp(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        logger.debug("Unparseable visit date: %r", value)
        return pd.NaT
    # offsets are folded to naive UTC
    if stamp.tzinfo is not None:
        stamp = stamp.tz_convert(None)
    return stamp


def _sort_key(series: pd.Series, kind: str) -> pd.Series:
    if kind == "nocase":
        return series.map(canonical_text).astype(str).str.casefold()
    if kind == "string":
        return series.map(canonical_text).astype(str)
    if kind == "date":
        return pd.to_datetime(series.map(parse_visit_date))
    raise ValueError(f"Unknown sort kind: {kind!r} (expected one of {SORT_KINDS})")


def sort_rows(frame: pd.DataFrame, keys: list[tuple[str, str]]) -> pd.DataFrame:
    """Stable multi-key sort.

    ``keys`` is an ordered list of ``(column, kind)``. Rows that tie on every
    key keep their original relative order. Dates that fail to parse sort
    after every parseable date under the same preceding keys; their order
    relative to each other is their input order.
    """
    frame = frame.reset_index(drop=True)
    order = pd.DataFrame(index=frame.index)
    names = []
    for position, (column, kind) in enumerate(keys):
        name = f"key_{position}"
        order[name] = _sort_key(frame[column], kind)
        names.append(name)
    order["position"] = range(len(frame))
    names.append("position")

    ranked = order.sort_values(names, na_position="last")
    return frame.iloc[ranked["position"].to_numpy()].reset_index(drop=True)


def sort_accepted_visits(frame: pd.DataFrame) -> pd.DataFrame:
    return sort_rows(frame, CANONICAL_SORT)


def build_group_keys(frame: pd.DataFrame) -> pd.Series:
    parts = [frame[column].map(canonical_text).astype(str) for column in GROUP_KEY_COLUMNS]
    keys = parts[0].str.cat(parts[1:], sep=KEY_SEPARATOR)
    return keys.rename("group_key")


@dataclass(frozen=True)
class GroupAggregates:
    billable_totals: Mapping[str, float]
    last_positions: Mapping[str, int]

    def is_last(self, group_keys: pd.Series) -> pd.Series:
        positions = pd.Series(range(len(group_keys)), index=group_keys.index)
        return positions.eq(group_keys.map(dict(self.last_positions)))

    def total_cells(self, group_keys: pd.Series) -> pd.Series:
        """Group total on the last row of each group, blank elsewhere."""
        totals = group_keys.map(lambda key: display_number(self.billable_totals[key]))
        return totals.astype(object).where(self.is_last(group_keys), BLANK)


def aggregate_groups(frame: pd.DataFrame, group_keys: pd.Series) -> GroupAggregates:
    """Sum Billable Units per group and record each group's last position.

    Groups are keyed, not located: when the same key shows up in two
    separate blocks, both blocks are summed together and only the final
    block's last row is treated as the group's last row.
    """
    units = to_units(frame["Billable Units"])
    totals = units.groupby(group_keys, sort=False).sum()
    last_positions = {key: position for position, key in enumerate(group_keys)}

    runs = group_keys.ne(group_keys.shift()).cumsum()
    blocks = runs.groupby(group_keys, sort=False).nunique()
    split = blocks[blocks > 1]
    if not split.empty:
        logger.warning(
            "%s group key(s) appear in non-contiguous blocks after sorting; "
            "totals land on the final block only",
            len(split),
        )

    logger.info("Aggregated %s rows into %s groups", len(group_keys), len(totals))
    return GroupAggregates(
        billable_totals=MappingProxyType({k: float(v) for k, v in totals.items()}),
        last_positions=MappingProxyType(last_positions),
    )


def build_claim_lookup(claim: pd.DataFrame) -> Mapping[str, object]:
    """Visit ID -> Claim Units. Later rows win on repeated Visit IDs."""
    lookup: dict[str, object] = {}
    repeated = 0
    for visit_id, units in zip(claim["Visit ID"], claim["Claim Units"]):
        key = canonical_text(visit_id)
        if not key:
            continue
        if key in lookup:
            repeated += 1
        lookup[key] = units
    if repeated:
        logger.warning("%s repeated Visit ID(s) in claim search; last row kept", repeated)
    return MappingProxyType(lookup)


@dataclass(frozen=True)
class PriorClaims:
    cells: pd.Series
    resolved: pd.Series
    sums: Mapping[str, float]


def resolve_prior_claims(
    frame: pd.DataFrame, lookup: Mapping[str, object], group_keys: pd.Series
) -> PriorClaims:
    visit_ids = frame["Visit ID"].map(canonical_text)
    resolved = visit_ids.map(lambda visit_id: visit_id in lookup).astype(bool)
    cells = visit_ids.map(lambda visit_id: lookup.get(visit_id, BLANK)).astype(object)
    units = to_units(cells.where(resolved, BLANK))
    sums = units.groupby(group_keys, sort=False).sum()

    logger.info(
        "Resolved %s of %s visits against prior claims", int(resolved.sum()), len(frame)
    )
    return PriorClaims(
        cells=cells,
        resolved=resolved,
        sums=MappingProxyType({k: float(v) for k, v in sums.items()}),
    )


def derive_flags(
    group_keys: pd.Series, aggregates: GroupAggregates, prior_claims: PriorClaims
) -> pd.DataFrame:
    """Possible per group, copied to each member row, then Confirmed per row."""
    group_possible = {
        key: FLAG_NO if total == prior_claims.sums.get(key, 0.0) else FLAG_YES
        for key, total in aggregates.billable_totals.items()
    }
    possible = group_keys.map(group_possible).astype(object).fillna(BLANK)
    confirmed = possible.map(
        lambda flag: FLAG_REVIEW if flag not in (BLANK, FLAG_NO) else BLANK
    )
    return pd.DataFrame(
        {POSSIBLE_COLUMN: possible, CONFIRMED_COLUMN: confirmed},
        index=group_keys.index,
        dtype=object,
    )


def annotate_accepted_visits(accepted: pd.DataFrame, claim: pd.DataFrame) -> pd.DataFrame:
    ordered = sort_accepted_visits(accepted)
    group_keys = build_group_keys(ordered)
    aggregates = aggregate_groups(ordered, group_keys)
    prior_claims = resolve_prior_claims(ordered, build_claim_lookup(claim), group_keys)
    flags = derive_flags(group_keys, aggregates, prior_claims)

    out = ordered.copy()
    out[TOTAL_COLUMN] = aggregates.total_cells(group_keys)
    out[PRIOR_CLAIM_COLUMN] = prior_claims.cells
    out[POSSIBLE_COLUMN] = flags[POSSIBLE_COLUMN]
    out[CONFIRMED_COLUMN] = flags[CONFIRMED_COLUMN]
    out[OTHER_COLUMN] = BLANK
    return out
