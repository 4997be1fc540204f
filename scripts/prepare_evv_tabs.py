#!/usr/bin/env python3
"""Join EVV accepted visits with the claim search and write the review tabs."""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import shutil
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path

import pandas as pd
from openpyxl.styles import Font, PatternFill

from build_investigation_report import MEDICAID, PAYER, GroupHeader, Tab, build_investigation_tab
from evv_settings import (
    CONFIRMED_COLUMN,
    POSSIBLE_COLUMN,
    EvvSettings,
    configure_logging,
    load_settings,
)
from extract_evv_workbook import MalformedInput, WorkbookSource, extract_columns
from reconcile_evv_visits import FLAG_REVIEW, FLAG_YES, annotate_accepted_visits

logger = logging.getLogger(__name__)

HEADER_FILL = PatternFill("solid", fgColor="1E3A8A")
HEADER_FONT = Font(bold=True, color="FFFFFF")
GROUP_STYLES = {
    PAYER: (PatternFill("solid", fgColor="DCFCE7"), Font(bold=True, color="166534")),
    MEDICAID: (PatternFill("solid", fgColor="FEFCE8"), Font(bold=True, color="854D0E")),
}


class ProcessingCancelled(RuntimeError):
    """The run was cancelled between file extraction and reconciliation."""


def extract_inputs(
    accepted_source: WorkbookSource,
    claim_source: WorkbookSource,
    settings: EvvSettings,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="evv-extract") as pool:
        accepted_future = pool.submit(
            extract_columns, accepted_source, settings.accepted_columns
        )
        claim_future = pool.submit(extract_columns, claim_source, settings.claim_columns)
        accepted = accepted_future.result()
        claim = claim_future.result()

    logger.info("Extracted %s accepted visits and %s claim rows", len(accepted), len(claim))
    return accepted, claim


def process_files(
    accepted_source: WorkbookSource,
    claim_source: WorkbookSource,
    settings: EvvSettings | None = None,
    cancel_event: threading.Event | None = None,
) -> list[Tab]:
    """Run one reconciliation from scratch and return the three tabs.

    Either extraction failing aborts the run. ``cancel_event`` is checked once,
    after both files are parsed and before the sequential stages start.
    """
    settings = settings or EvvSettings()
    accepted, claim = extract_inputs(accepted_source, claim_source, settings)

    if cancel_event is not None and cancel_event.is_set():
        raise ProcessingCancelled("Processing cancelled after file extraction")

    annotated = annotate_accepted_visits(accepted, claim)
    return [
        Tab.from_frame("accepted", annotated),
        Tab.from_frame("claim", claim),
        build_investigation_tab(annotated, settings.investigation_columns),
    ]


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def source_fingerprint(path: Path) -> dict:
    stat = path.stat()
    return {
        "file_name": path.name,
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
        "sha256": file_sha256(path),
    }


def summarize_tabs(tabs: list[Tab]) -> dict:
    summary = {}
    for tab in tabs:
        entry = {
            "title": tab.title,
            "rows": len(tab.rows),
            "data_rows": len(tab.data_rows),
            "columns": list(tab.headers),
        }
        if tab.id == "accepted":
            frame = tab.to_frame()
            entry["possible_yes_rows"] = int(frame[POSSIBLE_COLUMN].eq(FLAG_YES).sum())
            entry["review_rows"] = int(frame[CONFIRMED_COLUMN].eq(FLAG_REVIEW).sum())
        summary[tab.id] = entry
    return summary


def _sheet_name(title: str) -> str:
    cleaned = "".join("_" if ch in "[]:*?/\\" else ch for ch in title)
    return cleaned[:31]


def _style_sheet(worksheet, tab: Tab) -> None:
    width = len(tab.headers)
    for cell in worksheet[1]:
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT

    for offset, row in enumerate(tab.rows):
        if not isinstance(row, GroupHeader):
            continue
        excel_row = offset + 2
        fill, font = GROUP_STYLES[row.kind]
        for column in range(1, width + 1):
            cell = worksheet.cell(row=excel_row, column=column)
            cell.fill = fill
            cell.font = font
        if width > 1:
            worksheet.merge_cells(
                start_row=excel_row, start_column=1, end_row=excel_row, end_column=width
            )


def write_tab_outputs(
    tabs: list[Tab], output_dir: Path, sources: dict[str, Path] | None = None
) -> dict:
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    csv_files = {}
    for tab in tabs:
        csv_file = output_dir / f"{tab.id}.csv"
        tab.to_frame().to_csv(csv_file, index=False, encoding="utf-8")
        csv_files[tab.id] = str(csv_file)

    excel_file = output_dir / "evv_reconciliation.xlsx"
    with pd.ExcelWriter(excel_file, engine="openpyxl") as writer:
        for tab in tabs:
            sheet_name = _sheet_name(tab.title)
            tab.to_frame().to_excel(writer, sheet_name=sheet_name, index=False)
            _style_sheet(writer.sheets[sheet_name], tab)

    tabs_file = output_dir / "tabs.json"
    tabs_file.write_text(
        json.dumps([tab.to_dict() for tab in tabs], ensure_ascii=False, indent=2, default=str),
        encoding="utf-8",
    )

    manifest = {
        "generated_at": datetime.now().isoformat(timespec="seconds"),
        "sources": {
            name: source_fingerprint(path) for name, path in (sources or {}).items()
        },
        "tabs": summarize_tabs(tabs),
        "outputs": {
            "csv_files": csv_files,
            "excel_file": str(excel_file),
            "tabs_file": str(tabs_file),
        },
    }
    manifest_file = output_dir / "manifest.json"
    manifest_file.write_text(
        json.dumps(manifest, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    manifest["outputs"]["manifest_file"] = str(manifest_file)
    return manifest


def build_outputs(
    accepted_path: Path,
    claim_path: Path,
    output_dir: Path,
    settings: EvvSettings | None = None,
) -> dict:
    for path in (accepted_path, claim_path):
        if not path.exists():
            raise FileNotFoundError(f"Input not found: {path}")

    tabs = process_files(accepted_path, claim_path, settings=settings)
    return write_tab_outputs(
        tabs,
        output_dir,
        sources={"accepted": accepted_path, "claim": claim_path},
    )


def parse_args() -> argparse.Namespace:
    root = Path(__file__).resolve().parents[1]
    parser = argparse.ArgumentParser(
        description="Reconcile EVV accepted visits against the claim search export."
    )
    parser.add_argument(
        "--accepted",
        type=Path,
        default=root / "Data" / "EVV_Accepted_Visits.xlsx",
        help="Path to the EVV_Accepted_Visits xlsx file.",
    )
    parser.add_argument(
        "--claim",
        type=Path,
        default=root / "Data" / "EVV_Claim_Search.xlsx",
        help="Path to the EVV_Claim_Search xlsx file.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=root / "Data" / "processed" / "latest",
        help="Directory for the generated tabs (replaced on every run).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional JSON config file overriding column layouts.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress generated-file logs.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args.config)
    configure_logging(args.verbose, settings.log_level)

    try:
        manifest = build_outputs(args.accepted, args.claim, args.output_dir, settings)
    except (MalformedInput, ProcessingCancelled, FileNotFoundError) as exc:
        print(f"Error processing files: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    if args.quiet:
        return

    print("Generated EVV reconciliation tabs:")
    for entry in manifest["tabs"].values():
        print(f"- {entry['title']}: {entry['data_rows']} rows")
    for key, path in manifest["outputs"].items():
        if isinstance(path, dict):
            for name, file_path in path.items():
                print(f"- {name}: {file_path}")
        else:
            print(f"- {key}: {path}")


if __name__ == "__main__":
    main()
