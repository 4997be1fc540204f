import json
import sys
import threading

import pandas as pd
import pytest
from openpyxl import load_workbook

import prepare_evv_tabs
from build_investigation_report import DataRow, GroupHeader
from evv_settings import DERIVED_COLUMNS, INVESTIGATION_COLUMNS, EvvSettings
from extract_evv_workbook import MalformedInput
from prepare_evv_tabs import (
    ProcessingCancelled,
    build_outputs,
    process_files,
    write_tab_outputs,
)


def test_tabs_are_returned_in_order(scenario_files):
    accepted, claim = scenario_files(claim_units=5)

    tabs = process_files(accepted, claim)

    assert [tab.id for tab in tabs] == ["accepted", "claim", "investigation"]
    assert [tab.title for tab in tabs] == [
        "Accepted_Visits",
        "Claim_Search",
        "CLAIMS FOR INVESTIGATION",
    ]
    assert tabs[0].headers == EvvSettings().accepted_columns + DERIVED_COLUMNS
    assert tabs[1].headers == EvvSettings().claim_columns
    assert tabs[2].headers == tabs[0].headers + INVESTIGATION_COLUMNS


def test_matching_claim_units_leave_investigation_empty(scenario_files):
    accepted, claim = scenario_files(claim_units=5)

    accepted_tab, _, investigation_tab = process_files(accepted, claim)

    frame = accepted_tab.to_frame()
    assert frame["Visit ID"].tolist() == ["V1", "V2"]
    assert frame["Billable Units Total"].tolist() == ["", 5]
    assert frame["Prior Claim"].tolist() == ["", 5]
    assert frame["Possible"].tolist() == ["NO", "NO"]
    assert frame["Confirmed"].tolist() == ["", ""]
    assert investigation_tab.rows == []


def test_short_claim_units_send_group_to_investigation(scenario_files):
    accepted, claim = scenario_files(claim_units=3)

    accepted_tab, _, investigation_tab = process_files(accepted, claim)

    frame = accepted_tab.to_frame()
    assert frame["Possible"].tolist() == ["YES", "YES"]
    assert frame["Confirmed"].tolist() == ["Review", "Review"]

    lines = investigation_tab.rows
    assert [type(line) for line in lines] == [GroupHeader, GroupHeader, DataRow, DataRow]
    assert lines[0].kind == "payer"
    assert lines[1].kind == "medicaid"
    assert [line.cells[0] for line in lines[2:]] == ["V1", "V2"]


def test_na_modifier_stays_its_own_group(
    accepted_frame, claim_frame, accepted_row, claim_row, workbook_bytes
):
    accepted = workbook_bytes(
        accepted_frame([accepted_row("V1", 2, modifiers="NA"), accepted_row("V2", 3)])
    )
    claim = workbook_bytes(claim_frame([claim_row("V2", 3)]))

    accepted_tab, _, investigation_tab = process_files(accepted, claim)

    frame = accepted_tab.to_frame()
    assert frame["Modifiers"].tolist() == ["NA", ""]
    assert frame["Billable Units Total"].tolist() == [2, 3]
    assert frame["Possible"].tolist() == ["YES", "NO"]
    assert [row.cells[0] for row in investigation_tab.data_rows] == ["V1"]


def test_claim_tab_keeps_file_order(accepted_frame, claim_frame, accepted_row, claim_row, workbook_bytes):
    accepted = workbook_bytes(accepted_frame([accepted_row("V1", 1)]))
    claim = workbook_bytes(claim_frame([claim_row("Z9", 1), claim_row("A1", 1)]))

    _, claim_tab, _ = process_files(accepted, claim)

    assert claim_tab.to_frame()["Visit ID"].tolist() == ["Z9", "A1"]


def test_malformed_claim_file_aborts_run(scenario_files):
    accepted, _ = scenario_files(claim_units=5)

    with pytest.raises(MalformedInput):
        process_files(accepted, b"not a workbook")


def test_cancel_after_extraction(scenario_files):
    accepted, claim = scenario_files(claim_units=5)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ProcessingCancelled):
        process_files(accepted, claim, cancel_event=cancel)


def test_failed_run_can_be_retriggered(scenario_files):
    accepted, claim = scenario_files(claim_units=3)

    with pytest.raises(MalformedInput):
        process_files(accepted, b"broken")
    tabs = process_files(accepted, claim)

    assert len(tabs[2].data_rows) == 2


def test_write_outputs(tmp_path, scenario_files):
    accepted, claim = scenario_files(claim_units=3)
    accepted_path = tmp_path / "EVV_Accepted_Visits.xlsx"
    claim_path = tmp_path / "EVV_Claim_Search.xlsx"
    accepted_path.write_bytes(accepted)
    claim_path.write_bytes(claim)
    output_dir = tmp_path / "latest"

    manifest = build_outputs(accepted_path, claim_path, output_dir)

    for tab_id in ("accepted", "claim", "investigation"):
        assert (output_dir / f"{tab_id}.csv").exists()
    assert manifest["tabs"]["accepted"]["review_rows"] == 2
    assert manifest["tabs"]["investigation"]["data_rows"] == 2
    assert manifest["tabs"]["investigation"]["rows"] == 4
    assert manifest["sources"]["claim"]["file_name"] == "EVV_Claim_Search.xlsx"

    saved = json.loads((output_dir / "manifest.json").read_text(encoding="utf-8"))
    assert saved["tabs"] == manifest["tabs"]

    tabs = json.loads((output_dir / "tabs.json").read_text(encoding="utf-8"))
    assert [line["row_type"] for line in tabs[2]["rows"]] == ["payer", "medicaid", "data", "data"]

    investigation_csv = pd.read_csv(output_dir / "investigation.csv", dtype=str, keep_default_na=False)
    assert investigation_csv["Visit ID"].tolist() == ["Payer One", "Medicaid ID: M1 - A B", "V1", "V2"]

    workbook = load_workbook(output_dir / "evv_reconciliation.xlsx")
    assert workbook.sheetnames == ["Accepted_Visits", "Claim_Search", "CLAIMS FOR INVESTIGATION"]
    sheet = workbook["CLAIMS FOR INVESTIGATION"]
    assert sheet["A2"].value == "Payer One"
    assert sheet["A2"].font.bold
    assert sheet["A2"].fill.fgColor.rgb.endswith("DCFCE7")
    assert sheet["A3"].fill.fgColor.rgb.endswith("FEFCE8")
    assert len(sheet.merged_cells.ranges) == 2


def test_output_dir_is_replaced_each_run(tmp_path, scenario_files):
    accepted, claim = scenario_files(claim_units=5)
    output_dir = tmp_path / "latest"
    output_dir.mkdir()
    (output_dir / "stale.csv").write_text("old", encoding="utf-8")

    write_tab_outputs(process_files(accepted, claim), output_dir)

    assert not (output_dir / "stale.csv").exists()
    assert (output_dir / "manifest.json").exists()


def test_missing_input_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        build_outputs(tmp_path / "a.xlsx", tmp_path / "b.xlsx", tmp_path / "out")


def test_main_exits_on_malformed_input(tmp_path, monkeypatch, capsys):
    accepted_path = tmp_path / "accepted.xlsx"
    claim_path = tmp_path / "claim.xlsx"
    accepted_path.write_bytes(b"junk")
    claim_path.write_bytes(b"junk")
    monkeypatch.delenv("EVV_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "prepare_evv_tabs.py",
            "--accepted",
            str(accepted_path),
            "--claim",
            str(claim_path),
            "--output-dir",
            str(tmp_path / "out"),
        ],
    )

    with pytest.raises(SystemExit) as excinfo:
        prepare_evv_tabs.main()

    assert excinfo.value.code == 1
    assert "Error processing files" in capsys.readouterr().err
    assert not (tmp_path / "out").exists()
