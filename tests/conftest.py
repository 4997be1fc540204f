"""Shared fixtures: accepted/claim frames and in-memory xlsx workbooks."""

import io

import pandas as pd
import pytest

from evv_settings import ACCEPTED_COLUMNS, CLAIM_COLUMNS


def _accepted_row(
    visit_id,
    units,
    medicaid="M1",
    first="A",
    last="B",
    payer="Payer One",
    hcpcs="99213",
    modifiers="",
    visit_date="2024-01-01",
):
    return {
        "Visit ID": visit_id,
        "Provider Legal Name": "Home Care LLC",
        "Medicaid ID": medicaid,
        "Member First Name": first,
        "Member Last Name": last,
        "Payer Name": payer,
        "HCPCS Code": hcpcs,
        "Modifiers": modifiers,
        "Visit Date": visit_date,
        "EVV Bill Hours": 1,
        "Billable Units": units,
    }


def _claim_row(visit_id, units, medicaid="M1", payer="Payer One"):
    return {
        "Visit ID": visit_id,
        "Claim Detail From Date": "2024-01-01",
        "Medicaid ID": medicaid,
        "Member Last Name": "B",
        "HCPCS": "99213",
        "Modifiers": "",
        "Claim Units": units,
        "NPI/API": "1234567890",
        "Service Provider ID": "SP-1",
        "Payer Name": payer,
    }


@pytest.fixture
def accepted_row():
    return _accepted_row


@pytest.fixture
def claim_row():
    return _claim_row


@pytest.fixture
def accepted_frame():
    def build(rows):
        return pd.DataFrame(rows, columns=ACCEPTED_COLUMNS, dtype=object)

    return build


@pytest.fixture
def claim_frame():
    def build(rows):
        return pd.DataFrame(rows, columns=CLAIM_COLUMNS, dtype=object)

    return build


@pytest.fixture
def workbook_bytes():
    """Serialize a frame to xlsx bytes, header row first."""

    def build(frame, sheet_name="Sheet1"):
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            frame.to_excel(writer, sheet_name=sheet_name, index=False)
        return buffer.getvalue()

    return build


@pytest.fixture
def scenario_files(accepted_frame, claim_frame, workbook_bytes):
    """Two accepted rows in one group (2 + 3 units); one claim row for the second."""

    def build(claim_units):
        accepted = accepted_frame([_accepted_row("V1", 2), _accepted_row("V2", 3)])
        claim = claim_frame([_claim_row("V2", claim_units)])
        return workbook_bytes(accepted), workbook_bytes(claim)

    return build
