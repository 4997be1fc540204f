import json

import pytest

from evv_settings import ACCEPTED_COLUMNS, CLAIM_COLUMNS, INVESTIGATION_COLUMNS, load_settings


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("EVV_CONFIG", raising=False)
    monkeypatch.delenv("EVV_LOG_LEVEL", raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_config():
    settings = load_settings()

    assert settings.accepted_columns == ACCEPTED_COLUMNS
    assert settings.claim_columns == CLAIM_COLUMNS
    assert settings.investigation_columns == INVESTIGATION_COLUMNS
    assert settings.log_level == "INFO"
    assert settings.config_file is None


def test_config_file_overrides_defaults(tmp_path):
    path = tmp_path / "custom.json"
    path.write_text(
        json.dumps({"investigation_columns": ["Reviewer"], "log_level": "debug", "colour": "red"}),
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.investigation_columns == ["Reviewer"]
    assert settings.log_level == "DEBUG"
    assert settings.config_file == str(path)


def test_config_is_discovered_in_working_directory(tmp_path):
    (tmp_path / "evv_config.json").write_text(
        json.dumps({"investigation_columns": []}), encoding="utf-8"
    )

    assert load_settings().investigation_columns == []


def test_environment_beats_config_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"log_level": "DEBUG"}), encoding="utf-8")
    monkeypatch.setenv("EVV_CONFIG", str(path))
    monkeypatch.setenv("EVV_LOG_LEVEL", "warning")

    settings = load_settings()

    assert settings.config_file == str(path)
    assert settings.log_level == "WARNING"


def test_invalid_json_falls_back_to_defaults(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    settings = load_settings(path)

    assert settings.accepted_columns == ACCEPTED_COLUMNS


def test_required_columns_survive_a_narrow_projection(tmp_path):
    path = tmp_path / "narrow.json"
    path.write_text(
        json.dumps({"accepted_columns": ["Provider Legal Name"], "claim_columns": []}),
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.accepted_columns[0] == "Provider Legal Name"
    for column in ("Visit ID", "Payer Name", "Billable Units", "Visit Date", "Medicaid ID"):
        assert column in settings.accepted_columns
    assert settings.claim_columns == ["Visit ID", "Claim Units"]
