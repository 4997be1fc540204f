"""Column layouts and run settings for the EVV visit reconciliation scripts."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

logger = logging.getLogger(__name__)


ACCEPTED_COLUMNS = [
    "Visit ID",
    "Provider Legal Name",
    "Medicaid ID",
    "Member First Name",
    "Member Last Name",
    "Payer Name",
    "HCPCS Code",
    "Modifiers",
    "Visit Date",
    "EVV Bill Hours",
    "Billable Units",
]

CLAIM_COLUMNS = [
    "Visit ID",
    "Claim Detail From Date",
    "Medicaid ID",
    "Member Last Name",
    "HCPCS",
    "Modifiers",
    "Claim Units",
    "NPI/API",
    "Service Provider ID",
    "Payer Name",
]

TOTAL_COLUMN = "Billable Units Total"
PRIOR_CLAIM_COLUMN = "Prior Claim"
POSSIBLE_COLUMN = "Possible"
CONFIRMED_COLUMN = "Confirmed"
OTHER_COLUMN = "Other"

DERIVED_COLUMNS = [
    TOTAL_COLUMN,
    PRIOR_CLAIM_COLUMN,
    POSSIBLE_COLUMN,
    CONFIRMED_COLUMN,
    OTHER_COLUMN,
]

INVESTIGATION_COLUMNS = [
    "Assigned To",
    "Date Assigned",
    "Review Status",
    "Reviewer Notes",
    "Corrective Action",
    "Corrected Units",
    "Date Resolved",
    "Resolved By",
]

GROUP_KEY_COLUMNS = [
    "Medicaid ID",
    "Member First Name",
    "Member Last Name",
    "HCPCS Code",
    "Modifiers",
    "Visit Date",
]

TAB_TITLES = {
    "accepted": "Accepted_Visits",
    "claim": "Claim_Search",
    "investigation": "CLAIMS FOR INVESTIGATION",
}

CONFIG_FILE_NAME = "evv_config.json"

ENV_MAPPING = {
    "EVV_LOG_LEVEL": "log_level",
}

# Columns the reconciliation cannot run without; a config file may extend the
# projections but never drop these.
REQUIRED_ACCEPTED = [
    "Visit ID",
    "Payer Name",
    "Billable Units",
    *GROUP_KEY_COLUMNS,
]
REQUIRED_CLAIM = ["Visit ID", "Claim Units"]


@dataclass(frozen=True)
class EvvSettings:
    accepted_columns: list[str] = field(default_factory=lambda: list(ACCEPTED_COLUMNS))
    claim_columns: list[str] = field(default_factory=lambda: list(CLAIM_COLUMNS))
    investigation_columns: list[str] = field(
        default_factory=lambda: list(INVESTIGATION_COLUMNS)
    )
    log_level: str = "INFO"
    config_file: str | None = None


def _ensure_required(columns: list[str], required: list[str]) -> list[str]:
    out = list(columns)
    for column in required:
        if column not in out:
            out.append(column)
    return out


def _read_config_file(path: Path) -> dict:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in config file %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.error("Config file %s must hold a JSON object", path)
        return {}
    logger.info("Loaded configuration from: %s", path)
    return payload


def load_settings(config_file: Path | str | None = None) -> EvvSettings:
    """Build settings from defaults, an optional JSON file and the environment.

    Priority, highest first: environment variables, config file, defaults.
    Without an explicit path, ``EVV_CONFIG`` and then ``evv_config.json`` in
    the working directory are tried.
    """
    settings = EvvSettings()

    if config_file is None:
        env_path = os.getenv("EVV_CONFIG")
        if env_path:
            config_file = env_path
        elif (Path.cwd() / CONFIG_FILE_NAME).exists():
            config_file = Path.cwd() / CONFIG_FILE_NAME

    if config_file is not None:
        path = Path(config_file)
        payload = _read_config_file(path)
        known = {
            key: value
            for key, value in payload.items()
            if key in EvvSettings.__dataclass_fields__ and key != "config_file"
        }
        unknown = sorted(set(payload) - set(known))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        settings = replace(settings, config_file=str(path), **known)

    for env_var, key in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is not None:
            settings = replace(settings, **{key: value})

    return replace(
        settings,
        accepted_columns=_ensure_required(settings.accepted_columns, REQUIRED_ACCEPTED),
        claim_columns=_ensure_required(settings.claim_columns, REQUIRED_CLAIM),
        log_level=str(settings.log_level).upper(),
    )


def configure_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure console logging with minimal formatting."""
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format="%(levelname)s %(name)s: %(message)s")
