#!/usr/bin/env python3
"""Watch the uploads folder and re-run the EVV reconciliation on new exports."""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import shutil
import time
from datetime import datetime
from pathlib import Path

from evv_settings import EvvSettings, configure_logging, load_settings
from extract_evv_workbook import MalformedInput
from prepare_evv_tabs import ProcessingCancelled, build_outputs, source_fingerprint

logger = logging.getLogger(__name__)

UPLOAD_MARKERS = {
    "accepted": "accepted",
    "claim": "claim",
}


def load_state(path: Path) -> dict:
    """Last processed upload pair; empty when nothing has run or the file is unreadable."""
    if not path.exists():
        return {}
    try:
        state = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring unreadable watch state %s: %s", path, exc)
        return {}
    return state if isinstance(state, dict) else {}


def save_state(
    path: Path,
    pair: dict[str, dict],
    snapshot_dir: Path,
    output_dir: Path,
    manifest: dict,
) -> dict:
    state = {
        "pair": pair,
        "run": {
            "processed_at": datetime.now().isoformat(timespec="seconds"),
            "snapshot_dir": str(snapshot_dir),
            "output_dir": str(output_dir),
        },
        "tabs": {tab_id: entry["data_rows"] for tab_id, entry in manifest["tabs"].items()},
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(state, ensure_ascii=False, indent=2), encoding="utf-8")
    return state


def make_snapshot_dir(history_root: Path) -> Path:
    """history/<date>/<HHMMSS>, suffixed _01, _02 ... when a run lands in the same second."""
    now = datetime.now()
    day_dir = history_root / f"{now:%Y-%m-%d}"
    day_dir.mkdir(parents=True, exist_ok=True)

    for seq in itertools.count():
        name = f"{now:%H%M%S}" if seq == 0 else f"{now:%H%M%S}_{seq:02d}"
        candidate = day_dir / name
        try:
            candidate.mkdir()
        except FileExistsError:
            continue
        return candidate


def copy_latest_snapshot(output_dir: Path, snapshot_dir: Path, inputs: dict[str, Path]) -> None:
    if output_dir.exists():
        shutil.copytree(output_dir, snapshot_dir / "latest", dirs_exist_ok=False)

    for path in inputs.values():
        shutil.copy2(path, snapshot_dir / path.name)

    metadata = {
        "created_at": datetime.now().isoformat(timespec="seconds"),
        "sources": {name: source_fingerprint(path) for name, path in inputs.items()},
    }
    (snapshot_dir / "snapshot_meta.json").write_text(
        json.dumps(metadata, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def latest_uploaded_xlsx(uploads_dir: Path, marker: str) -> Path | None:
    if not uploads_dir.exists():
        return None
    files = [
        p
        for p in uploads_dir.iterdir()
        if p.is_file()
        and p.suffix.lower() == ".xlsx"
        and not p.name.startswith("~$")
        and marker in p.name.lower()
    ]
    if not files:
        return None
    return max(files, key=lambda p: p.stat().st_mtime_ns)


def find_upload_pair(uploads_dir: Path) -> dict[str, Path] | None:
    """Newest accepted-visits and claim-search uploads, or None if one is missing."""
    pair = {}
    for name, marker in UPLOAD_MARKERS.items():
        latest = latest_uploaded_xlsx(uploads_dir, marker)
        if latest is None:
            return None
        pair[name] = latest
    if pair["accepted"] == pair["claim"]:
        return None
    return pair


def process_once(
    uploads_dir: Path,
    output_dir: Path,
    history_root: Path,
    state_file: Path,
    settings: EvvSettings | None = None,
) -> bool:
    uploads_dir.mkdir(parents=True, exist_ok=True)
    pair = find_upload_pair(uploads_dir)
    if pair is None:
        return False

    state = load_state(state_file)
    current = {name: source_fingerprint(path) for name, path in pair.items()}
    if state.get("pair") == current:
        return False

    try:
        manifest = build_outputs(pair["accepted"], pair["claim"], output_dir, settings)
    except (MalformedInput, ProcessingCancelled) as exc:
        logger.error("Processing failed for %s: %s", ", ".join(p.name for p in pair.values()), exc)
        return False

    snapshot_dir = make_snapshot_dir(history_root)
    copy_latest_snapshot(output_dir, snapshot_dir, pair)

    save_state(state_file, current, snapshot_dir, output_dir, manifest)

    print(f"Updated latest files in: {output_dir}")
    print(f"Saved dated snapshot in: {snapshot_dir}")
    return True


def parse_args() -> argparse.Namespace:
    root = Path(__file__).resolve().parents[1]
    parser = argparse.ArgumentParser(
        description="Watch for EVV export uploads and create dated reconciliation snapshots."
    )
    parser.add_argument(
        "--uploads-dir",
        type=Path,
        default=root / "Data" / "uploads",
        help="Directory to watch for accepted-visits and claim-search xlsx files.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=root / "Data" / "processed" / "latest",
        help="Directory for the latest generated tabs.",
    )
    parser.add_argument(
        "--history-root",
        type=Path,
        default=root / "Data" / "processed" / "history",
        help="Directory to store dated snapshots.",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=root / "Data" / "processed" / ".watch_state.json",
        help="State file path for change tracking.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional JSON config file overriding column layouts.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=10,
        help="Polling interval in seconds.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one check and exit.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args.config)
    configure_logging(level=settings.log_level)
    while True:
        changed = process_once(
            uploads_dir=args.uploads_dir,
            output_dir=args.output_dir,
            history_root=args.history_root,
            state_file=args.state_file,
            settings=settings,
        )
        if not changed:
            print("No changes detected.")
        if args.once:
            return
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
