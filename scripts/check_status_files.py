"""
Dump what the copier sees in a folder of bot status files.

For each matching file prints the detected encoding, the parsed records and
the resulting account snapshot (or why the file was skipped).

Usage:
  python scripts/check_status_files.py
  python scripts/check_status_files.py --folder csv_data --timeout 5 --json
"""
from pathlib import Path
import sys
import json
import time
import argparse

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from src.bridge.status_lines import parse_status_text
from src.bridge.status_reader import read_status_file
from src.copier.config import DEFAULT_STATUS_GLOB
from src.copier.errors import CopierError, FileUnavailable
from src.copier.reconciler import snapshot_from_parsed


def check_file(path: Path, timeout: float, now: float) -> dict:
    try:
        result = read_status_file(path)
    except CopierError as e:
        return {"file": str(path), "error": str(e)}
    if isinstance(result, FileUnavailable):
        return {"file": str(path), "unavailable": result.reason}

    report = {"file": str(path), "encoding": result.encoding, "digest": result.digest[:12]}
    try:
        parsed = parse_status_text(result.text)
    except CopierError as e:
        report["error"] = str(e)
        return report

    snap = snapshot_from_parsed(parsed, source_path=path, now=now, activity_timeout=timeout, digest=result.digest)
    if snap is None:
        report["skipped"] = "no TYPE line"
        return report
    report["account"] = snap.to_dict()
    return report


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--folder", type=str, default="csv_data", help="Folder holding the status files")
    parser.add_argument("--glob", type=str, default=DEFAULT_STATUS_GLOB, help="File pattern to match")
    parser.add_argument("--timeout", type=float, default=5.0, help="Activity timeout in seconds")
    parser.add_argument("--json", action="store_true", help="Print one JSON object per file")
    args = parser.parse_args()

    folder = Path(args.folder)
    if not folder.is_absolute():
        folder = project_root / folder
    files = sorted(p for p in folder.rglob(args.glob) if p.is_file()) if folder.exists() else []
    if not files:
        print(f"No status files matching {args.glob} in {folder}")
        return 1

    now = time.time()
    problems = 0
    for path in files:
        report = check_file(path, args.timeout, now)
        if "error" in report or "unavailable" in report:
            problems += 1
        if args.json:
            print(json.dumps(report, default=str))
            continue
        print(f"== {report['file']}")
        for key in ("encoding", "unavailable", "error", "skipped"):
            if key in report:
                print(f"   {key}: {report[key]}")
        account = report.get("account")
        if account:
            print(f"   {account['role']} {account['platform']} {account['account_id']} "
                  f"status={account['status']} enabled={account['enabled']} config_role={account['config_role']}")
    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(main())
