"""
Verify the HMAC signatures of the operator audit log.

Exits 0 when every line verifies, 1 when any line is unsigned or tampered
with, or when no key is available.

Usage:
  python scripts/verify_audit_log.py
  python scripts/verify_audit_log.py --audit-log audit.log --key secret --verbose
"""
from pathlib import Path
from typing import List, Optional
import sys
import os
import argparse

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

from src.copier.logging_utils import read_audit_file, verify_audit_stream


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    p = argparse.ArgumentParser()
    p.add_argument("--audit-log", type=str, default=None, help="Audit log to check (default: COPIER_AUDIT_LOG or audit.log)")
    p.add_argument("--key", type=str, default=None, help="HMAC key (default: COPIER_HMAC_KEY)")
    p.add_argument("--verbose", action="store_true", help="Print every failing line")
    args = p.parse_args(argv)

    key = args.key or os.environ.get("COPIER_HMAC_KEY")
    if not key:
        print("COPIER_HMAC_KEY not set; cannot verify the audit log")
        return 1

    path = Path(args.audit_log or os.environ.get("COPIER_AUDIT_LOG") or project_root / "audit.log")
    if not path.exists():
        print(f"No audit log found at {path}")
        return 0

    total, verified, failures = verify_audit_stream(read_audit_file(path), key)
    print(f"Audit verify summary: total={total}, verified={verified}, failed={len(failures)}")
    if args.verbose:
        for f in failures:
            event = f.entry.get("event") or f.entry.get("raw", "")
            print(f"[audit][line {f.index + 1}] {f.reason} event={event}")
    return 0 if not failures else 1


if __name__ == "__main__":
    sys.exit(main())
