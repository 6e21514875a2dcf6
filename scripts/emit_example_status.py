"""
Emit example bot status files to simulate the bots -> copier status flow.

Writes one file per account into the status folder, using the same layout
and encoding the bots use (UTF-16LE with BOM for MT5, UTF-8 otherwise).

Run from project root:
    python scripts/emit_example_status.py
    python scripts/emit_example_status.py --role SLAVE --account 11223344 --master 52381082
    python scripts/emit_example_status.py --platform MT5 --stale 30
"""
from pathlib import Path
import sys
import time
import argparse

# Ensure the project root is on sys.path so we can run this script directly
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from src.bridge.status_lines import format_config_line
from src.bridge.status_reader import platform_encoding


def build_status_text(role: str, platform: str, account: str, timestamp: int, enabled: bool = True, master: str = "NULL", name: str = "NULL", translate: str = "") -> str:
    switch = "ENABLED" if enabled else "DISABLED"
    if role == "MASTER":
        details = [switch, name, "NULL", "NULL", "NULL", "NULL", "NULL", "NULL"]
    elif role == "SLAVE":
        details = [switch, "1.0", "NULL", "FALSE", master, "NULL", "NULL", "NULL"]
    else:
        details = ["DISABLED", "1.0", "NULL", "FALSE", "NULL", "NULL", "NULL", "NULL"]

    lines = [
        f"[TYPE] [{role}] [{platform}] [{account}]",
        f"[STATUS] [ONLINE] [{timestamp}]",
        format_config_line(role, details),
    ]
    if translate:
        lines.append(f"[TRANSLATE] [{translate}] [NULL]")
    return "\n".join(lines) + "\n"


def write_status_file(folder: Path, platform: str, account: str, text: str) -> Path:
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / f"IPTRADECSV2{platform}_{account}.csv"
    codec = platform_encoding(platform)
    data = text.encode(codec)
    if codec == "utf-16-le":
        data = b"\xff\xfe" + data
    path.write_bytes(data)
    return path


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit example status file for the copier")
    parser.add_argument("--out", type=str, default=None, help="Optional output folder (relative to project root)")
    parser.add_argument("--role", type=str, default="PENDING", choices=["PENDING", "MASTER", "SLAVE"], help="Account role (default: PENDING)")
    parser.add_argument("--platform", type=str, default="MT4", help="Platform token (default: MT4)")
    parser.add_argument("--account", type=str, default="250062001", help="Account id (default: 250062001)")
    parser.add_argument("--master", type=str, default="NULL", help="Master id for a SLAVE account")
    parser.add_argument("--name", type=str, default="NULL", help="Display name for a MASTER account")
    parser.add_argument("--disabled", action="store_true", help="Write the CONFIG switch as DISABLED")
    parser.add_argument("--translate", type=str, default="", help="Symbol translation FROM:TO")
    parser.add_argument("--stale", type=int, default=0, help="Seconds to backdate the STATUS timestamp")
    args = parser.parse_args()

    out_folder = project_root / (args.out if args.out else "csv_data")
    platform = args.platform.upper()

    text = build_status_text(
        args.role,
        platform,
        args.account,
        int(time.time()) - args.stale,
        enabled=not args.disabled,
        master=args.master,
        name=args.name,
        translate=args.translate,
    )
    path = write_status_file(out_folder, platform, args.account, text)

    print(f"Wrote status file ({platform_encoding(platform)}): {path}")
    print("--- file content ---")
    print(text, end="")
    print("--- end content ---")


if __name__ == "__main__":
    main()
