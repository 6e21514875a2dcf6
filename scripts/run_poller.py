"""
Run the account status poller loop or a single pass.

Usage:
  python scripts/run_poller.py --folder csv_data --once --api-key xxx
  python scripts/run_poller.py --folder csv_data --poll 1.0 --api-key xxx
"""
from pathlib import Path
from dataclasses import replace
import sys
import json
import logging
import argparse

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

from src.copier.config import load_settings
from src.copier.poller import AccountPoller


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser()
    parser.add_argument("--folder", type=str, default=None, help="Folder holding the status files (default: COPIER_STATUS_DIR)")
    parser.add_argument("--once", action="store_true", help="Poll once, print the view and exit")
    parser.add_argument("--poll", type=float, default=None, help="Poll interval in seconds for the loop")
    parser.add_argument("--api-key", type=str, default="local", help="API key whose view is printed")
    args = parser.parse_args()

    settings = load_settings()
    if args.folder:
        settings = replace(settings, status_dir=project_root / args.folder)
    if args.poll:
        settings = replace(settings, poll_interval=args.poll)

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    poller = AccountPoller(settings)
    poller.activate(args.api_key)
    if args.once:
        poller.poll_once()
        print(json.dumps(poller.get_view(args.api_key).to_dict(), indent=2, default=str))
        poller.close()
        return

    poller.on_change(args.api_key, lambda event: print(json.dumps(event.diff.to_dict())))
    try:
        poller.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        poller.close()


if __name__ == "__main__":
    main()
