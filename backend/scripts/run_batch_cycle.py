"""Run one Gemini batch orchestrator cycle outside the web server.

Advances every in-flight batch job by at most one stage and prints the run
summary as JSON. Intended for a cron entry or for nudging stuck jobs by hand.

Usage:
    uv run python scripts/run_batch_cycle.py [--db-url URL] [--force]
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

_BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_BACKEND_DIR))

load_dotenv(_BACKEND_DIR.parent / ".env")

_pre = argparse.ArgumentParser(add_help=False)
_pre.add_argument("--db-url", default=os.environ.get("DATABASE_URL", ""))
_pre_args, _ = _pre.parse_known_args()
if _pre_args.db_url:
    os.environ["DATABASE_URL"] = _pre_args.db_url

from ballotbatch.config import load_settings  # noqa: E402
from ballotbatch.db import create_tables, new_session  # noqa: E402
from ballotbatch.services.orchestrator import run_batch_cycle  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one Gemini batch orchestrator cycle.")
    parser.add_argument("--db-url", default=os.environ.get("DATABASE_URL", ""), help="Database connection URL")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even when GEMINI_ENABLED is off (an API key is still required).",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

    settings = load_settings()
    if args.force:
        settings = settings.model_copy(update={"gemini_enabled": True})

    create_tables()
    db = new_session()
    try:
        response = run_batch_cycle(db, settings)
    finally:
        db.close()

    print(response.model_dump_json(indent=2, exclude_none=True))
    return 0 if response.ok or response.skipped else 1


if __name__ == "__main__":
    sys.exit(main())
