"""Run one invite cleanup sweep outside Celery.

Usage:
    python backend/scripts/run_cleanup.py
    python backend/scripts/run_cleanup.py --now 2026-01-01T00:00:00+00:00

Same code path as the scheduled task: terminal invites past their retention
and closed rate-limit windows are deleted in one transaction.
"""
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

# Ensure backend/ is on sys.path when run from the project root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tenantlink.db.session import SessionLocal  # noqa: E402
from tenantlink.services.cleanup import run_cleanup  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete expired/exhausted/revoked invites past retention.")
    parser.add_argument("--now", default=None, help="ISO-8601 timestamp to sweep as of (default: current UTC time)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")

    now = datetime.fromisoformat(args.now) if args.now else None

    db = SessionLocal()
    try:
        result = run_cleanup(db, now=now)
    except Exception:
        logging.getLogger("tenantlink.cleanup").exception("Cleanup run failed")
        return 1
    finally:
        db.close()

    print(json.dumps(result.as_dict()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
