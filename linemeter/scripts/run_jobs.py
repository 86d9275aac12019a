"""
Run Billing Jobs
================

Entry point for the external scheduler (cron, k8s CronJob). The scheduler
guarantees single-flight per job.

Usage:
    python -m linemeter.scripts.run_jobs billing-cycle
    python -m linemeter.scripts.run_jobs expire-trials --now 2026-03-01T00:00:00Z
    python -m linemeter.scripts.run_jobs all

Exit status is 1 when any period or trial failed to process.
"""

import argparse
import json
import sys
from datetime import datetime
from typing import List, Optional

from linemeter.config import settings
from linemeter.core.database import init_db
from linemeter.core.structured_logging import setup_logging
from linemeter.utils.dates import to_utc

JOBS = ("billing-cycle", "expire-trials", "all")


def _parse_now(value: str) -> datetime:
    try:
        return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run linemeter billing jobs")
    parser.add_argument("job", choices=JOBS, help="Which job to run")
    parser.add_argument(
        "--now", type=_parse_now, default=None,
        help="Evaluation time (ISO-8601, UTC). Defaults to the current time.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(log_dir=settings.log_dir, log_file=settings.log_file, log_level=settings.log_level)
    init_db()

    from linemeter.services.billing_jobs import run_billing_cycle, run_trial_expiry

    now = to_utc(args.now)
    results = []
    if args.job in ("billing-cycle", "all"):
        results.append(run_billing_cycle(now))
    if args.job in ("expire-trials", "all"):
        results.append(run_trial_expiry(now))

    print(json.dumps(results, indent=2, default=str))

    failed = any(
        r.get("periods_failed") or r.get("invoice_failures") or r.get("failed")
        for r in results
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
