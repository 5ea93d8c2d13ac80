#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import logging

from db.session import SessionLocal
from pipeline.services import build_reconciler


def main() -> None:
    parser = ArgumentParser(description="Run one status reconciliation pass (cron entry point)")
    parser.add_argument("--verbose", action="store_true", help="Print one line per task")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    session = SessionLocal()
    try:
        report = build_reconciler(session).run_pass()
    finally:
        session.close()

    if args.verbose:
        for outcome in report.results:
            print(
                f"[task] id={outcome.task_id} {outcome.previous_status} -> {outcome.new_status} "
                f"updated={outcome.updated} reason={outcome.reason}"
            )
    print(
        f"[reconcile] processed={report.processed} updated={report.updated} "
        f"failed={report.failed} skipped={report.skipped} completed={len(report.completed_task_ids)}"
    )


if __name__ == "__main__":
    main()
