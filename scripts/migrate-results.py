#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import logging

from db.session import SessionLocal
from pipeline.errors import TaskRequestError
from pipeline.services import build_migrator


def main() -> None:
    parser = ArgumentParser(description="Copy completed results into owned object storage")
    parser.add_argument("--task-id", type=int, default=None, help="Migrate a single task")
    parser.add_argument("--limit", type=int, default=None, help="Batch size (default MIGRATE_BATCH_SIZE)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    session = SessionLocal()
    try:
        migrator = build_migrator(session)
        if args.task_id is not None:
            try:
                results = [migrator.migrate(args.task_id)]
            except TaskRequestError as exc:
                raise SystemExit(f"[migrate] task {args.task_id}: {exc.message}") from exc
        else:
            results = migrator.migrate_all_pending(args.limit)
    finally:
        session.close()

    for result in results:
        if result.success:
            print(f"[migrate] task={result.task_id} ok video={result.video_url}")
        else:
            print(f"[migrate] task={result.task_id} failed error={result.error}")
    succeeded = sum(1 for result in results if result.success)
    print(f"[migrate] selected={len(results)} succeeded={succeeded} failed={len(results) - succeeded}")


if __name__ == "__main__":
    main()
