#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from pipeline.queue import enqueue_migration, enqueue_reconcile, enqueue_task_migration


def main() -> None:
    parser = ArgumentParser(description="Enqueue a reconcile or migration run")
    parser.add_argument("kind", choices=["reconcile", "migrate"])
    parser.add_argument("--task-id", type=int, default=None, help="Migrate a single task")
    parser.add_argument("--limit", type=int, default=None, help="Batch size for migrate")
    parser.add_argument(
        "--no-migrations",
        action="store_true",
        help="Do not enqueue migrations for tasks a reconcile run completes",
    )
    args = parser.parse_args()

    if args.kind == "reconcile":
        result = enqueue_reconcile(not args.no_migrations)
    elif args.task_id is not None:
        result = enqueue_task_migration(args.task_id)
        print("[enqueue] task_id:", result["task_id"])
    else:
        result = enqueue_migration(args.limit)
    print(f"[enqueue] {args.kind} rq_id:", result["rq_id"])


if __name__ == "__main__":
    main()
