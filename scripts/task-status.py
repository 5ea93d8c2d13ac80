#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from sqlalchemy import desc, func, select

from db.models import VideoTaskStatus
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Show recent video task statuses")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--summary", action="store_true")
    parser.add_argument("--failed", action="store_true", help="Show failed tasks with their error message")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        if args.summary:
            rows = session.execute(
                select(VideoTaskStatus.status, func.count()).group_by(VideoTaskStatus.status)
            ).all()
            for status, count in rows:
                print(f"[summary] {status}: {count}")
            rows = session.execute(
                select(VideoTaskStatus.r2_status, func.count()).group_by(VideoTaskStatus.r2_status)
            ).all()
            for r2_status, count in rows:
                print(f"[summary] r2 {r2_status or 'unset'}: {count}")
            return
        stmt = select(VideoTaskStatus)
        if args.failed:
            stmt = stmt.where(VideoTaskStatus.status == "failed")
        stmt = stmt.order_by(desc(VideoTaskStatus.updated_at)).limit(args.limit)
        for row in session.execute(stmt).scalars().all():
            print(
                f"[task] id={row.task_id} external={row.external_task_id} status={row.status} "
                f"r2={row.r2_status} updated_at={row.updated_at.isoformat()}"
            )
            if args.failed and row.error_message:
                print(f"[task] error={row.error_message}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
