#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
from datetime import timedelta

from sqlalchemy import delete

from db.models import UserFavorite, VideoTaskDefinition
from db.session import SessionLocal
from pipeline.store import TaskStore


def main() -> None:
    parser = ArgumentParser(description="List or delete task definitions whose dispatch never produced a status")
    parser.add_argument("--older-min", type=int, default=60)
    parser.add_argument("--delete", action="store_true", help="Delete the orphaned definitions")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        orphans = TaskStore(session).list_orphans(timedelta(minutes=args.older_min))
        for definition in orphans:
            print(
                f"[orphan] id={definition.id} user={definition.user_id} type={definition.task_type} "
                f"created_at={definition.created_at.isoformat()}"
            )
        if args.delete and orphans:
            ids = [definition.id for definition in orphans]
            session.execute(delete(UserFavorite).where(UserFavorite.task_id.in_(ids)))
            session.execute(delete(VideoTaskDefinition).where(VideoTaskDefinition.id.in_(ids)))
            session.commit()
            print(f"[cleanup] deleted {len(ids)} orphaned definition(s)")
        else:
            print(f"[cleanup] found {len(orphans)} orphaned definition(s)")
    finally:
        session.close()


if __name__ == "__main__":
    main()
