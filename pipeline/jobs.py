from __future__ import annotations

import logging

from rq.job import Job as RQJob

from db.session import SessionLocal
from pipeline.services import build_migrator, build_reconciler

logger = logging.getLogger(__name__)


def rq_on_failure(job: RQJob, connection, exc_type, exc_value, traceback) -> None:  # type: ignore[no-untyped-def]
    logger.error("rq job %s (%s) failed: %s", job.id, job.func_name, exc_value)


def rq_on_success(job: RQJob, connection, result, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
    logger.info("rq job %s (%s) finished", job.id, job.func_name)


def reconcile_job(enqueue_migrations: bool = True) -> dict:
    session = SessionLocal()
    try:
        report = build_reconciler(session).run_pass()
    finally:
        session.close()

    migration_jobs: list[str] = []
    if enqueue_migrations and report.completed_task_ids:
        from pipeline.queue import enqueue_task_migration

        for task_id in report.completed_task_ids:
            migration_jobs.append(enqueue_task_migration(task_id)["rq_id"])

    result = report.as_dict()
    result["migration_jobs"] = migration_jobs
    return result


def migrate_job(limit: int | None = None) -> dict:
    session = SessionLocal()
    try:
        results = build_migrator(session).migrate_all_pending(limit)
    finally:
        session.close()
    return {
        "selected": len(results),
        "succeeded": sum(1 for item in results if item.success),
        "results": [item.as_dict() for item in results],
    }


def migrate_task_job(task_id: int) -> dict:
    session = SessionLocal()
    try:
        return build_migrator(session).migrate(task_id).as_dict()
    finally:
        session.close()
