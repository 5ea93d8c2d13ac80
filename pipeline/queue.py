import os

from redis import Redis
from rq import Queue

from pipeline.jobs import (
    migrate_job,
    migrate_task_job,
    reconcile_job,
    rq_on_failure,
    rq_on_success,
)


def _redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def _timeout_seconds(kind: str) -> int:
    if kind == "migrate":
        return int(os.getenv("RQ_MIGRATE_TIMEOUT", "900"))
    return int(os.getenv("RQ_JOB_TIMEOUT", "120"))


def get_redis() -> Redis:
    return Redis.from_url(_redis_url())


def get_queue(name: str = "default") -> Queue:
    return Queue(name, connection=get_redis())


def enqueue_reconcile(enqueue_migrations: bool = True) -> dict:
    rq_job = get_queue().enqueue(
        reconcile_job,
        enqueue_migrations,
        job_timeout=_timeout_seconds("reconcile"),
        on_failure=rq_on_failure,
        on_success=rq_on_success,
    )
    return {"rq_id": rq_job.id}


def enqueue_migration(limit: int | None = None) -> dict:
    rq_job = get_queue().enqueue(
        migrate_job,
        limit,
        job_timeout=_timeout_seconds("migrate"),
        on_failure=rq_on_failure,
        on_success=rq_on_success,
    )
    return {"rq_id": rq_job.id}


def enqueue_task_migration(task_id: int) -> dict:
    rq_job = get_queue().enqueue(
        migrate_task_job,
        task_id,
        job_timeout=_timeout_seconds("migrate"),
        on_failure=rq_on_failure,
        on_success=rq_on_success,
    )
    return {"task_id": task_id, "rq_id": rq_job.id}
