from __future__ import annotations

import pytest

import pipeline.jobs as jobs
import pipeline.queue as queue
import pipeline.services as services
from pipeline.migrator import MigrationResult
from pipeline.reconciler import ReconcileReport, TaskOutcome


class _Session:
    closed = False

    def close(self) -> None:
        self.closed = True


class _Reconciler:
    def run_pass(self) -> ReconcileReport:
        report = ReconcileReport()
        report.record(
            TaskOutcome(
                task_id=3,
                success=True,
                previous_status="processing",
                new_status="completed",
                updated=True,
                reason="completed",
            )
        )
        return report


def test_reconcile_job_enqueues_migrations_for_completed(monkeypatch) -> None:
    session = _Session()
    enqueued = []
    monkeypatch.setattr(jobs, "SessionLocal", lambda: session)
    monkeypatch.setattr(jobs, "build_reconciler", lambda _session: _Reconciler())
    monkeypatch.setattr(
        queue,
        "enqueue_task_migration",
        lambda task_id: enqueued.append(task_id) or {"task_id": task_id, "rq_id": f"rq-{task_id}"},
    )

    result = jobs.reconcile_job()

    assert session.closed is True
    assert enqueued == [3]
    assert result["migration_jobs"] == ["rq-3"]
    assert result["updated"] == 1


def test_reconcile_job_can_skip_migrations(monkeypatch) -> None:
    monkeypatch.setattr(jobs, "SessionLocal", _Session)
    monkeypatch.setattr(jobs, "build_reconciler", lambda _session: _Reconciler())

    assert jobs.reconcile_job(enqueue_migrations=False)["migration_jobs"] == []


def test_migrate_job_summarises_batch(monkeypatch) -> None:
    class _Migrator:
        def migrate_all_pending(self, limit=None):
            return [
                MigrationResult(task_id=1, success=True, video_url="https://media/1.mp4"),
                MigrationResult(task_id=2, success=False, error="download failed"),
            ]

    monkeypatch.setattr(jobs, "SessionLocal", _Session)
    monkeypatch.setattr(jobs, "build_migrator", lambda _session: _Migrator())

    result = jobs.migrate_job(limit=5)

    assert result["selected"] == 2
    assert result["succeeded"] == 1
    assert result["results"][1]["error"] == "download failed"


def test_queue_timeouts_follow_env(monkeypatch) -> None:
    monkeypatch.setenv("RQ_MIGRATE_TIMEOUT", "1200")
    monkeypatch.delenv("RQ_JOB_TIMEOUT", raising=False)
    assert queue._timeout_seconds("migrate") == 1200
    assert queue._timeout_seconds("reconcile") == 120


@pytest.fixture
def fresh_object_storage():
    services.object_storage.cache_clear()
    yield
    services.object_storage.cache_clear()


def test_migrators_share_one_object_storage(monkeypatch, fresh_object_storage) -> None:
    monkeypatch.setenv("R2_ACCOUNT_ID", "acct")
    monkeypatch.setenv("R2_ACCESS_KEY_ID", "ak")
    monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "sk")
    monkeypatch.setenv("R2_PUBLIC_BASE_URL", "https://media.karavideo.test")

    first = services.build_migrator(_Session())
    second = services.build_migrator(_Session())

    assert first.storage is second.storage
    assert first.store is not second.store
