"""Copy completed results from provider hosting into owned object storage.

A row is claimed by flipping ``r2_status`` to ``uploading`` with a
conditional update, so two concurrent runs never upload the same task. On
any failure the row is marked ``failed`` and ``result_url`` keeps pointing
at the provider, which the next batch pass retries. A claim left in
``uploading`` longer than ``claim_timeout`` (a worker died mid-upload) is
reclaimable by the next run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import os
from pathlib import PurePosixPath
from typing import Any, Protocol
from urllib.parse import urlparse

from db.models import VideoTaskDefinition, VideoTaskStatus
from pipeline.errors import MigrationNotAllowedError, TaskNotFoundError
from pipeline.store import TaskStore, as_utc
from providers.base import UnifiedStatus

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPES = {"mp4": "video/mp4", "mov": "video/quicktime", "webm": "video/webm"}
IMAGE_CONTENT_TYPES = {"jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png", "webp": "image/webp"}


class ObjectStorage(Protocol):
    def put_from_url(self, source_url: str, key: str, content_type: str) -> str: ...


@dataclass(frozen=True)
class MigratorConfig:
    batch_size: int = 10
    # Longer than the RQ migrate job timeout, so a live upload is never stolen.
    claim_timeout: timedelta = timedelta(minutes=30)


def load_migrator_config() -> MigratorConfig:
    return MigratorConfig(
        batch_size=int(os.getenv("MIGRATE_BATCH_SIZE", "10")),
        claim_timeout=timedelta(seconds=int(os.getenv("MIGRATE_CLAIM_TIMEOUT_S", "1800"))),
    )


@dataclass
class MigrationResult:
    task_id: int
    success: bool
    video_url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "video_url": self.video_url,
            "thumbnail_url": self.thumbnail_url,
            "error": self.error,
        }


def build_storage_key(user_id: str, task_id: int, role: str, ext: str) -> str:
    return f"users/{user_id}/{role}s/{task_id}.{ext}"


def _extension(url: str, allowed: dict[str, str], default: str) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")
    return suffix if suffix in allowed else default


def _is_eligible(row: VideoTaskStatus, stale_before: datetime) -> bool:
    if row.status != UnifiedStatus.COMPLETED.value or not row.result_url:
        return False
    if row.r2_status == "uploading":
        return as_utc(row.updated_at) < stale_before
    return row.r2_status in (None, "pending", "failed")


class ResultMigrator:
    def __init__(
        self,
        store: TaskStore,
        storage: ObjectStorage,
        config: MigratorConfig | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.config = config or MigratorConfig()

    def migrate(self, task_id: int) -> MigrationResult:
        """Migrate one task; raises when the task is missing or not eligible."""
        found = self.store.get_status_with_definition(task_id)
        if found is None:
            raise TaskNotFoundError()
        status_row, definition = found
        if not _is_eligible(status_row, self._stale_before()):
            raise MigrationNotAllowedError(
                message=(
                    f"Task {task_id} is not eligible for migration "
                    f"(status={status_row.status}, r2_status={status_row.r2_status})"
                )
            )
        return self._migrate_row(status_row, definition)

    def migrate_all_pending(self, limit: int | None = None) -> list[MigrationResult]:
        rows = self.store.list_migratable(limit or self.config.batch_size, stale_before=self._stale_before())
        results = [self._migrate_row(status_row, definition) for status_row, definition in rows]
        succeeded = sum(1 for result in results if result.success)
        logger.info("migration batch: %s selected, %s succeeded, %s failed", len(results), succeeded, len(results) - succeeded)
        return results

    def _stale_before(self) -> datetime:
        return self.store.clock() - self.config.claim_timeout

    def _migrate_row(self, status_row: VideoTaskStatus, definition: VideoTaskDefinition) -> MigrationResult:
        task_id = definition.id
        if not self.store.claim_migration(status_row, stale_before=self._stale_before()):
            logger.info("task %s already claimed for migration", task_id)
            return MigrationResult(task_id=task_id, success=False, error="already_claimed")

        source_url = status_row.result_url
        try:
            ext = _extension(source_url, VIDEO_CONTENT_TYPES, "mp4")
            video_url = self.storage.put_from_url(
                source_url,
                build_storage_key(definition.user_id, task_id, "video", ext),
                VIDEO_CONTENT_TYPES[ext],
            )
        except Exception as exc:
            logger.error("migration of task %s failed: %s", task_id, exc)
            self.store.fail_migration(status_row)
            return MigrationResult(task_id=task_id, success=False, error=str(exc))

        thumbnail_url = self._migrate_thumbnail(status_row, definition)
        if not self.store.finish_migration(status_row, result_url=video_url, thumbnail_url=thumbnail_url):
            logger.warning("task %s lost its migration claim before the URL rewrite", task_id)
            return MigrationResult(task_id=task_id, success=False, error="claim_lost")
        logger.info("task %s migrated to %s", task_id, video_url)
        return MigrationResult(
            task_id=task_id,
            success=True,
            video_url=video_url,
            thumbnail_url=thumbnail_url,
        )

    def _migrate_thumbnail(self, status_row: VideoTaskStatus, definition: VideoTaskDefinition) -> str | None:
        source_url = status_row.thumbnail_url
        if not source_url:
            return None
        try:
            ext = _extension(source_url, IMAGE_CONTENT_TYPES, "jpg")
            return self.storage.put_from_url(
                source_url,
                build_storage_key(definition.user_id, definition.id, "thumbnail", ext),
                IMAGE_CONTENT_TYPES[ext],
            )
        except Exception as exc:
            # The provider thumbnail stays in place.
            logger.warning("thumbnail migration for task %s failed: %s", definition.id, exc)
            return source_url
