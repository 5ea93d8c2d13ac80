from __future__ import annotations

from collections.abc import Callable, Collection
from datetime import UTC, datetime, timedelta
import logging
import time
from typing import Any

from sqlalchemy import and_, delete, or_, select, text, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from db.models import UserCredits, UserFavorite, VideoTaskDefinition, VideoTaskStatus
from pipeline.errors import TaskNotFoundError
from providers.base import NON_TERMINAL_STATUSES, UnifiedStatus

logger = logging.getLogger(__name__)

STATEMENT_TIMEOUT_SQLSTATE = "57014"
MIGRATABLE_R2_STATUSES = ("pending", "failed")

_NON_TERMINAL = tuple(status.value for status in NON_TERMINAL_STATUSES)


def _statuses_at_or_below(status: UnifiedStatus) -> tuple[str, ...]:
    return tuple(
        current.value
        for current in NON_TERMINAL_STATUSES
        if current.rank <= status.rank
    )


class StoreError(RuntimeError):
    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_statement_timeout(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == STATEMENT_TIMEOUT_SQLSTATE


def snapshot(definition: VideoTaskDefinition, status: VideoTaskStatus | None) -> dict[str, Any]:
    params = definition.additional_params or {}
    return {
        "task_id": definition.id,
        "task_type": definition.task_type,
        "model": definition.model,
        "high_quality": definition.high_quality,
        "prompt": definition.prompt,
        "aspect_ratio": definition.aspect_ratio,
        "credits": definition.credits,
        "duration": params.get("duration"),
        "provider": params.get("provider"),
        "created_at": definition.created_at,
        "status_id": status.id if status else None,
        "external_task_id": status.external_task_id if status else None,
        "status": status.status if status else UnifiedStatus.PENDING.value,
        "result_url": status.result_url if status else None,
        "thumbnail_url": status.thumbnail_url if status else None,
        "error_message": status.error_message if status else None,
        "r2_status": status.r2_status if status else None,
        "updated_at": status.updated_at if status else None,
    }


class TaskStore:
    """Row-level access to task definitions, task statuses, credits and favorites."""

    def __init__(
        self,
        session,
        *,
        clock: Callable[[], datetime] = _utcnow,
        timeout_recheck_delay_s: float = 1.0,
    ) -> None:
        self.session = session
        self.clock = clock
        self.timeout_recheck_delay_s = timeout_recheck_delay_s

    # definitions

    def create_definition(
        self,
        *,
        user_id: str,
        task_type: str,
        model: str,
        high_quality: bool,
        credits: int,
        prompt: str | None = None,
        negative_prompt: str | None = None,
        aspect_ratio: str | None = None,
        cfg: float | None = None,
        camera_type: str | None = None,
        camera_value: str | None = None,
        start_img_path: str | None = None,
        end_img_path: str | None = None,
        additional_params: dict[str, Any] | None = None,
    ) -> VideoTaskDefinition:
        definition = VideoTaskDefinition(
            user_id=user_id,
            task_type=task_type,
            model=model,
            high_quality=high_quality,
            prompt=prompt,
            negative_prompt=negative_prompt,
            aspect_ratio=aspect_ratio,
            cfg=cfg,
            camera_type=camera_type,
            camera_value=camera_value,
            credits=credits,
            start_img_path=start_img_path,
            end_img_path=end_img_path,
            additional_params=additional_params or {},
            created_at=self.clock(),
        )
        try:
            self.session.add(definition)
            self.session.commit()
            self.session.refresh(definition)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"failed to create task definition: {exc}") from exc
        return definition

    def get_definition(self, task_id: int, user_id: str | None = None) -> VideoTaskDefinition | None:
        definition = self.session.get(VideoTaskDefinition, task_id)
        if definition is None:
            return None
        if user_id is not None and definition.user_id != user_id:
            return None
        return definition

    def require_definition(self, task_id: int, user_id: str) -> VideoTaskDefinition:
        definition = self.get_definition(task_id, user_id)
        if definition is None:
            raise TaskNotFoundError()
        return definition

    def rename(self, task_id: int, user_id: str, title: str) -> VideoTaskDefinition:
        # The display title lives in ``prompt``; there is no separate column.
        definition = self.require_definition(task_id, user_id)
        definition.prompt = title
        self.session.add(definition)
        self.session.commit()
        return definition

    def delete_task(self, task_id: int, user_id: str) -> None:
        self.require_definition(task_id, user_id)
        try:
            self.session.execute(delete(VideoTaskStatus).where(VideoTaskStatus.task_id == task_id))
            self.session.execute(delete(UserFavorite).where(UserFavorite.task_id == task_id))
            self.session.execute(delete(VideoTaskDefinition).where(VideoTaskDefinition.id == task_id))
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"failed to delete task {task_id}: {exc}") from exc
        logger.info("deleted task %s for user %s", task_id, user_id)

    def list_creations(self, user_id: str) -> list[dict[str, Any]]:
        definitions = (
            self.session.execute(
                select(VideoTaskDefinition)
                .where(VideoTaskDefinition.user_id == user_id)
                .order_by(VideoTaskDefinition.created_at.desc(), VideoTaskDefinition.id.desc())
            )
            .scalars()
            .all()
        )
        if not definitions:
            return []
        ids = [definition.id for definition in definitions]
        statuses = (
            self.session.execute(
                select(VideoTaskStatus)
                .where(VideoTaskStatus.task_id.in_(ids))
                .order_by(VideoTaskStatus.id.asc())
            )
            .scalars()
            .all()
        )
        by_task: dict[int, VideoTaskStatus] = {}
        for row in statuses:
            by_task.setdefault(row.task_id, row)
        favorites = set(
            self.session.execute(
                select(UserFavorite.task_id).where(
                    UserFavorite.user_id == user_id,
                    UserFavorite.task_id.in_(ids),
                )
            )
            .scalars()
            .all()
        )
        creations = []
        for definition in definitions:
            item = snapshot(definition, by_task.get(definition.id))
            item["is_favorite"] = definition.id in favorites
            creations.append(item)
        return creations

    def list_orphans(self, older_than: timedelta) -> list[VideoTaskDefinition]:
        """Definitions whose dispatch never produced a status row."""
        cutoff = self.clock() - older_than
        has_status = select(VideoTaskStatus.id).where(VideoTaskStatus.task_id == VideoTaskDefinition.id)
        stmt = (
            select(VideoTaskDefinition)
            .where(~has_status.exists(), VideoTaskDefinition.created_at < cutoff)
            .order_by(VideoTaskDefinition.created_at.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    # statuses

    def create_status(
        self,
        *,
        task_id: int,
        external_task_id: str,
        status: UnifiedStatus = UnifiedStatus.PENDING,
    ) -> VideoTaskStatus:
        now = self.clock()
        row = VideoTaskStatus(
            task_id=task_id,
            external_task_id=external_task_id,
            status=status.value,
            r2_status="pending",
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(row)
            self.session.commit()
            self.session.refresh(row)
            return row
        except DBAPIError as exc:
            self.session.rollback()
            if not is_statement_timeout(exc):
                raise StoreError(f"failed to create status for task {task_id}: {exc}") from exc
            logger.warning("status insert for task %s hit a statement timeout; re-checking", task_id)
            if self.timeout_recheck_delay_s > 0:
                time.sleep(self.timeout_recheck_delay_s)
            existing = self.get_status(task_id)
            if existing is None:
                raise StoreError(
                    f"failed to create status for task {task_id}: statement timeout"
                ) from exc
            logger.info("status row for task %s exists after timeout (id=%s)", task_id, existing.id)
            return existing

    def get_status(self, task_id: int) -> VideoTaskStatus | None:
        stmt = (
            select(VideoTaskStatus)
            .where(VideoTaskStatus.task_id == task_id)
            .order_by(VideoTaskStatus.id.asc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def get_status_with_definition(
        self, task_id: int
    ) -> tuple[VideoTaskStatus, VideoTaskDefinition] | None:
        stmt = (
            select(VideoTaskStatus, VideoTaskDefinition)
            .join(VideoTaskDefinition, VideoTaskDefinition.id == VideoTaskStatus.task_id)
            .where(VideoTaskStatus.task_id == task_id)
            .order_by(VideoTaskStatus.id.asc())
            .limit(1)
        )
        row = self.session.execute(stmt).first()
        return (row[0], row[1]) if row else None

    def get_status_by_external_id(
        self, external_task_id: str
    ) -> tuple[VideoTaskStatus, VideoTaskDefinition] | None:
        stmt = (
            select(VideoTaskStatus, VideoTaskDefinition)
            .join(VideoTaskDefinition, VideoTaskDefinition.id == VideoTaskStatus.task_id)
            .where(VideoTaskStatus.external_task_id == external_task_id)
            .limit(1)
        )
        row = self.session.execute(stmt).first()
        return (row[0], row[1]) if row else None

    def list_reconcilable(
        self,
        limit: int,
        *,
        model: str = "kling",
        variants: Collection[str] | None = None,
        endpoint_prefixes: Collection[str] = (),
    ) -> list[tuple[VideoTaskStatus, VideoTaskDefinition]]:
        """Non-terminal rows, least recently polled first.

        ``variants`` restricts the selection to definitions tagged with one of
        them; untagged definitions match when their ``api_endpoint`` starts
        with one of ``endpoint_prefixes``.
        """
        conditions = [
            VideoTaskStatus.status.in_(_NON_TERMINAL),
            VideoTaskDefinition.model == model,
        ]
        if variants is not None:
            tag = VideoTaskDefinition.additional_params["provider"].as_string()
            endpoint = VideoTaskDefinition.additional_params["api_endpoint"].as_string()
            untagged = [
                and_(tag.is_(None), endpoint.startswith(prefix, autoescape=True))
                for prefix in endpoint_prefixes
                if prefix
            ]
            conditions.append(or_(tag.in_(list(variants)), *untagged))
        stmt = (
            select(VideoTaskStatus, VideoTaskDefinition)
            .join(VideoTaskDefinition, VideoTaskDefinition.id == VideoTaskStatus.task_id)
            .where(*conditions)
            .order_by(
                VideoTaskStatus.last_polled_at.asc().nulls_first(),
                VideoTaskStatus.updated_at.asc(),
                VideoTaskStatus.id.asc(),
            )
            .limit(limit)
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt).all()]

    def _migratable_condition(self, stale_before: datetime | None):
        condition = or_(
            VideoTaskStatus.r2_status.in_(MIGRATABLE_R2_STATUSES),
            VideoTaskStatus.r2_status.is_(None),
        )
        if stale_before is not None:
            # A claim older than this belongs to a worker that died mid-upload.
            condition = or_(
                condition,
                and_(
                    VideoTaskStatus.r2_status == "uploading",
                    VideoTaskStatus.updated_at < stale_before,
                ),
            )
        return and_(
            VideoTaskStatus.status == UnifiedStatus.COMPLETED.value,
            VideoTaskStatus.result_url.is_not(None),
            condition,
        )

    def list_migratable(
        self, limit: int, *, stale_before: datetime | None = None
    ) -> list[tuple[VideoTaskStatus, VideoTaskDefinition]]:
        stmt = (
            select(VideoTaskStatus, VideoTaskDefinition)
            .join(VideoTaskDefinition, VideoTaskDefinition.id == VideoTaskStatus.task_id)
            .where(self._migratable_condition(stale_before))
            .order_by(VideoTaskStatus.updated_at.asc(), VideoTaskStatus.id.asc())
            .limit(limit)
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt).all()]

    def _conditional_update(self, row: VideoTaskStatus, condition, values: dict[str, Any]) -> bool:
        values = {**values, "updated_at": self.clock()}
        stmt = (
            update(VideoTaskStatus)
            .where(VideoTaskStatus.id == row.id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"failed to update status row {row.id}: {exc}") from exc
        if not result.rowcount:
            self.session.refresh(row)
            return False
        self.session.refresh(row)
        return True

    def update_status(
        self,
        row: VideoTaskStatus,
        *,
        status: UnifiedStatus,
        result_url: str | None = None,
        thumbnail_url: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Write a forward-only status transition.

        The update only matches while the stored status is non-terminal and
        does not rank above ``status``, so a stale in-memory row can never
        move the stored one backwards.
        """
        return self._conditional_update(
            row,
            VideoTaskStatus.status.in_(_statuses_at_or_below(status)),
            {
                "status": status.value,
                "result_url": result_url,
                "thumbnail_url": thumbnail_url,
                "error_message": error_message,
            },
        )

    def mark_polled(self, row: VideoTaskStatus) -> None:
        """Record a reconcile attempt without touching status or ``updated_at``."""
        stmt = (
            update(VideoTaskStatus)
            .where(VideoTaskStatus.id == row.id)
            .values(last_polled_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        try:
            self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"failed to stamp status row {row.id}: {exc}") from exc
        self.session.refresh(row)

    def claim_migration(self, row: VideoTaskStatus, *, stale_before: datetime | None = None) -> bool:
        return self._conditional_update(
            row,
            self._migratable_condition(stale_before),
            {"r2_status": "uploading"},
        )

    def finish_migration(
        self,
        row: VideoTaskStatus,
        *,
        result_url: str,
        thumbnail_url: str | None,
    ) -> bool:
        return self._conditional_update(
            row,
            VideoTaskStatus.r2_status == "uploading",
            {"result_url": result_url, "thumbnail_url": thumbnail_url, "r2_status": "completed"},
        )

    def fail_migration(self, row: VideoTaskStatus) -> bool:
        return self._conditional_update(
            row,
            VideoTaskStatus.r2_status == "uploading",
            {"r2_status": "failed"},
        )

    # credits and favorites

    def get_credit_balance(self, user_id: str) -> int:
        balance = self.session.execute(
            select(UserCredits.credits_balance).where(UserCredits.user_id == user_id)
        ).scalar_one_or_none()
        return int(balance or 0)

    def deduct_credits(self, task_id: int, amount: int) -> None:
        try:
            self.session.execute(
                text("select use_credits(:task_id, :amount)"),
                {"task_id": task_id, "amount": amount},
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"use_credits failed for task {task_id}: {exc}") from exc

    def add_favorite(self, task_id: int, user_id: str) -> bool:
        self.require_definition(task_id, user_id)
        existing = self.session.execute(
            select(UserFavorite).where(UserFavorite.user_id == user_id, UserFavorite.task_id == task_id)
        ).scalar_one_or_none()
        if existing is not None:
            return False
        now = self.clock()
        self.session.add(UserFavorite(user_id=user_id, task_id=task_id, created_at=now, updated_at=now))
        self.session.commit()
        return True

    def remove_favorite(self, task_id: int, user_id: str) -> bool:
        result = self.session.execute(
            delete(UserFavorite).where(UserFavorite.user_id == user_id, UserFavorite.task_id == task_id)
        )
        self.session.commit()
        return bool(result.rowcount)
