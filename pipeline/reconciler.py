"""Polling engine that moves task status rows through the unified state machine.

Each pass takes the least recently polled non-terminal rows first, polls the
provider the row's definition was dispatched to, and writes a transition only
when the status or the result URL actually changed. Every attempt stamps
``last_polled_at`` so rows that never change rotate to the back of the queue.
When the provider cannot be reached or does not know the task, the staleness
fallback decides instead:

* ``processing`` untouched for longer than ``processing_timeout`` -> ``failed``
* ``pending`` or ``queued`` untouched for longer than ``queued_timeout`` -> ``processing``

Provider webhooks go through :meth:`StatusReconciler.apply_callback`, which
shares the transition rules with polling.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
import logging
import os
import time
from typing import Any

from db.models import VideoTaskDefinition, VideoTaskStatus
from pipeline.store import TaskStore, as_utc
from providers import resolve_variant
from providers.base import (
    PollResult,
    ProviderAdapter,
    ProviderError,
    ProviderUnavailable,
    ProviderVariant,
    TaskType,
    UnifiedStatus,
    can_transition,
)
from providers.config import ProviderConfig

logger = logging.getLogger(__name__)

STUCK_PROCESSING_MESSAGE = "Task has been processing for too long and is likely stuck"
STALE_PROCESSING_MESSAGE = "Task did not finish within 24 hours and has likely failed"


@dataclass(frozen=True)
class ReconcilerConfig:
    batch_size: int = 10
    pacing_s: float = 0.5
    processing_timeout: timedelta = timedelta(hours=24)
    queued_timeout: timedelta = timedelta(hours=6)
    precheck_variants: frozenset[ProviderVariant] = frozenset({ProviderVariant.OFFICIAL})
    model: str = "kling"


def load_reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(
        batch_size=int(os.getenv("RECONCILE_BATCH_SIZE", "10")),
        pacing_s=float(os.getenv("RECONCILE_PACING_S", "0.5")),
        processing_timeout=timedelta(hours=float(os.getenv("RECONCILE_PROCESSING_TIMEOUT_H", "24"))),
        queued_timeout=timedelta(hours=float(os.getenv("RECONCILE_QUEUED_TIMEOUT_H", "6"))),
    )


@dataclass
class TaskOutcome:
    task_id: int
    success: bool
    previous_status: str
    new_status: str | None = None
    updated: bool = False
    reason: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "updated": self.updated,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class ReconcileReport:
    processed: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    completed_task_ids: list[int] = field(default_factory=list)
    results: list[TaskOutcome] = field(default_factory=list)

    def record(self, outcome: TaskOutcome) -> None:
        self.results.append(outcome)
        if outcome.reason == "unsupported_provider":
            self.skipped += 1
            return
        self.processed += 1
        if not outcome.success:
            self.failed += 1
        if outcome.updated:
            self.updated += 1
            if outcome.new_status == UnifiedStatus.COMPLETED.value:
                self.completed_task_ids.append(outcome.task_id)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "completed_task_ids": list(self.completed_task_ids),
            "results": [outcome.as_dict() for outcome in self.results],
        }


class StatusReconciler:
    def __init__(
        self,
        store: TaskStore,
        adapters: Mapping[ProviderVariant, ProviderAdapter],
        provider_config: ProviderConfig,
        config: ReconcilerConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.provider_config = provider_config
        self.config = config or ReconcilerConfig()
        self.sleep = sleep

    def run_pass(self) -> ReconcileReport:
        report = ReconcileReport()
        # Rows nobody can poll are filtered in SQL so they never occupy the batch.
        candidates = self.store.list_reconcilable(
            self.config.batch_size,
            model=self.config.model,
            variants=[variant.value for variant in self.adapters],
            endpoint_prefixes=[self.provider_config.base_url_for(variant) for variant in self.adapters],
        )

        polled = 0
        for status_row, definition in candidates:
            variant = resolve_variant(definition.additional_params, self.provider_config)
            if variant is None or variant not in self.adapters:
                logger.debug("skipping task %s: no adapter for %s", definition.id, variant)
                report.record(
                    TaskOutcome(
                        task_id=definition.id,
                        success=True,
                        previous_status=status_row.status,
                        reason="unsupported_provider",
                    )
                )
                continue
            if polled and self.config.pacing_s > 0:
                self.sleep(self.config.pacing_s)
            polled += 1
            self.store.mark_polled(status_row)
            report.record(self.reconcile_task(status_row, definition, variant))

        logger.info(
            "reconcile pass: processed=%s updated=%s failed=%s skipped=%s",
            report.processed,
            report.updated,
            report.failed,
            report.skipped,
        )
        return report

    def reconcile_task(
        self,
        status_row: VideoTaskStatus,
        definition: VideoTaskDefinition,
        variant: ProviderVariant,
    ) -> TaskOutcome:
        current = UnifiedStatus(status_row.status)
        outcome = TaskOutcome(task_id=definition.id, success=True, previous_status=current.value)

        if variant in self.config.precheck_variants and self._is_stuck_processing(status_row):
            logger.warning("task %s processing past timeout; failing without a provider call", definition.id)
            outcome.updated = self.store.update_status(
                status_row,
                status=UnifiedStatus.FAILED,
                result_url=status_row.result_url,
                thumbnail_url=status_row.thumbnail_url,
                error_message=STUCK_PROCESSING_MESSAGE,
            )
            outcome.new_status = UnifiedStatus.FAILED.value
            outcome.reason = "timeout_without_api_call"
            return outcome

        if not status_row.external_task_id:
            return self._apply_fallback(status_row, outcome, reason="missing_external_id")

        adapter = self.adapters[variant]
        try:
            polled = adapter.poll(
                status_row.external_task_id,
                task_type=TaskType(definition.task_type),
            )
        except ProviderUnavailable as exc:
            logger.warning("poll for task %s unavailable: %s", definition.id, exc)
            return self._apply_fallback(status_row, outcome, reason="provider_unavailable")
        except ProviderError as exc:
            logger.error("poll for task %s failed: %s", definition.id, exc)
            outcome.success = False
            outcome.error = str(exc)
            return self._apply_fallback(status_row, outcome, reason="provider_error")

        if polled.status is None:
            # Not found in the provider listing, or a status code we do not know.
            return self._apply_fallback(status_row, outcome, reason="unknown_provider_status")
        return self._apply_poll(status_row, polled, outcome)

    def apply_callback(self, variant: ProviderVariant, payload: dict[str, Any]) -> TaskOutcome | None:
        adapter = self.adapters.get(variant)
        if adapter is None:
            raise ProviderError(
                code="unsupported_provider",
                message=f"no adapter configured for {variant.value}",
                provider=variant.value,
            )
        polled = adapter.parse_callback(payload)
        found = self.store.get_status_by_external_id(polled.external_task_id)
        if found is None:
            logger.warning("callback for unknown external task %s", polled.external_task_id)
            return None
        status_row, definition = found
        outcome = TaskOutcome(task_id=definition.id, success=True, previous_status=status_row.status)
        if UnifiedStatus(status_row.status).is_terminal:
            outcome.new_status = status_row.status
            outcome.reason = "already_terminal"
            return outcome
        return self._apply_poll(status_row, polled, outcome)

    def _apply_poll(self, status_row: VideoTaskStatus, polled: PollResult, outcome: TaskOutcome) -> TaskOutcome:
        current = UnifiedStatus(status_row.status)
        if polled.status is None:
            outcome.new_status = current.value
            outcome.reason = "unknown_provider_status"
            return outcome

        new_status = polled.status if can_transition(current, polled.status) else current
        result_url = polled.result_url or status_row.result_url
        thumbnail_url = polled.thumbnail_url or status_row.thumbnail_url
        error_message = polled.error_message or status_row.error_message
        outcome.new_status = new_status.value

        if new_status is current and result_url == status_row.result_url:
            outcome.reason = "unchanged"
            return outcome

        outcome.updated = self.store.update_status(
            status_row,
            status=new_status,
            result_url=result_url,
            thumbnail_url=thumbnail_url,
            error_message=error_message,
        )
        if outcome.updated:
            logger.info(
                "task %s: %s -> %s (provider status %r)",
                outcome.task_id,
                current.value,
                new_status.value,
                polled.provider_status,
            )
        return outcome

    def _apply_fallback(self, status_row: VideoTaskStatus, outcome: TaskOutcome, *, reason: str) -> TaskOutcome:
        current = UnifiedStatus(status_row.status)
        outcome.new_status = current.value
        outcome.reason = reason

        age = self.store.clock() - as_utc(status_row.updated_at)
        if current is UnifiedStatus.PROCESSING and age > self.config.processing_timeout:
            outcome.updated = self.store.update_status(
                status_row,
                status=UnifiedStatus.FAILED,
                result_url=status_row.result_url,
                thumbnail_url=status_row.thumbnail_url,
                error_message=STALE_PROCESSING_MESSAGE,
            )
            outcome.new_status = UnifiedStatus.FAILED.value
            outcome.reason = "stale_processing"
            logger.warning("task %s failed by staleness fallback", outcome.task_id)
        elif current in (UnifiedStatus.PENDING, UnifiedStatus.QUEUED) and age > self.config.queued_timeout:
            outcome.updated = self.store.update_status(
                status_row,
                status=UnifiedStatus.PROCESSING,
                result_url=status_row.result_url,
                thumbnail_url=status_row.thumbnail_url,
                error_message=status_row.error_message,
            )
            outcome.new_status = UnifiedStatus.PROCESSING.value
            outcome.reason = f"stale_{current.value}"
            logger.info("task %s assumed processing after %s timeout", outcome.task_id, current.value)
        return outcome

    def _is_stuck_processing(self, status_row: VideoTaskStatus) -> bool:
        if status_row.status != UnifiedStatus.PROCESSING.value:
            return False
        return self.store.clock() - as_utc(status_row.updated_at) > self.config.processing_timeout
