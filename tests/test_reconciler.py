from __future__ import annotations

from datetime import timedelta

import pytest

from pipeline.reconciler import ReconcilerConfig, StatusReconciler
from providers import PollResult, ProviderError, ProviderUnavailable, ProviderVariant, UnifiedStatus
from tests.fakes import FakeAdapter


def _unavailable() -> ProviderUnavailable:
    return ProviderUnavailable(code="timeout", message="timed out", provider="test")


@pytest.fixture
def official():
    return FakeAdapter(ProviderVariant.OFFICIAL)


@pytest.fixture
def aggregator():
    return FakeAdapter(ProviderVariant.AGGREGATOR)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def reconciler(store, official, aggregator, provider_config, sleeps):
    return StatusReconciler(
        store,
        {ProviderVariant.OFFICIAL: official, ProviderVariant.AGGREGATOR: aggregator},
        provider_config,
        ReconcilerConfig(),
        sleep=sleeps.append,
    )


def _snapshot(row) -> tuple:
    return (row.status, row.result_url, row.error_message, row.updated_at)


def test_poll_result_advances_status(reconciler, make_task, official, clock) -> None:
    _, row = make_task(status="pending", external_task_id="k-1", age=timedelta(minutes=1))
    official.polls["k-1"] = PollResult(external_task_id="k-1", status=UnifiedStatus.PROCESSING)

    report = reconciler.run_pass()

    assert report.processed == 1
    assert report.updated == 1
    assert row.status == "processing"
    assert row.updated_at.replace(tzinfo=None) == clock().replace(tzinfo=None)


def test_completion_records_result_and_reports_task(reconciler, make_task, aggregator) -> None:
    definition, row = make_task(status="processing", provider="aggregator", external_task_id="a-1")
    aggregator.polls["a-1"] = PollResult(
        external_task_id="a-1",
        status=UnifiedStatus.COMPLETED,
        result_url="https://302.cdn/v.mp4",
        thumbnail_url="https://302.cdn/c.jpg",
    )

    report = reconciler.run_pass()

    assert row.status == "completed"
    assert row.result_url == "https://302.cdn/v.mp4"
    assert row.thumbnail_url == "https://302.cdn/c.jpg"
    assert report.completed_task_ids == [definition.id]


def test_second_pass_is_a_no_op(reconciler, make_task, official, clock) -> None:
    _, row = make_task(status="queued", external_task_id="k-1", age=timedelta(minutes=10))
    official.polls["k-1"] = PollResult(external_task_id="k-1", status=UnifiedStatus.PROCESSING)

    reconciler.run_pass()
    after_first = _snapshot(row)
    clock.advance(seconds=30)
    report = reconciler.run_pass()

    assert _snapshot(row) == after_first
    assert report.updated == 0
    assert report.results[0].reason == "unchanged"


def test_provider_regression_is_ignored(reconciler, make_task, official) -> None:
    _, row = make_task(status="processing", external_task_id="k-1", age=timedelta(minutes=10))
    before = _snapshot(row)
    official.polls["k-1"] = PollResult(external_task_id="k-1", status=UnifiedStatus.QUEUED)

    report = reconciler.run_pass()

    assert _snapshot(row) == before
    assert report.updated == 0


def test_terminal_rows_are_never_selected(reconciler, make_task, official) -> None:
    make_task(status="failed", external_task_id="k-1")
    make_task(status="completed", external_task_id="k-2", result_url="https://cdn/x.mp4")
    official.polls["k-1"] = PollResult(external_task_id="k-1", status=UnifiedStatus.PROCESSING)

    report = reconciler.run_pass()

    assert report.processed == 0
    assert official.poll_calls == []


def test_stale_processing_fails_when_provider_unavailable(reconciler, make_task, aggregator) -> None:
    _, row = make_task(status="processing", provider="aggregator", external_task_id="a-1", age=timedelta(hours=25))
    aggregator.polls["a-1"] = _unavailable()

    reconciler.run_pass()

    assert row.status == "failed"
    assert row.error_message


def test_stale_queued_becomes_processing_when_provider_unavailable(reconciler, make_task, aggregator) -> None:
    _, row = make_task(status="queued", provider="aggregator", external_task_id="a-1", age=timedelta(hours=7))
    aggregator.polls["a-1"] = _unavailable()

    report = reconciler.run_pass()

    assert row.status == "processing"
    assert report.results[0].reason == "stale_queued"


def test_fresh_rows_survive_provider_outage(reconciler, make_task, aggregator) -> None:
    _, processing = make_task(status="processing", provider="aggregator", external_task_id="a-1", age=timedelta(hours=23))
    _, queued = make_task(status="queued", provider="aggregator", external_task_id="a-2", age=timedelta(hours=5))
    aggregator.polls["a-1"] = _unavailable()
    aggregator.polls["a-2"] = _unavailable()
    before = (_snapshot(processing), _snapshot(queued))

    report = reconciler.run_pass()

    assert (_snapshot(processing), _snapshot(queued)) == before
    assert report.updated == 0


def test_malformed_provider_answer_uses_fallback_and_counts_failure(reconciler, make_task, aggregator) -> None:
    _, row = make_task(status="processing", provider="aggregator", external_task_id="a-1", age=timedelta(hours=30))
    aggregator.polls["a-1"] = ProviderError(code="invalid_response", message="garbage", provider="aggregator")

    report = reconciler.run_pass()

    assert report.failed == 1
    assert row.status == "failed"


def test_official_precheck_fails_stuck_task_without_polling(reconciler, make_task, official) -> None:
    _, row = make_task(status="processing", external_task_id="k-1", age=timedelta(hours=26))

    report = reconciler.run_pass()

    assert official.poll_calls == []
    assert row.status == "failed"
    assert report.results[0].reason == "timeout_without_api_call"


def test_unknown_provider_rows_are_never_selected(reconciler, make_task, official, aggregator) -> None:
    _, unknown = make_task(
        status="processing",
        provider=None,
        external_task_id="x-1",
        additional_params={"api_endpoint": "https://elsewhere.test/generate"},
        age=timedelta(hours=30),
    )
    _, tagged = make_task(status="queued", provider="runway", external_task_id="x-2", age=timedelta(hours=30))
    before = (_snapshot(unknown), _snapshot(tagged))

    report = reconciler.run_pass()

    assert report.skipped == 0
    assert report.processed == 0
    assert (_snapshot(unknown), _snapshot(tagged)) == before
    assert unknown.last_polled_at is None and tagged.last_polled_at is None
    assert official.poll_calls == [] and aggregator.poll_calls == []


def test_endpoint_prefix_routes_untagged_rows(reconciler, make_task, aggregator) -> None:
    _, row = make_task(
        status="queued",
        provider=None,
        external_task_id="a-9",
        additional_params={"api_endpoint": "https://302.test/klingai/m2v_16_txt2video_5s"},
    )
    aggregator.polls["a-9"] = PollResult(external_task_id="a-9", status=UnifiedStatus.PROCESSING)

    reconciler.run_pass()

    assert aggregator.poll_calls == ["a-9"]
    assert row.status == "processing"


def test_batch_is_oldest_first_bounded_and_paced(store, official, provider_config, make_task, sleeps) -> None:
    for minutes, external_id in ((5, "k-new"), (50, "k-old"), (20, "k-mid")):
        make_task(status="queued", external_task_id=external_id, age=timedelta(minutes=minutes))
    reconciler = StatusReconciler(
        store,
        {ProviderVariant.OFFICIAL: official},
        provider_config,
        ReconcilerConfig(batch_size=2, pacing_s=0.5),
        sleep=sleeps.append,
    )

    report = reconciler.run_pass()

    assert official.poll_calls == ["k-old", "k-mid"]
    assert report.processed == 2
    assert sleeps == [0.5]


def test_unknown_provider_status_leaves_row(reconciler, make_task) -> None:
    _, row = make_task(status="queued", external_task_id="k-1", age=timedelta(minutes=3))
    before = _snapshot(row)

    report = reconciler.run_pass()

    assert _snapshot(row) == before
    assert report.results[0].reason == "unknown_provider_status"


def test_callback_applies_same_rules(reconciler, make_task) -> None:
    definition, row = make_task(status="processing", external_task_id="k-1")

    outcome = reconciler.apply_callback(
        ProviderVariant.OFFICIAL,
        {"task_id": "k-1", "status": "completed", "result_url": "https://cdn.kling/final.mp4"},
    )

    assert outcome.task_id == definition.id
    assert outcome.updated is True
    assert row.status == "completed"
    assert row.result_url == "https://cdn.kling/final.mp4"

    late = reconciler.apply_callback(ProviderVariant.OFFICIAL, {"task_id": "k-1", "status": "processing"})
    assert late.reason == "already_terminal"
    assert row.status == "completed"


def test_callback_for_unknown_task(reconciler) -> None:
    assert reconciler.apply_callback(ProviderVariant.OFFICIAL, {"task_id": "nope", "status": "failed"}) is None


def test_callback_for_unconfigured_variant(store, official, provider_config) -> None:
    reconciler = StatusReconciler(store, {ProviderVariant.OFFICIAL: official}, provider_config)
    with pytest.raises(ProviderError):
        reconciler.apply_callback(ProviderVariant.AGGREGATOR, {"task_id": "a-1", "status": "failed"})


def test_unsupported_backlog_does_not_hide_pollable_rows(reconciler, make_task, official) -> None:
    for index in range(50):
        make_task(status="queued", provider="legacy", external_task_id=f"l-{index}", age=timedelta(days=3))
    _, row = make_task(status="queued", external_task_id="k-1", age=timedelta(minutes=2))
    official.polls["k-1"] = PollResult(external_task_id="k-1", status=UnifiedStatus.PROCESSING)

    report = reconciler.run_pass()

    assert official.poll_calls == ["k-1"]
    assert report.processed == 1
    assert row.status == "processing"


def test_unchanged_rows_rotate_behind_fresh_work(reconciler, make_task, aggregator, clock) -> None:
    for index in range(10):
        make_task(status="pending", external_task_id=f"k-{index}", age=timedelta(hours=2))
    _, row = make_task(status="processing", provider="aggregator", external_task_id="a-1", age=timedelta(minutes=5))
    aggregator.polls["a-1"] = PollResult(
        external_task_id="a-1", status=UnifiedStatus.COMPLETED, result_url="https://302.cdn/v.mp4"
    )

    reconciler.run_pass()
    assert aggregator.poll_calls == []

    clock.advance(seconds=30)
    report = reconciler.run_pass()

    assert aggregator.poll_calls == ["a-1"]
    assert row.status == "completed"
    assert report.completed_task_ids == [row.task_id]


def test_unchanged_poll_stamps_last_polled_at_only(reconciler, make_task, official, clock) -> None:
    _, row = make_task(status="queued", external_task_id="k-1", age=timedelta(minutes=10))
    official.polls["k-1"] = PollResult(external_task_id="k-1", status=UnifiedStatus.QUEUED)
    before = _snapshot(row)

    report = reconciler.run_pass()

    assert report.results[0].reason == "unchanged"
    assert _snapshot(row) == before
    assert row.last_polled_at.replace(tzinfo=None) == clock().replace(tzinfo=None)


def test_stale_pending_missing_from_listing_becomes_processing(reconciler, make_task) -> None:
    _, row = make_task(status="pending", external_task_id="k-1", age=timedelta(hours=7))

    report = reconciler.run_pass()

    assert row.status == "processing"
    assert report.results[0].reason == "stale_pending"


def test_stale_processing_missing_from_listing_fails(reconciler, make_task) -> None:
    _, row = make_task(status="processing", provider="aggregator", external_task_id="a-1", age=timedelta(hours=25))

    report = reconciler.run_pass()

    assert row.status == "failed"
    assert report.results[0].reason == "stale_processing"


def test_missing_external_id_uses_fallback(reconciler, make_task, official) -> None:
    _, row = make_task(status="queued", external_task_id=None, age=timedelta(hours=7))

    report = reconciler.run_pass()

    assert official.poll_calls == []
    assert row.status == "processing"
    assert report.results[0].reason == "stale_queued"
