"""
tests/test_job_runner.py

Pytest tests for BenchmarkJobRunner outcomes and cooperative cancellation.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator

import pytest

from app.errors import JobCancelledError
from app.services.job_runner import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    BenchmarkJobRunner,
    CancellationToken,
    check_cancelled,
)

TIMEOUT = 5.0


@pytest.fixture()
def runner() -> Iterator[BenchmarkJobRunner]:
    instance = BenchmarkJobRunner(max_workers=2)
    instance.start()
    try:
        yield instance
    finally:
        instance.shutdown(wait=True)


def _add(left: int, right: int, *, cancel_token: CancellationToken) -> int:
    check_cancelled(cancel_token)
    return left + right


def _explode(*, cancel_token: CancellationToken) -> None:
    raise RuntimeError("boom")


def test_completed_job_reports_its_result(runner) -> None:
    handle = runner.submit(_add, 2, right=3)

    outcome = handle.outcome(timeout=TIMEOUT)

    assert outcome.status == STATUS_COMPLETED
    assert outcome.succeeded
    assert outcome.result == 5
    assert handle.name == "_add"
    assert runner.get(handle.job_id) is handle


def test_failed_job_carries_the_error(runner) -> None:
    handle = runner.submit(_explode, name="explode")

    outcome = handle.outcome(timeout=TIMEOUT)

    assert outcome.status == STATUS_FAILED
    assert isinstance(outcome.error, RuntimeError)
    assert outcome.result is None


def test_cancelled_job_discards_partial_result(runner) -> None:
    started = threading.Event()
    release = threading.Event()

    def slow(*, cancel_token: CancellationToken) -> str:
        started.set()
        release.wait(TIMEOUT)
        check_cancelled(cancel_token)
        return "partial"

    handle = runner.submit(slow)
    assert started.wait(TIMEOUT)
    handle.cancel()
    release.set()

    outcome = handle.outcome(timeout=TIMEOUT)
    assert outcome.status == STATUS_CANCELLED
    assert outcome.result is None
    assert handle.status == STATUS_CANCELLED


def test_outcome_timeout_leaves_job_running(runner) -> None:
    release = threading.Event()

    def blocked(*, cancel_token: CancellationToken) -> int:
        release.wait(TIMEOUT)
        return 1

    handle = runner.submit(blocked)
    with pytest.raises(TimeoutError):
        handle.outcome(timeout=0.05)
    assert handle.status == STATUS_PENDING
    assert not handle.done()

    release.set()
    assert handle.outcome(timeout=TIMEOUT).status == STATUS_COMPLETED


def test_forget_drops_the_handle(runner) -> None:
    handle = runner.submit(_add, 1, right=1)
    handle.outcome(timeout=TIMEOUT)

    runner.forget(handle.job_id)

    assert runner.get(handle.job_id) is None


def test_only_the_newest_finished_handles_are_kept() -> None:
    runner = BenchmarkJobRunner(max_workers=1, max_finished=2)
    try:
        handles = []
        for index in range(5):
            handle = runner.submit(_add, index, right=1)
            handle.outcome(timeout=TIMEOUT)
            handles.append(handle)

        kept = [handle.job_id for handle in handles if runner.get(handle.job_id) is not None]
        assert kept == [handles[3].job_id, handles[4].job_id]
        assert handles[0].outcome(timeout=0).result == 1
    finally:
        runner.shutdown(wait=True)


def test_pending_handles_are_never_evicted() -> None:
    runner = BenchmarkJobRunner(max_workers=2, max_finished=0)
    release = threading.Event()

    def blocked(*, cancel_token: CancellationToken) -> int:
        release.wait(TIMEOUT)
        return 1

    try:
        pending = runner.submit(blocked)
        runner.submit(_add, 1, right=1).outcome(timeout=TIMEOUT)

        assert runner.get(pending.job_id) is pending

        release.set()
        pending.outcome(timeout=TIMEOUT)
        assert runner.get(pending.job_id) is None
    finally:
        release.set()
        runner.shutdown(wait=True)


def test_shutdown_cancels_pending_work() -> None:
    runner = BenchmarkJobRunner(max_workers=1)
    started = threading.Event()

    def waits_for_cancel(*, cancel_token: CancellationToken) -> None:
        started.set()
        while not cancel_token.cancelled:
            threading.Event().wait(0.01)
        check_cancelled(cancel_token)

    handle = runner.submit(waits_for_cancel)
    assert started.wait(TIMEOUT)
    runner.shutdown(wait=True)

    assert handle.outcome(timeout=TIMEOUT).status == STATUS_CANCELLED
    assert not runner.running


def test_token_and_check_helper() -> None:
    token = CancellationToken()
    check_cancelled(None)
    check_cancelled(token)

    token.cancel()

    assert token.cancelled
    with pytest.raises(JobCancelledError):
        check_cancelled(token)
