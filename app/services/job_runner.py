"""
app/services/job_runner.py

Background execution for discovery and aggregation jobs.

Callers submit a function and receive a JobHandle; the outcome arrives as a
JobOutcome message (completed, failed or cancelled) rather than through
shared state. Jobs run on an APScheduler ``BackgroundScheduler`` thread pool,
one run per submission.

Cancellation is cooperative. The job function receives a CancellationToken
as the ``cancel_token`` keyword argument and checks it at batch boundaries;
a cancelled job reports ``cancelled`` and its partial result is discarded.
No timeouts or retries are applied here.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from app.config import get_benchmark_settings
from app.errors import JobCancelledError
from app.logging_utils import elapsed_ms, log_event

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


class CancellationToken:
    """
    Thread-safe cancellation flag checked between batches.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError("Job was cancelled.")


def check_cancelled(token: CancellationToken | None) -> None:
    """
    No-op without a token; raises JobCancelledError once cancelled.
    """

    if token is not None:
        token.raise_if_cancelled()


@dataclass(frozen=True)
class JobOutcome:
    """
    Terminal message for one submitted job.
    """

    job_id: str
    status: str
    result: Any = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_COMPLETED


class JobHandle:
    """
    Caller-side view of one submitted job.
    """

    def __init__(self, job_id: str, name: str) -> None:
        self.job_id = job_id
        self.name = name
        self.token = CancellationToken()
        self._done = threading.Event()
        self._outcome: JobOutcome | None = None

    @property
    def status(self) -> str:
        return self._outcome.status if self._outcome is not None else STATUS_PENDING

    def cancel(self) -> None:
        self.token.cancel()

    def done(self) -> bool:
        return self._done.is_set()

    def outcome(self, timeout: float | None = None) -> JobOutcome:
        """
        Block until the job finishes.

        Raises TimeoutError when ``timeout`` elapses first; the job keeps
        running.
        """

        outcome = self._outcome if self._done.wait(timeout) else None
        if outcome is None:
            raise TimeoutError(f"Job {self.job_id} did not finish within {timeout} seconds.")
        return outcome

    def _finish(self, outcome: JobOutcome) -> None:
        self._outcome = outcome
        self._done.set()


class BenchmarkJobRunner:
    """
    Submits engine work to a background scheduler.

    Parameters
    ----------
    max_workers:
        Thread pool size for concurrently running jobs. Each job is still
        strictly sequential internally.
    max_finished:
        Number of finished handles kept for status lookups; the oldest are
        dropped first.
    scheduler:
        Optional pre-built scheduler (tests may inject one).
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        max_finished: int = 100,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max(1, max_workers))},
            job_defaults={"coalesce": False, "max_instances": 1},
            timezone="UTC",
        )
        self._lock = threading.Lock()
        self._handles: dict[str, JobHandle] = {}
        self._finished: deque[str] = deque()
        self._max_finished = max(0, max_finished)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        with self._lock:
            if not self._scheduler.running:
                self._scheduler.start()

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            handles = list(self._handles.values())
        if not self._scheduler.running:
            return
        for handle in handles:
            if not handle.done():
                handle.cancel()
        # Running jobs retire under the lock, so it must be free while waiting.
        self._scheduler.shutdown(wait=wait)

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        name: str | None = None,
        **kwargs: Any,
    ) -> JobHandle:
        """
        Schedule ``fn(*args, cancel_token=token, **kwargs)`` to run once now.
        """

        self.start()
        job_name = name or getattr(fn, "__name__", "benchmark_job")
        handle = JobHandle(job_id=uuid.uuid4().hex, name=job_name)
        with self._lock:
            self._handles[handle.job_id] = handle

        self._scheduler.add_job(
            self._run,
            args=(handle, fn, args, kwargs),
            id=handle.job_id,
            name=job_name,
            misfire_grace_time=None,
        )
        log_event(logger, logging.INFO, "job_submitted", job_id=handle.job_id, name=job_name)
        return handle

    def get(self, job_id: str) -> JobHandle | None:
        with self._lock:
            return self._handles.get(job_id)

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._handles.pop(job_id, None)

    def _retire(self, handle: JobHandle, outcome: JobOutcome) -> None:
        with self._lock:
            handle._finish(outcome)
            self._finished.append(handle.job_id)
            while len(self._finished) > self._max_finished:
                self._handles.pop(self._finished.popleft(), None)

    def _run(
        self,
        handle: JobHandle,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        started = time.perf_counter()
        try:
            handle.token.raise_if_cancelled()
            result = fn(*args, cancel_token=handle.token, **kwargs)
            handle.token.raise_if_cancelled()
        except JobCancelledError:
            self._retire(handle, JobOutcome(job_id=handle.job_id, status=STATUS_CANCELLED))
            log_event(
                logger,
                logging.INFO,
                "job_cancelled",
                job_id=handle.job_id,
                name=handle.name,
                duration_ms=elapsed_ms(started),
            )
        except Exception as exc:  # noqa: BLE001
            self._retire(handle, JobOutcome(job_id=handle.job_id, status=STATUS_FAILED, error=exc))
            log_event(
                logger,
                logging.WARNING,
                "job_failed",
                job_id=handle.job_id,
                name=handle.name,
                error_type=type(exc).__name__,
                error=str(exc),
                duration_ms=elapsed_ms(started),
            )
        else:
            self._retire(handle, JobOutcome(job_id=handle.job_id, status=STATUS_COMPLETED, result=result))
            log_event(
                logger,
                logging.INFO,
                "job_completed",
                job_id=handle.job_id,
                name=handle.name,
                duration_ms=elapsed_ms(started),
            )


@lru_cache(maxsize=1)
def get_job_runner() -> BenchmarkJobRunner:
    """
    Build and cache the process-wide job runner with env-driven settings.
    """

    settings = get_benchmark_settings()
    return BenchmarkJobRunner(
        max_workers=settings.job_workers,
        max_finished=settings.job_retain_finished,
    )
