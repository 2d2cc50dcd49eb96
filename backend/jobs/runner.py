"""
Periodic job execution with a per-process overlap guard, an optional
cross-instance JOB lock and a hard timeout.

A run that overruns its timeout is reported as timed out and its guard and
lock are released; the body keeps running in the background until it
finishes on its own.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from structlog.stdlib import BoundLogger

from coordination.locks import LockKey, LockManager
from shared.errors import RegistryError
from shared.models.enums import JobOutcome, LockNamespace
from shared.utils.logging import get_logger
from shared.utils.metrics import JOB_DURATION, JOB_RUNNING, JOB_RUNS, JOB_STARTED, JOB_TIMEOUTS

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobDescriptor:
    name: str
    timeout_s: float
    lock_key: Optional[LockKey] = None
    overlap_guard: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise RegistryError("job name must not be empty")
        if self.timeout_s <= 0:
            raise RegistryError(f"job {self.name!r} needs a positive timeout")
        if self.lock_key is not None and self.lock_key.namespace != LockNamespace.JOB:
            raise RegistryError(f"job {self.name!r} must use a JOB lock key, got {self.lock_key}")


@dataclass(frozen=True)
class JobContext:
    """Handed to each job body."""
    job_name: str
    run_id: str
    started_at: datetime
    log: BoundLogger


@dataclass
class JobState:
    name: str
    active: int = 0
    run_count: int = 0
    last_outcome: Optional[JobOutcome] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_duration_s: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.active > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.running,
            "run_count": self.run_count,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_duration_s": self.last_duration_s,
        }


JobBody = Callable[[JobContext], Awaitable[Any]]


class JobRunner:
    def __init__(self, locks: LockManager | None = None, jobs: Iterable[JobDescriptor] = ()) -> None:
        self._locks = locks
        self._states: dict[str, JobState] = {d.name: JobState(name=d.name) for d in jobs}
        self._background: set[asyncio.Task] = set()

    def state(self, name: str) -> JobState:
        if name not in self._states:
            self._states[name] = JobState(name=name)
        return self._states[name]

    def snapshot(self) -> list[dict[str, Any]]:
        """Per-job bookkeeping for status logs."""
        return [s.as_dict() for s in self._states.values()]

    async def run(self, descriptor: JobDescriptor, body: JobBody) -> JobOutcome:
        state = self.state(descriptor.name)
        if descriptor.overlap_guard and state.running:
            logger.debug("job_skipped_overlap", job=descriptor.name)
            return self._finish(state, JobOutcome.SKIPPED_OVERLAP)

        state.active += 1
        try:
            if descriptor.lock_key is None:
                outcome = await self._execute(descriptor, state, body)
            else:
                if self._locks is None:
                    raise RegistryError(f"job {descriptor.name!r} needs a lock manager")
                outcome = await self._run_locked(descriptor, state, body)
        finally:
            state.active -= 1
        return self._finish(state, outcome)

    async def _run_locked(self, descriptor: JobDescriptor, state: JobState, body: JobBody) -> JobOutcome:
        try:
            async with self._locks.hold(descriptor.lock_key) as handle:
                if handle is None:
                    logger.debug("job_skipped_locked", job=descriptor.name, key=str(descriptor.lock_key))
                    return JobOutcome.SKIPPED_LOCKED
                return await self._execute(descriptor, state, body)
        except Exception as exc:
            # Body errors are handled in _execute; only the lock backend reaches here.
            logger.error(
                "job_lock_failed",
                job=descriptor.name,
                key=str(descriptor.lock_key),
                error=str(exc),
                exc_info=True,
            )
            return JobOutcome.FAILED

    async def _execute(self, descriptor: JobDescriptor, state: JobState, body: JobBody) -> JobOutcome:
        run_id = uuid.uuid4().hex[:12]
        ctx = JobContext(
            job_name=descriptor.name,
            run_id=run_id,
            started_at=datetime.now(timezone.utc),
            log=logger.bind(job=descriptor.name, run_id=run_id),
        )
        state.run_count += 1
        state.last_started_at = ctx.started_at
        JOB_STARTED.labels(job=descriptor.name).inc()
        JOB_RUNNING.labels(job=descriptor.name).inc()
        started = time.perf_counter()

        task = asyncio.create_task(body(ctx), name=f"job:{descriptor.name}:{run_id}")
        task.add_done_callback(lambda _t: JOB_RUNNING.labels(job=descriptor.name).dec())
        try:
            done, _ = await asyncio.wait({task}, timeout=descriptor.timeout_s)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task not in done:
            JOB_TIMEOUTS.labels(job=descriptor.name).inc()
            ctx.log.warning("job_timed_out", timeout_s=descriptor.timeout_s)
            self._background.add(task)
            task.add_done_callback(lambda t: self._on_late_finish(ctx, started, t))
            return JobOutcome.TIMED_OUT

        duration = time.perf_counter() - started
        state.last_finished_at = datetime.now(timezone.utc)
        state.last_duration_s = round(duration, 3)
        JOB_DURATION.labels(job=descriptor.name).observe(duration)
        if task.cancelled():
            ctx.log.warning("job_cancelled", duration_s=state.last_duration_s)
            return JobOutcome.FAILED
        exc = task.exception()
        if exc is not None:
            ctx.log.error(
                "job_failed",
                error=str(exc),
                duration_s=state.last_duration_s,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return JobOutcome.FAILED
        ctx.log.debug("job_completed", duration_s=state.last_duration_s, result=task.result())
        return JobOutcome.SUCCEEDED

    def _on_late_finish(self, ctx: JobContext, started: float, task: asyncio.Task) -> None:
        self._background.discard(task)
        duration = round(time.perf_counter() - started, 3)
        if task.cancelled():
            ctx.log.warning("job_late_cancelled", duration_s=duration)
        elif task.exception() is not None:
            ctx.log.error("job_late_failed", duration_s=duration, error=str(task.exception()))
        else:
            ctx.log.info("job_late_completed", duration_s=duration)

    @staticmethod
    def _finish(state: JobState, outcome: JobOutcome) -> JobOutcome:
        state.last_outcome = outcome
        JOB_RUNS.labels(job=state.name, outcome=outcome.value).inc()
        return outcome

    @property
    def background_count(self) -> int:
        return len(self._background)

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        """Give timed-out bodies a chance to finish, then cancel the rest."""
        if not self._background:
            return
        pending = list(self._background)
        logger.info("job_runner_draining", pending=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
