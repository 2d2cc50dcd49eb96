"""
Scheduler service for Scoreline.
Runs the bucket enqueue ticks, the drain tick and the maintenance jobs on
fixed cadences, plus the push-feed listener, all through the JobRunner.
Several instances may run side by side; JOB locks keep shared jobs single-flight.
"""
from __future__ import annotations

import asyncio
import signal
from typing import Optional

from coordination.events import EventDispatcher, RedisEventPublisher
from coordination.locks import LockManager
from coordination.registry import ProvenanceRegistry, SourcePriorityTable
from coordination.repository import MatchRepository
from coordination.write_gate import WriteGate
from ingest.feed import FeedListener
from ingest.upstream import HTTPUpstreamClient, UpstreamClient
from jobs.finisher import StaleLiveFinisher
from jobs.minute import MatchMinuteJob
from jobs.registry import (
    CATALOG_REFRESH,
    MATCH_MINUTE,
    RECONCILE_DRAIN,
    STALE_LIVE_FINISHER,
    JobRegistry,
    build_job_registry,
    enqueue_job_name,
)
from jobs.runner import JobBody, JobDescriptor, JobRunner
from scheduler.buckets import build_bucket_table
from scheduler.reconciliation import ReconciliationScheduler
from shared.config import Settings, get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

CONNECT_RETRY_ATTEMPTS = 5
CONNECT_RETRY_BASE_DELAY_S = 2.0
STATUS_LOG_INTERVAL_S = 60.0


async def _connect_with_retry(connect_fn, name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == CONNECT_RETRY_ATTEMPTS:
                raise
            delay = CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


class Ticker:
    """
    Starts ``runner.run(descriptor, body)`` every ``interval_s`` without waiting
    for the previous run, so a slow run meets the overlap guard.
    """

    def __init__(
        self,
        runner: JobRunner,
        descriptor: JobDescriptor,
        body: JobBody,
        interval_s: float,
        initial_delay_s: float = 0.0,
    ) -> None:
        self._runner = runner
        self.descriptor = descriptor
        self._body = body
        self.interval_s = interval_s
        self._initial_delay_s = initial_delay_s
        self._inflight: set[asyncio.Task] = set()

    async def run(self, shutdown: asyncio.Event) -> None:
        if await self._wait(shutdown, self._initial_delay_s):
            return
        while not shutdown.is_set():
            task = asyncio.create_task(self._runner.run(self.descriptor, self._body))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            if await self._wait(shutdown, self.interval_s):
                break
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @staticmethod
    async def _wait(shutdown: asyncio.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if shutdown was requested meanwhile."""
        if seconds <= 0:
            return shutdown.is_set()
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


class SchedulerService:
    def __init__(
        self,
        db: DatabaseManager,
        redis: RedisManager,
        upstream: UpstreamClient,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._db = db
        self._redis = redis
        self._upstream = upstream
        self._shutdown = asyncio.Event()

        self.locks = LockManager(db)
        self.events = EventDispatcher()
        self.events.register(RedisEventPublisher(redis), name="redis_publisher")
        self.repository = MatchRepository(db, ProvenanceRegistry.default())
        self.gate = WriteGate(
            self.locks,
            self.repository,
            SourcePriorityTable.from_settings(self._settings),
            events=self.events,
            settings=self._settings,
        )
        buckets = build_bucket_table(self._settings)
        self.reconciler = ReconciliationScheduler(
            self.repository, self.gate, upstream, buckets, settings=self._settings
        )
        self.jobs: JobRegistry = build_job_registry([b.name for b in buckets], self._settings)
        self.runner = JobRunner(self.locks, jobs=self.jobs)
        self.feed: Optional[FeedListener] = (
            FeedListener(redis, self.gate, self.reconciler, self._settings)
            if self._settings.feed_enabled
            else None
        )
        self.tickers = self._build_tickers()

    def _build_tickers(self) -> list[Ticker]:
        s = self._settings
        tickers = [
            Ticker(
                self.runner,
                self.jobs.get(enqueue_job_name(bucket.name)),
                self.reconciler.enqueue_body(bucket.name),
                bucket.interval_s,
            )
            for bucket in self.reconciler.buckets
        ]
        tickers.append(Ticker(
            self.runner,
            self.jobs.get(RECONCILE_DRAIN),
            self.reconciler.drain_body,
            s.reconcile_drain_interval_s,
            initial_delay_s=s.reconcile_drain_interval_s,
        ))
        tickers.append(Ticker(
            self.runner,
            self.jobs.get(MATCH_MINUTE),
            MatchMinuteJob(self.repository, self.gate, s.minute_job_batch_size),
            s.minute_job_interval_s,
        ))
        tickers.append(Ticker(
            self.runner,
            self.jobs.get(STALE_LIVE_FINISHER),
            StaleLiveFinisher(self.repository, self.gate),
            s.finisher_interval_s,
        ))
        tickers.append(Ticker(
            self.runner,
            self.jobs.get(CATALOG_REFRESH),
            self.reconciler.catalog_body,
            s.catalog_refresh_interval_s,
        ))
        return tickers

    async def _log_status(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=STATUS_LOG_INTERVAL_S)
            except asyncio.TimeoutError:
                logger.info(
                    "scheduler_status",
                    pending=len(self.reconciler.pending),
                    timed_out_jobs=self.runner.background_count,
                    jobs=self.runner.snapshot(),
                )

    async def run(self) -> None:
        tasks = [asyncio.create_task(t.run(self._shutdown), name=f"ticker:{t.descriptor.name}") for t in self.tickers]
        tasks.append(asyncio.create_task(self._log_status(), name="status-log"))
        if self.feed is not None:
            tasks.append(asyncio.create_task(self.feed.listen(), name="feed-listener"))
        logger.info("scheduler_tickers_started", tickers=len(self.tickers), feed=self.feed is not None)
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        await self.runner.shutdown()
        await self.events.wait_idle()

    def request_shutdown(self) -> None:
        self._shutdown.set()
        if self.feed is not None:
            self.feed.request_shutdown()


async def main() -> None:
    """Scheduler service entrypoint."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server(settings.metrics_port)

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    upstream = HTTPUpstreamClient(settings)

    await _connect_with_retry(redis.connect, "Redis")
    await _connect_with_retry(db.connect, "Database")
    await upstream.start()

    service = SchedulerService(db, redis, upstream, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_shutdown)
        except NotImplementedError:
            pass

    logger.info("scheduler_service_started", instance_id=settings.instance_id)

    try:
        await service.run()
    finally:
        await service.stop()
        await upstream.close()
        await db.disconnect()
        await redis.disconnect()
        logger.info("scheduler_service_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
