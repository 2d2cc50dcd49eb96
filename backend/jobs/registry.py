"""Static job table: every periodic job, its timeout and its JOB lock key."""
from __future__ import annotations

from typing import Iterator

from coordination.locks import LockKey
from jobs.runner import JobDescriptor
from shared.config import Settings, get_settings
from shared.errors import RegistryError

RECONCILE_DRAIN = "reconcile_drain"
MATCH_MINUTE = "match_minute"
STALE_LIVE_FINISHER = "stale_live_finisher"
CATALOG_REFRESH = "catalog_refresh"
ENQUEUE_PREFIX = "reconcile_enqueue"

# JOB lock keys. Must stay below MATCH_KEY_OFFSET and never be reused.
RECONCILE_DRAIN_LOCK = 7001
MATCH_MINUTE_LOCK = 7002
STALE_LIVE_FINISHER_LOCK = 7003
CATALOG_REFRESH_LOCK = 7004


def enqueue_job_name(bucket_name: str) -> str:
    return f"{ENQUEUE_PREFIX}:{bucket_name}"


class JobRegistry:
    def __init__(self) -> None:
        self._jobs: dict[str, JobDescriptor] = {}

    def register(self, descriptor: JobDescriptor) -> JobDescriptor:
        if descriptor.name in self._jobs:
            raise RegistryError(f"job {descriptor.name!r} already registered")
        if descriptor.lock_key is not None:
            for other in self._jobs.values():
                if other.lock_key == descriptor.lock_key:
                    raise RegistryError(
                        f"lock key {descriptor.lock_key} of {descriptor.name!r} already used by {other.name!r}"
                    )
        self._jobs[descriptor.name] = descriptor
        return descriptor

    def get(self, name: str) -> JobDescriptor:
        try:
            return self._jobs[name]
        except KeyError:
            raise RegistryError(f"unknown job {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __iter__(self) -> Iterator[JobDescriptor]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)


def build_job_registry(bucket_names: list[str], settings: Settings | None = None) -> JobRegistry:
    """
    Register the fixed jobs plus one enqueue tick per bucket.

    Enqueue ticks only touch this instance's pending set, so they carry no JOB
    lock; drain and the maintenance jobs are single-flight across instances.
    """
    settings = settings or get_settings()
    registry = JobRegistry()
    registry.register(JobDescriptor(
        name=RECONCILE_DRAIN,
        timeout_s=settings.drain_job_timeout_s,
        lock_key=LockKey.for_job(RECONCILE_DRAIN_LOCK),
        description="Reconcile a batch of pending matches against upstream",
    ))
    registry.register(JobDescriptor(
        name=MATCH_MINUTE,
        timeout_s=settings.minute_job_timeout_s,
        lock_key=LockKey.for_job(MATCH_MINUTE_LOCK),
        description="Advance the computed minute of live matches",
    ))
    registry.register(JobDescriptor(
        name=STALE_LIVE_FINISHER,
        timeout_s=settings.finisher_timeout_s,
        lock_key=LockKey.for_job(STALE_LIVE_FINISHER_LOCK),
        description="Finish live matches that should long be over",
    ))
    registry.register(JobDescriptor(
        name=CATALOG_REFRESH,
        timeout_s=settings.enqueue_job_timeout_s,
        lock_key=LockKey.for_job(CATALOG_REFRESH_LOCK),
        description="Enqueue every match in the catalog window",
    ))
    for bucket_name in bucket_names:
        registry.register(JobDescriptor(
            name=enqueue_job_name(bucket_name),
            timeout_s=settings.enqueue_job_timeout_s,
            description=f"Select {bucket_name} candidates into the pending set",
        ))
    return registry
