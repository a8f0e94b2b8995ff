"""
Interval scheduler for the sweeper and maintenance jobs.

Owned by main.py: start() spawns one loop task per job, stop() cancels them
and waits. Each iteration:
- skips when the previous run of the same job is still going (asyncio lock)
- skips when another instance holds the job's Redis lease (REDIS_URL set)
- is bounded by the job's timeout
- logs ITERATION_START / ITERATION_END with the failure taxonomy
A failing job is retried on its next tick; it never stops the scheduler.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

import database
from app.core.redis_client import get_redis_client
from app.core.redis_lock import RedisDistributedLock
from app.utils.logging_helpers import (
    classify_error,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT_SECONDS = 120.0
MINIMUM_SAFE_SLEEP_ON_FAILURE = 30  # seconds
LEASE_TTL_MARGIN_SECONDS = 30

JobFunc = Callable[[], Awaitable[Optional[int]]]


@dataclass
class ScheduledJob:
    name: str
    func: JobFunc
    interval_seconds: float
    timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS
    startup_delay: float = 0.0
    require_db: bool = True
    iterations: int = 0
    last_outcome: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Scheduler:
    """Named interval jobs with start()/stop() lifecycle"""

    def __init__(
        self,
        redis_client_factory: Callable[[], Awaitable[Optional[object]]] = get_redis_client,
        startup_jitter: float = 0.0,
    ):
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._redis_client_factory = redis_client_factory
        self._startup_jitter = startup_jitter

    @property
    def jobs(self) -> Dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def add_job(
        self,
        name: str,
        func: JobFunc,
        interval_seconds: float,
        timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
        startup_delay: float = 0.0,
        require_db: bool = True,
    ) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"Job '{name}' already registered")
        if interval_seconds <= 0:
            raise ValueError(f"Job '{name}' interval must be positive, got {interval_seconds}")
        job = ScheduledJob(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            timeout_seconds=timeout_seconds,
            startup_delay=startup_delay,
            require_db=require_db,
        )
        self._jobs[name] = job
        return job

    def start(self) -> None:
        """Spawn a loop task per job. Must be called from a running event loop."""
        if self.running:
            logger.warning("SCHEDULER_ALREADY_RUNNING")
            return
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._job_loop(job), name=f"job:{name}")
        logger.info(f"SCHEDULER_STARTED jobs={sorted(self._jobs)}")

    async def stop(self) -> None:
        """Cancel every job loop and wait until all have exited"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("SCHEDULER_STOPPED")

    async def run_job_once(self, name: str) -> str:
        """
        Run one iteration of a job now.

        Returns:
            "success" | "skipped" | "timeout" | "failed"
        """
        job = self._jobs[name]
        if job.lock.locked():
            logger.info(f"JOB_OVERLAP_SKIPPED job={name}")
            return "skipped"

        job.iterations += 1
        started = time.monotonic()
        log_worker_iteration_start(worker_name=name, iteration_number=job.iterations)

        outcome = "success"
        error_type = None
        items_processed = None
        try:
            if job.require_db and not database.DB_READY:
                logger.warning(f"JOB_SKIPPED job={name} reason=db_not_ready")
                outcome = "skipped"
            else:
                async with job.lock:
                    lease = await self._acquire_lease(job)
                    if lease is False:
                        outcome = "skipped"
                    else:
                        try:
                            items_processed = await asyncio.wait_for(job.func(), timeout=job.timeout_seconds)
                        finally:
                            if lease is not None:
                                await lease.release()
        except asyncio.TimeoutError:
            logger.error(f"JOB_TIMEOUT job={name} exceeded {job.timeout_seconds}s - iteration cancelled")
            outcome = "timeout"
            error_type = "timeout"
        except Exception as e:
            logger.error(f"JOB_FAILED job={name} error={type(e).__name__}: {str(e)[:200]}")
            logger.debug(f"{name}: full traceback", exc_info=True)
            outcome = "failed"
            error_type = classify_error(e)
        finally:
            job.last_outcome = outcome
            log_worker_iteration_end(
                worker_name=name,
                outcome=outcome,
                items_processed=items_processed if isinstance(items_processed, int) else None,
                error_type=error_type,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
        return outcome

    async def _acquire_lease(self, job: ScheduledJob):
        """
        Returns:
            acquired RedisDistributedLock, None when running without Redis,
            False when another instance holds the lease
        """
        client = await self._redis_client_factory()
        if client is None:
            return None
        lease = RedisDistributedLock(
            client,
            f"lease:job:{job.name}",
            ttl_seconds=int(job.timeout_seconds) + LEASE_TTL_MARGIN_SECONDS,
            wait_timeout=0,
        )
        try:
            if await lease.acquire():
                return lease
        except Exception as e:
            # Jobs are idempotent; losing the lease only risks a duplicate run
            logger.warning(f"JOB_LEASE_UNAVAILABLE job={job.name} error={type(e).__name__}: {str(e)[:100]}")
            return None
        logger.info(f"JOB_LEASE_HELD_ELSEWHERE job={job.name}")
        return False

    async def _job_loop(self, job: ScheduledJob) -> None:
        delay = job.startup_delay
        if self._startup_jitter:
            delay += random.uniform(0, self._startup_jitter)
        if delay:
            await asyncio.sleep(delay)

        while True:
            try:
                outcome = await self.run_job_once(job.name)
            except asyncio.CancelledError:
                logger.info(f"JOB_CANCELLED job={job.name}")
                raise
            sleep_for = job.interval_seconds
            if outcome in ("failed", "timeout"):
                sleep_for = max(job.interval_seconds, MINIMUM_SAFE_SLEEP_ON_FAILURE)
            await asyncio.sleep(sleep_for)
