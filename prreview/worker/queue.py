import asyncio
import inspect
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from prreview.common.config import (
    JOB_STALE_SECONDS, KAFKA_TOPIC_JOBS, MAX_CONCURRENT_JOBS, SHUTDOWN_TIMEOUT_SECONDS
)
from prreview.common.db import SessionLocal
from prreview.common.errors import QueueClosedError
from prreview.common.models import ACTIVE_JOB_STATUSES, Job, JobStatus

logger = logging.getLogger(__name__)

PR_ANALYSIS = "pr-analysis"
REPOSITORY_INDEXING = "repository-indexing"

EVENTS = ("jobAdded", "jobStarted", "jobCompleted", "jobFailed")

Handler = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dedupe_key(job_type: str, key: str) -> str:
    return f"{job_type}:{key}"


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "dedupe_key": job.dedupe_key,
        "payload": job.payload,
        "result": job.result,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


class JobQueue:
    """Durable background job queue.

    Jobs are rows in the ``jobs`` table; Kafka only carries job ids between
    the process that enqueues and the processes that run them. A job is run
    by whichever consumer first flips it from pending to processing.
    """

    def __init__(
        self,
        producer=None,
        session_factory: Optional[async_sessionmaker] = None,
        topic: str = KAFKA_TOPIC_JOBS,
        concurrency: int = MAX_CONCURRENT_JOBS,
    ) -> None:
        self.producer = producer
        self.sessions = session_factory or SessionLocal
        self.topic = topic
        self.concurrency = concurrency
        self._sem = asyncio.Semaphore(concurrency)
        self._handlers: Dict[str, Handler] = {}
        self._listeners: Dict[str, List[Callable]] = {e: [] for e in EVENTS}
        self._tasks: Set[asyncio.Task] = set()
        self.closed = False

    def register(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def on(self, event: str, callback: Callable) -> None:
        """Register ``callback(job_dict)`` for one of jobAdded/jobStarted/jobCompleted/jobFailed."""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, job: Dict[str, Any]) -> None:
        for cb in self._listeners[event]:
            try:
                res = cb(job)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                logger.error("Queue listener for %s failed: %s", event, e)

    async def find_active(self, job_type: str, key: str) -> Optional[str]:
        """Id of the pending or processing job holding ``key``, if any."""
        async with self.sessions() as s:
            return (await s.execute(
                select(Job.id).where(
                    Job.dedupe_key == _dedupe_key(job_type, key),
                    Job.status.in_(ACTIVE_JOB_STATUSES)
                )
            )).scalar_one_or_none()

    async def add(self, job_type: str, payload: Dict[str, Any], key: Optional[str] = None) -> str:
        """Persist a job and hand it to the workers; returns the job id.

        With a ``key``, a job of the same type and key that is still pending
        or processing is returned instead of creating a second one.
        """
        if self.closed:
            raise QueueClosedError("Job queue is shutting down; not accepting new jobs")
        if job_type not in self._handlers:
            raise ValueError(f"No handler registered for job type {job_type!r}")

        if key:
            existing = await self.find_active(job_type, key)
            if existing:
                logger.info("Skipping %s job for %s; job %s is already queued", job_type, key, existing)
                return existing

        job_id = uuid.uuid4().hex
        async with self.sessions() as s:
            job = Job(
                id=job_id,
                type=job_type,
                status=JobStatus.PENDING.value,
                dedupe_key=_dedupe_key(job_type, key) if key else None,
                payload=payload
            )
            s.add(job)
            try:
                await s.commit()
            except IntegrityError:
                await s.rollback()
                existing = await self.find_active(job_type, key) if key else None
                if existing is None:
                    raise
                logger.info("Skipping %s job for %s; job %s was queued concurrently", job_type, key, existing)
                return existing
            snapshot = job_to_dict(job)

        logger.info("Queued %s job %s", job_type, job_id)
        await self._emit("jobAdded", snapshot)

        if self.producer is not None:
            await self.producer.send_and_wait(self.topic, json.dumps({"job_id": job_id}).encode())
        else:
            self.dispatch(job_id)
        return job_id

    def dispatch(self, job_id: str) -> asyncio.Task:
        """Schedule a job on the local worker pool."""
        task = asyncio.create_task(self._run(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _claim(self, job_id: str) -> Optional[Job]:
        async with self.sessions() as s:
            res = await s.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, started_at=_now())
            )
            await s.commit()
            if res.rowcount != 1:
                return None
            return await s.get(Job, job_id)

    async def _finish(self, job_id: str, status: JobStatus, result=None, error=None) -> Dict[str, Any]:
        async with self.sessions() as s:
            job = await s.get(Job, job_id)
            job.status = status.value
            job.result = result
            job.error = error
            job.completed_at = _now()
            await s.commit()
            return job_to_dict(job)

    async def _run(self, job_id: str) -> None:
        async with self._sem:
            job = await self._claim(job_id)
            if job is None:
                logger.debug("Job %s already claimed or unknown", job_id)
                return

            await self._emit("jobStarted", job_to_dict(job))
            handler = self._handlers.get(job.type)
            try:
                if handler is None:
                    raise ValueError(f"No handler registered for job type {job.type!r}")
                result = await handler(job.payload)
            except Exception as e:
                logger.error("Job %s (%s) failed: %s", job_id, job.type, e)
                done = await self._finish(job_id, JobStatus.FAILED, error=str(e))
                await self._emit("jobFailed", done)
                return

            done = await self._finish(job_id, JobStatus.COMPLETED, result=result)
            logger.info("Job %s (%s) completed", job_id, job.type)
            await self._emit("jobCompleted", done)

    async def consume(self, consumer) -> None:
        """Dispatch job ids read from a started AIOKafkaConsumer until stopped."""
        async for msg in consumer:
            if self.closed:
                break
            try:
                job_id = json.loads(msg.value.decode())["job_id"]
            except (ValueError, KeyError, AttributeError) as e:
                logger.error("Skipping malformed job message at offset %s: %s", msg.offset, e)
                continue
            self.dispatch(job_id)

    async def recover(self, stale_after: float = JOB_STALE_SECONDS) -> int:
        """Re-dispatch jobs left pending by a previous process.

        Jobs stuck in processing for longer than ``stale_after`` seconds are
        marked failed so their dedupe key can be queued again.
        """
        cutoff = _now() - timedelta(seconds=stale_after)
        async with self.sessions() as s:
            res = await s.execute(
                update(Job)
                .where(Job.status == JobStatus.PROCESSING.value, Job.started_at < cutoff)
                .values(
                    status=JobStatus.FAILED.value,
                    error="Abandoned while processing",
                    completed_at=_now()
                )
            )
            await s.commit()
            if res.rowcount:
                logger.warning("Marked %d abandoned job(s) as failed", res.rowcount)

            ids = (await s.execute(
                select(Job.id).where(Job.status == JobStatus.PENDING.value).order_by(Job.created_at)
            )).scalars().all()
        for job_id in ids:
            self.dispatch(job_id)
        if ids:
            logger.info("Recovered %d pending job(s)", len(ids))
        return len(ids)

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self.sessions() as s:
            job = await s.get(Job, job_id)
            return job_to_dict(job) if job else None

    async def stats(self) -> Dict[str, int]:
        async with self.sessions() as s:
            rows = (await s.execute(select(Job.status, func.count()).group_by(Job.status))).all()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: n for status, n in rows})
        return {
            "total": sum(counts.values()),
            **counts,
            "depth": counts[JobStatus.PENDING.value],
            "active": self.active_count(),
        }

    def active_count(self) -> int:
        return len(self._tasks)

    def stop(self) -> None:
        """Stop accepting new jobs; running ones continue."""
        self.closed = True

    async def drain(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS) -> int:
        """Wait for in-flight jobs; returns how many were still running at the deadline."""
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d job(s) still running after %.0fs", len(pending), timeout)
        return len(pending)
