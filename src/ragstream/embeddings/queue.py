"""
Async queue for background ingestion jobs.

``POST /documents/ingest/jobs`` enqueues a request and returns at once; a
single worker task started by the application consumes jobs in order.
Finished jobs are kept for lookup until ``max_retained`` is exceeded, then
the oldest finished ones are dropped.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .ingestion import IngestionService
from .models import IngestionRequest, IngestionResult

logger = logging.getLogger("ragstream.ingestion")


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IngestionJob:
    """A queued ingestion request."""
    request: IngestionRequest

    # Metadata for tracing
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    result: Optional[IngestionResult] = None
    error: Optional[str] = None


class EmbeddingQueue:
    """FIFO of ingestion jobs consumed by ``process_ingestion_worker``."""

    def __init__(self, max_retained: int = 1000) -> None:
        self._queue: asyncio.Queue[IngestionJob] = asyncio.Queue()
        self._jobs: Dict[str, IngestionJob] = {}
        self._max_retained = max_retained

    async def enqueue(self, job: IngestionJob) -> int:
        """Add a job to the queue. Returns current queue size."""
        self._jobs[job.job_id] = job
        self._prune()
        await self._queue.put(job)
        qsize = self._queue.qsize()
        logger.info(
            "Job enqueued: %s (%d documents, queue size: %d)",
            job.job_id,
            len(job.request.documents),
            qsize,
        )
        return qsize

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(job_id)

    async def get_next_job(self) -> IngestionJob:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    def _prune(self) -> None:
        excess = len(self._jobs) - self._max_retained
        if excess <= 0:
            return
        finished = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)
        ]
        for job_id in finished[:excess]:
            del self._jobs[job_id]


async def process_ingestion_worker(
    queue: EmbeddingQueue,
    service: IngestionService,
) -> None:
    """
    Consume jobs until cancelled. A failing job is logged and the worker
    moves on to the next one.
    """
    logger.info("Ingestion worker started.")

    while True:
        try:
            job = await queue.get_next_job()
        except asyncio.CancelledError:
            logger.info("Ingestion worker cancelled.")
            raise

        try:
            logger.info("Processing ingestion job: %s", job.job_id)
            job.status = JobStatus.RUNNING
            job.result = await service.ingest(job.request)
            job.status = JobStatus.COMPLETED
            logger.info(
                "Finished ingestion job %s: %d succeeded, %d failed",
                job.job_id,
                job.result.success_count,
                job.result.failure_count,
            )
        except asyncio.CancelledError:
            job.status = JobStatus.FAILED
            job.error = "Ingestion worker stopped"
            logger.info("Ingestion worker cancelled.")
            raise
        except Exception as exc:
            job.status = JobStatus.FAILED
            job.error = str(exc)
            logger.exception("Ingestion job %s failed", job.job_id)
        finally:
            queue.task_done()
