import asyncio
import logging
from typing import List, Optional, Set

from .blob_store import LocalBlobStore
from .errors import IdentificationError, JobNotFoundError, StateConflictError, error_payload
from .job_store import JobStore
from .pipeline import IdentificationPipeline, ImageInput
from .schemas import Job

logger = logging.getLogger("uvicorn.error")


def backoff_delay(attempts: int, base_s: float, max_s: float) -> float:
    """Exponential backoff for the next retry after `attempts` executions."""
    if base_s <= 0:
        return 0.0
    return min(max_s, base_s * (2 ** max(0, attempts - 1)))


class JobRunner:
    """FIFO queue drained by a fixed pool of worker tasks.

    The pending -> running transition in the store is the mutual-exclusion guard:
    a worker that loses the claim skips the job.
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: IdentificationPipeline,
        blob_store: LocalBlobStore,
        concurrency: int = 3,
        max_attempts: int = 3,
        backoff_base_s: float = 1.0,
        backoff_max_s: float = 30.0,
    ):
        self.store = store
        self.pipeline = pipeline
        self.blob_store = blob_store
        self.concurrency = max(1, int(concurrency))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.queue: "asyncio.Queue[str]" = asyncio.Queue()
        self.workers: List[asyncio.Task] = []
        self.in_flight: Set[str] = set()
        self._tracked: Set[str] = set()
        self._retry_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self.workers)

    def start(self) -> None:
        if self.running:
            return
        self.workers = [
            asyncio.create_task(self._worker(idx), name=f"identify-worker-{idx}")
            for idx in range(self.concurrency)
        ]
        logger.info("Job runner started with %d worker(s)", self.concurrency)

    async def stop(self) -> None:
        for task in list(self._retry_tasks) + self.workers:
            task.cancel()
        await asyncio.gather(*self._retry_tasks, *self.workers, return_exceptions=True)
        self._retry_tasks.clear()
        self.workers = []

    def enqueue(self, job_id: str) -> bool:
        """Schedule a job once; returns False if it is already queued or executing."""
        if job_id in self._tracked:
            return False
        self._tracked.add(job_id)
        self.queue.put_nowait(job_id)
        return True

    async def wait_idle(self) -> None:
        while True:
            await self.queue.join()
            if not self._retry_tasks and not self._tracked:
                return
            await asyncio.sleep(0.01)

    def stats(self) -> dict:
        return {
            "workers": len([t for t in self.workers if not t.done()]),
            "queued": self.queue.qsize(),
            "in_flight": len(self.in_flight),
            "retry_scheduled": len(self._retry_tasks),
        }

    async def _worker(self, idx: int) -> None:
        while True:
            job_id = await self.queue.get()
            self.in_flight.add(job_id)
            try:
                await self.process_job(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error while processing job %s", job_id)
            finally:
                self.in_flight.discard(job_id)
                self._tracked.discard(job_id)
                self.queue.task_done()

    async def process_job(self, job_id: str) -> Optional[Job]:
        try:
            job = await self.store.mark_running(job_id)
        except (StateConflictError, JobNotFoundError) as exc:
            logger.info("Skipping job %s: %s", job_id, exc)
            return None
        logger.info("Job %s claimed (attempt %d)", job_id, job.attempts)

        trace = []
        model_used = job.payload.model
        try:
            payload = job.payload
            validated = self.pipeline.validate(payload.barcodes, [ref.size for ref in payload.files])
            images = [
                ImageInput(
                    filename=ref.original_name,
                    mime_type=ref.mime_type,
                    data=await self.blob_store.load(ref.uri),
                    public_url=self.blob_store.public_url(ref.uri),
                )
                for ref in payload.files
            ]
            result = await self.pipeline.run(validated, images, payload.locale, payload.model)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if isinstance(exc, IdentificationError):
                trace = exc.trace
                model_used = exc.model_used or model_used
            return await self._handle_failure(job, exc, trace, model_used)

        done = await self.store.mark_done(job_id, result.bundle, result.trace, result.model_used)
        logger.info("Job %s done (%d product(s))", job_id, len(result.bundle.products))
        return done

    async def _handle_failure(self, job: Job, exc: Exception, trace, model_used: Optional[str]) -> Job:
        payload = error_payload(exc)
        retryable = isinstance(exc, IdentificationError) and exc.retryable
        if retryable and job.attempts < self.max_attempts:
            delay = backoff_delay(job.attempts, self.backoff_base_s, self.backoff_max_s)
            requeued = await self.store.requeue(job.id, last_error=payload)
            logger.warning(
                "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
                job.id,
                job.attempts,
                self.max_attempts,
                payload["code"],
                delay,
            )
            self._schedule_retry(job.id, delay)
            return requeued
        failed = await self.store.mark_failed(job.id, payload, trace, model_used)
        logger.error("Job %s failed after %d attempt(s): %s", job.id, job.attempts, payload["message"])
        return failed

    def _schedule_retry(self, job_id: str, delay: float) -> None:
        async def _delayed() -> None:
            if delay:
                await asyncio.sleep(delay)
            self.enqueue(job_id)

        # The worker releases its tracking entry once this job returns; the retry re-adds it.
        task = asyncio.create_task(_delayed())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def resume_pending_jobs(self) -> int:
        """Re-submit jobs left pending or running by a previous process.

        Idempotent: jobs already queued or executing in this process are skipped.
        """
        resumed = 0
        for job in await self.store.list_by_status(["pending", "running"]):
            if job.id in self._tracked:
                continue
            if job.status == "running":
                try:
                    await self.store.requeue(job.id)
                except StateConflictError:
                    continue
            if self.enqueue(job.id):
                resumed += 1
        logger.info("Job runner resumed %d pending job(s)", resumed)
        return resumed
