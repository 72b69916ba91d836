"""Background memory ingestion.

Completed turns are queued and processed by a small pool of worker
tasks, separate from request handling.  Each job is bounded by a
timeout; model extraction runs first and the rule router is used when
the model is unavailable or fails.  Failures are logged and never reach
the caller.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from conductor.memory.extractor import DEFAULT_EXTRACTION_THRESHOLD, LLMMemoryExtractor
from conductor.memory.models import MemoryFact
from conductor.memory.router import MemoryRouter
from conductor.memory.store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionJob:
    """One completed turn awaiting memory extraction."""

    user_message: str
    assistant_message: str = ""
    thread_id: str | None = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class IngestionStats:
    submitted: int = 0
    processed: int = 0
    dropped: int = 0
    failed: int = 0
    facts_written: int = 0


class MemoryIngestionQueue:
    """Bounded queue plus worker pool for detached memory extraction."""

    def __init__(
        self,
        memory: MemoryStore,
        extractor: LLMMemoryExtractor | None = None,
        router: MemoryRouter | None = None,
        workers: int = 2,
        timeout: float = 30.0,
        maxsize: int = 100,
        threshold: float | None = None,
    ) -> None:
        """Initialize the ingestion queue.

        Args:
            memory: Store facts are written to.
            extractor: Model extractor tried first, if available.
            router: Rule-based fallback extractor.
            workers: Number of worker tasks.
            timeout: Seconds allowed per job.
            maxsize: Queue capacity; submissions beyond it are dropped.
            threshold: Minimum confidence for any fact to be written.
                Defaults to the extractor's threshold.
        """
        self._memory = memory
        self._extractor = extractor
        self._router = router or MemoryRouter()
        if threshold is None:
            threshold = extractor.threshold if extractor is not None else DEFAULT_EXTRACTION_THRESHOLD
        self.threshold = threshold
        self._worker_count = max(1, workers)
        self._timeout = timeout
        self._queue: asyncio.Queue[IngestionJob] = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task[None]] = []
        self._running = False
        self.stats = IngestionStats()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the worker tasks; no-op if already running."""
        if self._running:
            logger.debug("Memory ingestion already running")
            return

        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"memory-ingest-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Memory ingestion started", extra={"workers": self._worker_count})

    async def stop(self) -> None:
        """Cancel the workers; queued jobs that have not started are discarded."""
        if not self._running:
            logger.debug("Memory ingestion not running")
            return

        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        logger.info("Memory ingestion stopped", extra={"pending": self.pending})

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    def submit(self, job: IngestionJob) -> bool:
        """Queue a job without blocking.

        Returns:
            True if queued, False if the queue was full and the job dropped.
        """
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            logger.warning(
                "Memory ingestion queue full, dropping turn",
                extra={"thread_id": job.thread_id, "capacity": self._queue.maxsize},
            )
            return False
        self.stats.submitted += 1
        return True

    async def _worker_loop(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await asyncio.wait_for(self.process(job), timeout=self._timeout)
            except TimeoutError:
                self.stats.failed += 1
                logger.warning(
                    "Memory ingestion timed out",
                    extra={"worker": index, "thread_id": job.thread_id, "timeout": self._timeout},
                )
            except Exception:
                # Ingestion failures never surface to the request path
                self.stats.failed += 1
                logger.exception(
                    "Memory ingestion failed",
                    extra={"worker": index, "thread_id": job.thread_id},
                )
            finally:
                self._queue.task_done()

    async def extract(self, job: IngestionJob) -> list[MemoryFact]:
        """Facts for *job*: model extraction first, rules as the fallback."""
        if self._extractor is not None and self._extractor.available:
            try:
                return await self._extractor.extract(job.user_message, job.assistant_message)
            except Exception as e:
                logger.warning(
                    "Model memory extraction failed, falling back to rules",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
        return self._router.extract_facts(job.user_message)

    async def process(self, job: IngestionJob) -> int:
        """Extract and store facts for one job.

        Returns:
            Number of facts written.
        """
        extracted = await self.extract(job)
        facts = [f for f in extracted if f.confidence >= self.threshold]
        if len(facts) < len(extracted):
            logger.debug(
                "Dropped low-confidence memory facts",
                extra={"dropped": len(extracted) - len(facts), "threshold": self.threshold},
            )
        written = 0
        for fact in facts:
            if await self._memory.upsert_fact(fact):
                written += 1

        self.stats.processed += 1
        self.stats.facts_written += written
        if facts:
            logger.info(
                "Ingested memory facts",
                extra={"thread_id": job.thread_id, "extracted": len(facts), "written": written},
            )
        return written
