"""Intake scheduler.

Owns a queue and a fixed pool of worker tasks feeding the pipeline. There are
no timers: directory scans happen only when something calls ``trigger_scan``
(a file-system watcher, a message consumer, a cron-driven CLI run).

Lifecycle is explicit: ``start()`` spawns the workers, ``stop()`` drains the
queue (or cancels in-flight runs with ``drain=False``) and awaits every worker.
A cancelled run releases its ledger claim as failed, so stopping never strands
a claim.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

from .errors import IMP_E_INTERNAL, ValidationError
from .models import EvidenceSubmission, OutcomeStatus, PipelineOutcome
from .pipeline import EvidencePipeline

logger = logging.getLogger("impact_gateway.scheduler")

SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png")


class IntakeScheduler:
    def __init__(
        self,
        pipeline: EvidencePipeline,
        *,
        workers: int = 4,
        queue_size: int = 0,
        on_outcome: Optional[Callable[[PipelineOutcome], None]] = None,
        history: int = 1000,
    ):
        self.pipeline = pipeline
        self.workers = max(1, int(workers))
        self.queue_size = max(0, int(queue_size))
        self.on_outcome = on_outcome
        # Most recent outcomes only; on_outcome sees every one.
        self.outcomes: Deque[PipelineOutcome] = deque(maxlen=max(1, int(history)))
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"impact-intake-{i}") for i in range(self.workers)
        ]
        logger.info("intake scheduler started with %d workers", self.workers)

    async def stop(self, *, drain: bool = True) -> None:
        if not self._tasks:
            return
        if drain and self._queue is not None:
            await self._queue.join()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        logger.info("intake scheduler stopped")

    async def submit(self, submission: EvidenceSubmission) -> None:
        if self._queue is None:
            raise RuntimeError("scheduler is not running")
        await self._queue.put(submission)

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def trigger_scan(self, directory: Union[str, Path]) -> int:
        """Enqueue supported images in ``directory`` that the ledger has not seen.

        Returns the number of files enqueued.
        """
        root = Path(directory)
        if not root.is_dir():
            logger.warning("scan target %s is not a directory", root)
            return 0
        queued = 0
        for path in sorted(root.iterdir()):
            if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
                continue
            data = await asyncio.to_thread(path.read_bytes)
            sub = EvidenceSubmission(data=data, filename=path.name)
            if await self._already_processed(sub):
                logger.debug("skipping %s: already in ledger", path.name)
                continue
            await self.submit(sub)
            queued += 1
        logger.info("scan of %s queued %d file(s)", root, queued)
        return queued

    async def _already_processed(self, sub: EvidenceSubmission) -> bool:
        try:
            evidence = await asyncio.to_thread(self.pipeline.normalizer.normalize, sub)
        except ValidationError:
            # Let the pipeline record the rejection.
            return False
        return await asyncio.to_thread(self.pipeline.ledger.is_processed, evidence.content_hash)

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            sub = await queue.get()
            try:
                outcome = await self.pipeline.process(sub)
            except asyncio.CancelledError:
                queue.task_done()
                raise
            except Exception as e:
                logger.exception("worker %d: unexpected error for %s", index, sub.filename or "<bytes>")
                outcome = PipelineOutcome(
                    status=OutcomeStatus.FAILED,
                    filename=sub.filename,
                    error={"code": IMP_E_INTERNAL, "message": f"{type(e).__name__}: {e}"},
                )
            self.outcomes.append(outcome)
            if self.on_outcome is not None:
                self.on_outcome(outcome)
            queue.task_done()
