"""Worker pool — N threads pulling jobs off the dispatch queue.

Each worker leases one job at a time. The queue hands a given job to one
worker only, so per-key exclusivity needs no locking here. Receipt status
follows the job:

- processor returns          -> job completed, receipt PROCESSED
- processor raises, retries  -> job delayed, receipt untouched
- processor raises, last try -> job dead-lettered, receipt FAILED

A separate reaper thread periodically returns jobs whose lease expired
(a worker process died mid-job) to the queue.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from dealhook.downstream.models import DispatchReport
from dealhook.queue.jobs import DispatchQueue, Job
from dealhook.receipts.models import ReceiptStatus
from dealhook.receipts.store import ReceiptStore

logger = logging.getLogger(__name__)


class JobProcessor(Protocol):
    def process(self, job: Job) -> DispatchReport:
        ...


class Worker:
    """Executes one job at a time against the processor."""

    def __init__(
        self,
        queue: DispatchQueue,
        receipts: ReceiptStore,
        processor: JobProcessor,
        name: str = "worker-0",
    ) -> None:
        self.name = name
        self._queue = queue
        self._receipts = receipts
        self._processor = processor

    def _set_receipt_status(self, job: Job, status: ReceiptStatus) -> None:
        source = job.data.get("source")
        reference = job.data.get("reference")
        if not source or not reference:
            logger.warning("Job %s carries no receipt identity; status %s not recorded", job.id, status.value)
            return
        if self._receipts.set_status(source, reference, status) is None:
            logger.warning("No receipt for %s/%s (job %s)", source, reference, job.id)

    def process_next(self, timeout: float = 1.0) -> bool:
        """Run one job if one is ready within ``timeout``. True if a job ran."""
        job = self._queue.fetch(timeout=timeout)
        if job is None:
            return False
        self.run(job)
        return True

    def run(self, job: Job) -> None:
        logger.debug("%s picked up job %s (attempt %d)", self.name, job.id, job.attempts_made + 1)
        try:
            report = self._processor.process(job)
        except Exception as e:
            outcome = self._queue.fail(job, e)
            if outcome.dead_lettered:
                logger.error(
                    "Job %s failed after %d attempts, dead-lettered: %s",
                    job.id,
                    outcome.attempts_made,
                    e,
                    exc_info=True,
                )
                self._set_receipt_status(job, ReceiptStatus.FAILED)
            else:
                logger.warning(
                    "Job %s attempt %d/%d failed (%s), retry in %.1fs",
                    job.id,
                    outcome.attempts_made,
                    job.options.attempts,
                    e,
                    outcome.retry_delay or 0.0,
                )
            return

        self._queue.complete(job, report.to_dict())
        self._set_receipt_status(job, ReceiptStatus.PROCESSED)


class WorkerPool:
    """Fixed-size pool of worker threads plus a stalled-job reaper."""

    def __init__(
        self,
        queue: DispatchQueue,
        receipts: ReceiptStore,
        processor: JobProcessor,
        concurrency: int = 5,
        poll_timeout: float = 1.0,
        recover_interval: float = 30.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._queue = queue
        self._poll_timeout = poll_timeout
        self._recover_interval = recover_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.workers = [
            Worker(queue, receipts, processor, name=f"{queue.name}-worker-{i}")
            for i in range(concurrency)
        ]

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._poll_loop, args=(w,), daemon=True, name=w.name)
            for w in self.workers
        ]
        self._threads.append(
            threading.Thread(target=self._reap_loop, daemon=True, name=f"{self._queue.name}-reaper")
        )
        for t in self._threads:
            t.start()
        logger.info("Worker pool started: %d workers on %s", len(self.workers), self._queue.name)

    def request_stop(self) -> None:
        """Ask all threads to exit after their current job. Safe from signal handlers."""
        self._stop.set()

    def stop(self, timeout: float = 10.0) -> None:
        """Signal all threads and wait for in-flight jobs to finish."""
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        stuck = [t.name for t in self._threads if t.is_alive()]
        if stuck:
            logger.warning("Workers still busy after %.0fs: %s", timeout, ", ".join(stuck))
        self._threads = []
        logger.info("Worker pool stopped")

    def wait(self) -> None:
        """Block until request_stop() is called, typically from a signal handler."""
        while not self._stop.wait(1.0):
            pass

    def _poll_loop(self, worker: Worker) -> None:
        while not self._stop.is_set():
            try:
                worker.process_next(timeout=self._poll_timeout)
            except Exception:
                logger.exception("%s poll error", worker.name)
                self._stop.wait(2)

    def _reap_loop(self) -> None:
        while not self._stop.wait(self._recover_interval):
            try:
                self._queue.recover_stalled()
            except Exception:
                logger.exception("Stalled-job recovery failed on %s", self._queue.name)
