"""
Payment Worker Pool

Background consumers of the payment queue. Each worker thread claims one
job at a time, runs the payment processor for the job's event and records
the outcome on the job:

    applied / suspense / skipped  -> completed
    failed (business rejection)   -> failed, not retried
    transient or unexpected error -> retried with backoff, dead when exhausted

A recovery thread periodically returns jobs and events left "processing" by
a worker that vanished.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

from .errors import EngineError
from .jobs import JobStatus, JobType, PaymentJob, PaymentQueue
from .logging_config import log_action
from .processor import PaymentProcessor, ProcessOutcome

logger = logging.getLogger("lending_engine.worker")


class PaymentWorker:
    """Runs queued payment jobs through the processor"""

    def __init__(self, queue: PaymentQueue, processor: PaymentProcessor,
                 worker_id: Optional[str] = None):
        self.queue = queue
        self.processor = processor
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

    def run_job(self, job: PaymentJob) -> PaymentJob:
        """Execute a claimed job and record its outcome"""
        event_id = job.payload.get('event_id')
        if not event_id:
            return self.queue.fail(job.id, "Job payload has no event_id",
                                   retryable=False, error_code="INVALID_PAYLOAD")

        try:
            result = self.processor.process_event(event_id)
        except EngineError as e:
            return self.queue.fail(job.id, str(e), retryable=e.retryable, error_code=e.code)
        except Exception as e:
            log_action(logger, "error", f"Unexpected error processing event {event_id}: {e}",
                       action="run_job", tenant_id=job.tenant_id, job_id=job.id,
                       worker_id=self.worker_id)
            return self.queue.fail(job.id, str(e), retryable=True, error_code="UNEXPECTED_ERROR")

        if result.outcome == ProcessOutcome.FAILED:
            return self.queue.fail(job.id, result.reason or "Payment failed",
                                   retryable=False, error_code=result.code)

        log_action(logger, "info", f"Job completed with outcome {result.outcome.value}",
                   action="run_job", tenant_id=job.tenant_id, job_id=job.id,
                   worker_id=self.worker_id, extra={"event_id": event_id})
        return self.queue.complete(job.id, result.to_dict())

    def run_once(self, job_types: Optional[Iterable[JobType]] = None) -> Optional[PaymentJob]:
        """Claim and run a single job; None when the queue is idle"""
        job = self.queue.claim(self.worker_id, job_types=job_types or [JobType.PAYMENT_ALLOCATION])
        if job is None:
            return None
        return self.run_job(job)


class WorkerPool:
    """
    Bounded pool of worker loops polling the queue, plus one recovery loop
    """

    def __init__(self, queue: PaymentQueue, processor: PaymentProcessor,
                 concurrency: int = 5, poll_interval: float = 1.0,
                 recovery_interval: float = 60.0, stuck_minutes: int = 5):
        self.queue = queue
        self.processor = processor
        self.concurrency = max(concurrency, 1)
        self.poll_interval = poll_interval
        self.recovery_interval = recovery_interval
        self.stuck_minutes = stuck_minutes
        self.workers = [PaymentWorker(queue, processor, worker_id=f"worker-{n}")
                        for n in range(1, self.concurrency + 1)]
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._stop.is_set()

    def _work_loop(self, worker: PaymentWorker) -> None:
        while not self._stop.is_set():
            try:
                job = worker.run_once()
            except Exception as e:
                log_action(logger, "error", f"Worker loop error: {e}", action="work_loop",
                           worker_id=worker.worker_id)
                job = None
            if job is None:
                self._stop.wait(self.poll_interval)

    def _recovery_loop(self) -> None:
        while not self._stop.wait(self.recovery_interval):
            try:
                self.recover()
            except Exception as e:
                log_action(logger, "error", f"Recovery sweep error: {e}", action="recover_stuck")

    def recover(self) -> Dict[str, int]:
        """Reset stuck events first so the requeued jobs find them pending"""
        events = self.processor.recover_stuck_events(self.stuck_minutes)
        jobs = self.queue.recover_stuck(self.stuck_minutes)
        return {'events': events, **jobs}

    def start(self) -> None:
        with self._lock:
            if self._executor is not None:
                return
            self._stop.clear()
            self._executor = ThreadPoolExecutor(max_workers=self.concurrency + 1,
                                                thread_name_prefix="payment-worker")
            self._futures = [self._executor.submit(self._work_loop, worker)
                             for worker in self.workers]
            self._futures.append(self._executor.submit(self._recovery_loop))

        log_action(logger, "info", f"Worker pool started with {self.concurrency} worker(s)",
                   action="start")

    def stop(self) -> None:
        with self._lock:
            if self._executor is None:
                return
            self._stop.set()
            self._executor.shutdown(wait=True)
            self._executor = None
            self._futures = []

        log_action(logger, "info", "Worker pool stopped", action="stop")

    def drain(self, max_jobs: Optional[int] = None) -> Dict[str, int]:
        """
        Run queued jobs synchronously on the calling thread until the queue
        is idle (or ``max_jobs`` ran). Jobs scheduled for a later retry are
        left alone.
        """
        worker = self.workers[0]
        counts = {'processed': 0, 'completed': 0, 'failed': 0, 'requeued': 0, 'dead': 0}
        while max_jobs is None or counts['processed'] < max_jobs:
            job = worker.run_once()
            if job is None:
                break
            counts['processed'] += 1
            if job.status == JobStatus.QUEUED:
                counts['requeued'] += 1
            elif job.status.value in counts:
                counts[job.status.value] += 1
        return counts
